import click
from flask import Flask

from app.api import api_bp
from app.config import Config
from app.extensions import db, login_manager, migrate
from app.jobs.scheduler import start_scheduler
from app.schema_migrations import add_ai_processing_columns
from app.services.ai_processor import get_ai_processor, init_ai_processor
from app.services.tag_migration import TagMigrationError, migrate_tag_vocabulary


def create_app(config_object=Config, completion=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.register_blueprint(api_bp)
    init_ai_processor(app, completion=completion)

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        add_ai_processing_columns()
        print("Initialized Bookmind database.")

    @app.cli.command("process-pending")
    @click.option("--user-id", type=int, default=None)
    def process_pending_command(user_id):
        result = get_ai_processor(app).process_pending_bookmarks(user_id)
        if result.skipped:
            print("AI processing already in progress.")
            return
        print(
            f"Processed {len(result.processed_ids)} bookmarks: "
            f"{len(result.completed_ids)} completed, {len(result.failed_ids)} failed."
        )

    @app.cli.command("normalize-tags")
    @click.option("--dry-run", is_flag=True, default=False)
    def normalize_tags_command(dry_run):
        try:
            plan = migrate_tag_vocabulary(dry_run=dry_run)
        except TagMigrationError as exc:
            raise click.ClickException(f"Tag migration rolled back: {exc}")
        for tag_id, (old, new) in sorted(plan.renames.items()):
            print(f"{tag_id}: {old} -> {new}")
        for group in plan.conflicts:
            print(f"merge {group.merged_ids} into {group.survivor_id} ({group.target})")
        print(
            f"{len(plan.renames)} renames, {len(plan.conflicts)} merges"
            f"{' (dry run)' if dry_run else ''}."
        )

    with app.app_context():
        db.create_all()
        add_ai_processing_columns()

    start_scheduler(app)
    return app
