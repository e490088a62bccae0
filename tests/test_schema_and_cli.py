from sqlalchemy import inspect, text

from app.extensions import db
from app.models import Bookmark, Tag, User
from app.schema_migrations import add_ai_processing_columns
from app.services import storage


def test_legacy_bookmarks_table_gains_ai_columns(app):
    with app.app_context():
        db.session.execute(text("DROP TABLE bookmarks"))
        db.session.execute(
            text(
                """
                CREATE TABLE bookmarks (
                    id INTEGER PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    url TEXT NOT NULL,
                    title VARCHAR(512),
                    created_at DATETIME,
                    updated_at DATETIME
                )
                """
            )
        )
        db.session.execute(
            text("INSERT INTO bookmarks (user_id, url) VALUES (1, 'https://old.example')")
        )
        db.session.commit()

        assert add_ai_processing_columns() is True
        assert add_ai_processing_columns() is False

        columns = {column["name"] for column in inspect(db.engine).get_columns("bookmarks")}
        assert {"ai_processing_status", "content_html"} <= columns
        status = db.session.execute(
            text("SELECT ai_processing_status FROM bookmarks")
        ).scalar_one()
        assert status == "pending"


def test_current_schema_needs_no_upgrade(app):
    with app.app_context():
        assert add_ai_processing_columns() is False


def test_process_pending_command(app):
    with app.app_context():
        user = User(username="cli", is_admin=False, is_active=True)
        user.set_password("secret")
        db.session.add(user)
        db.session.commit()
        db.session.add(Bookmark(user_id=user.id, url="https://cli.example"))
        db.session.commit()

    result = app.test_cli_runner().invoke(args=["process-pending"])

    assert result.exit_code == 0
    assert "1 completed, 0 failed" in result.output


def test_normalize_tags_command(app):
    with app.app_context():
        storage.create_tag("machine_learning")
        db.session.commit()

    runner = app.test_cli_runner()
    dry = runner.invoke(args=["normalize-tags", "--dry-run"])
    assert dry.exit_code == 0
    assert "machine_learning -> Machine Learning" in dry.output
    assert "(dry run)" in dry.output

    applied = runner.invoke(args=["normalize-tags"])
    assert applied.exit_code == 0
    with app.app_context():
        assert [tag.name for tag in Tag.query.all()] == ["Machine Learning"]


def test_init_db_command(app):
    result = app.test_cli_runner().invoke(args=["init-db"])
    assert result.exit_code == 0
    assert "Initialized Bookmind database." in result.output
