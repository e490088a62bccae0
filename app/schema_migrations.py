from __future__ import annotations

from sqlalchemy import inspect, text

from app.extensions import db
from app.models import AI_STATUS_PENDING


def add_ai_processing_columns() -> bool:
    """Bring a pre-AI ``bookmarks`` table up to date on SQLite.

    Existing rows start out ``pending`` so the next drain analyses them.
    Returns True when a column was added.
    """
    engine = db.engine
    if engine.dialect.name != "sqlite":
        return False

    inspector = inspect(engine)
    if not inspector.has_table("bookmarks"):
        return False

    columns = {column["name"] for column in inspector.get_columns("bookmarks")}
    statements = []
    if "ai_processing_status" not in columns:
        statements.append(
            "ALTER TABLE bookmarks ADD COLUMN ai_processing_status "
            f"VARCHAR(32) NOT NULL DEFAULT '{AI_STATUS_PENDING}'"
        )
    if "content_html" not in columns:
        statements.append("ALTER TABLE bookmarks ADD COLUMN content_html TEXT")
    if not statements:
        return False

    for statement in statements:
        db.session.execute(text(statement))
    db.session.execute(
        text(
            "CREATE INDEX IF NOT EXISTS ix_bookmarks_ai_processing_status "
            "ON bookmarks (ai_processing_status)"
        )
    )
    db.session.commit()
    return True
