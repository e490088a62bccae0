"""Bookmark, insight and tag persistence used by the AI pipeline.

Every function works on the Flask-SQLAlchemy session of the current
application context and leaves committing to the caller, so a caller
can group several writes into one transaction.
"""

from __future__ import annotations

from sqlalchemy import delete, func, insert, select, update

from app.extensions import db
from app.models import (
    AI_STATUS_FAILED,
    AI_STATUS_PENDING,
    AI_STATUS_PROCESSING,
    AI_STATUSES,
    TAG_TYPE_SYSTEM,
    Bookmark,
    Insight,
    Setting,
    Tag,
    bookmark_tags,
    utcnow,
)


def get_bookmarks_by_status(
    status: str, limit: int, user_id: int | None = None
) -> list[Bookmark]:
    query = Bookmark.query.filter(Bookmark.ai_processing_status == status)
    if user_id is not None:
        query = query.filter(Bookmark.user_id == user_id)
    return query.order_by(Bookmark.id.asc()).limit(limit).all()


def claim_pending_bookmarks(limit: int, user_id: int | None = None) -> list[int]:
    """Flip up to ``limit`` pending bookmarks to processing and return their ids.

    Selection and status flip happen in one conditional UPDATE, so a row is
    owned by exactly one caller even when several drains race.
    """
    candidates = select(Bookmark.id).where(
        Bookmark.ai_processing_status == AI_STATUS_PENDING
    )
    if user_id is not None:
        candidates = candidates.where(Bookmark.user_id == user_id)
    candidates = candidates.order_by(Bookmark.id.asc()).limit(limit)

    candidate_ids = list(db.session.execute(candidates).scalars())
    if not candidate_ids:
        return []

    claimed = db.session.execute(
        update(Bookmark)
        .where(
            Bookmark.id.in_(candidate_ids),
            Bookmark.ai_processing_status == AI_STATUS_PENDING,
        )
        .values(ai_processing_status=AI_STATUS_PROCESSING, updated_at=utcnow())
        .returning(Bookmark.id)
        .execution_options(synchronize_session=False)
    )
    claimed_ids = sorted(claimed.scalars())
    db.session.expire_all()
    return claimed_ids


def update_bookmark_status(bookmark_id: int, status: str) -> None:
    if status not in AI_STATUSES:
        raise ValueError(f"unknown AI processing status: {status}")
    db.session.execute(
        update(Bookmark)
        .where(Bookmark.id == bookmark_id)
        .values(ai_processing_status=status, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )


def reset_bookmarks_to_pending(
    bookmark_ids: list[int] | None = None,
    user_id: int | None = None,
    from_statuses: tuple[str, ...] = (AI_STATUS_FAILED,),
) -> int:
    statement = update(Bookmark).where(
        Bookmark.ai_processing_status.in_(from_statuses)
    )
    if bookmark_ids is not None:
        if not bookmark_ids:
            return 0
        statement = statement.where(Bookmark.id.in_(bookmark_ids))
    if user_id is not None:
        statement = statement.where(Bookmark.user_id == user_id)
    result = db.session.execute(
        statement.values(ai_processing_status=AI_STATUS_PENDING, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def get_insight_by_bookmark_id(bookmark_id: int) -> Insight | None:
    return Insight.query.filter_by(bookmark_id=bookmark_id).first()


def create_insight(
    bookmark_id: int,
    summary: str,
    sentiment: int,
    depth_level: int = 1,
    related_links: list[str] | None = None,
) -> Insight:
    """Write the insight for a bookmark, replacing any previous one entirely."""
    insight = get_insight_by_bookmark_id(bookmark_id) or Insight(
        bookmark_id=bookmark_id
    )
    insight.summary = summary
    insight.sentiment = sentiment
    insight.depth_level = depth_level
    insight.related_links = list(related_links or [])
    insight.updated_at = utcnow()
    db.session.add(insight)
    db.session.flush()
    return insight


def get_tag_by_name(name: str) -> Tag | None:
    return Tag.query.filter_by(name=name).first()


def create_tag(name: str, tag_type: str = TAG_TYPE_SYSTEM) -> Tag:
    tag = Tag(name=name, type=tag_type, count=0)
    db.session.add(tag)
    db.session.flush()
    return tag


def get_or_create_tag(name: str, tag_type: str = TAG_TYPE_SYSTEM) -> Tag:
    return get_tag_by_name(name) or create_tag(name, tag_type)


def increment_tag_count(tag_id: int) -> None:
    db.session.execute(
        update(Tag)
        .where(Tag.id == tag_id)
        .values(count=Tag.count + 1)
        .execution_options(synchronize_session="fetch")
    )


def decrement_tag_count(tag_id: int) -> None:
    db.session.execute(
        update(Tag)
        .where(Tag.id == tag_id, Tag.count > 0)
        .values(count=Tag.count - 1)
        .execution_options(synchronize_session="fetch")
    )


def recount_tag_usage(tag_id: int | None = None) -> None:
    """Set usage counts from the association table."""
    usage = (
        select(func.count())
        .select_from(bookmark_tags)
        .where(bookmark_tags.c.tag_id == Tag.id)
        .scalar_subquery()
    )
    statement = update(Tag).values(count=usage)
    if tag_id is not None:
        statement = statement.where(Tag.id == tag_id)
    db.session.execute(statement.execution_options(synchronize_session=False))
    db.session.expire_all()


def bookmark_has_tag(bookmark_id: int, tag_id: int) -> bool:
    row = db.session.execute(
        select(bookmark_tags.c.tag_id).where(
            bookmark_tags.c.bookmark_id == bookmark_id,
            bookmark_tags.c.tag_id == tag_id,
        )
    ).first()
    return row is not None


def add_bookmark_tag(bookmark_id: int, tag_id: int) -> bool:
    """Associate a tag with a bookmark; False when the pair already exists."""
    if bookmark_has_tag(bookmark_id, tag_id):
        return False
    db.session.execute(
        insert(bookmark_tags).values(bookmark_id=bookmark_id, tag_id=tag_id)
    )
    increment_tag_count(tag_id)
    _expire_bookmark_tags(bookmark_id)
    return True


def remove_bookmark_tag(bookmark_id: int, tag_id: int) -> bool:
    result = db.session.execute(
        delete(bookmark_tags).where(
            bookmark_tags.c.bookmark_id == bookmark_id,
            bookmark_tags.c.tag_id == tag_id,
        )
    )
    if not result.rowcount:
        return False
    decrement_tag_count(tag_id)
    _expire_bookmark_tags(bookmark_id)
    return True


def _expire_bookmark_tags(bookmark_id: int) -> None:
    bookmark = db.session.get(Bookmark, bookmark_id)
    if bookmark is not None:
        db.session.expire(bookmark, ["tags"])


def get_setting(key: str) -> Setting | None:
    return Setting.query.filter_by(key=key).first()


def set_setting(key: str, value: str | None) -> Setting:
    setting = get_setting(key) or Setting(key=key)
    setting.value = value
    db.session.add(setting)
    db.session.flush()
    return setting
