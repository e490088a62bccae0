import sqlite3
import threading

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from app.extensions import db
from app.models import Bookmark, Insight, Tag, User
from app.services.ai_processor import (
    AIProcessorService,
    get_ai_processor,
    reprocess_bookmarks,
    retry_failed,
)

ARTICLE_HTML = (
    "<html><body><article><p>"
    + "Flask applications grow by composing small, well tested blueprints. " * 20
    + "</p></article></body></html>"
)


def _create_user(username="reader"):
    user = User(username=username, is_admin=False, is_active=True)
    user.set_password("secret")
    db.session.add(user)
    db.session.commit()
    return user


def _seed(app, count, status="pending", username="reader"):
    with app.app_context():
        user = _create_user(username)
        items = [
            Bookmark(
                user_id=user.id,
                url=f"https://{username}-{index}.example",
                content_html=ARTICLE_HTML if index % 2 else None,
                ai_processing_status=status,
            )
            for index in range(count)
        ]
        db.session.add_all(items)
        db.session.commit()
        return user.id, [item.id for item in items]


def _statuses(app):
    with app.app_context():
        return {
            bookmark.id: bookmark.ai_processing_status
            for bookmark in Bookmark.query.order_by(Bookmark.id.asc()).all()
        }


def test_drain_completes_pending_bookmarks(app, fake_completion):
    _user_id, ids = _seed(app, 7)

    result = get_ai_processor(app).process_pending_bookmarks()

    assert sorted(result.completed_ids) == ids
    assert result.failed_ids == []
    assert result.batches == 2
    assert set(_statuses(app).values()) == {"completed"}
    with app.app_context():
        assert Insight.query.count() == 7
        insight = Insight.query.filter_by(bookmark_id=ids[0]).one()
        assert insight.summary == "A short summary."
        assert insight.sentiment == 7
        assert insight.related_links == ["https://docs.python.org"]
        tags = {tag.name: tag for tag in Tag.query.all()}
        assert set(tags) == {"Python", "Web Framework"}
        assert tags["Python"].count == 7
        assert tags["Python"].type == "system"
    # Insight and tag requests for every bookmark.
    assert len(fake_completion.calls) == 14


def test_upstream_failure_marks_bookmark_failed_without_insight(app, fake_completion):
    fake_completion.error = "Failed to connect to OpenAI API: refused"
    _user_id, ids = _seed(app, 3)

    result = get_ai_processor(app).process_pending_bookmarks()

    assert sorted(result.failed_ids) == ids
    assert set(_statuses(app).values()) == {"failed"}
    with app.app_context():
        assert Insight.query.count() == 0
        assert Tag.query.count() == 0


def test_second_drain_performs_no_writes(app):
    _seed(app, 4)
    processor = get_ai_processor(app)
    processor.process_pending_bookmarks()

    writes = []

    def _record(_conn, _cursor, statement, *_args):
        if statement.lstrip().split(" ", 1)[0].upper() in {"INSERT", "UPDATE", "DELETE"}:
            writes.append(statement)

    with app.app_context():
        engine = db.engine
    event.listen(engine, "before_cursor_execute", _record)
    try:
        result = processor.process_pending_bookmarks()
    finally:
        event.remove(engine, "before_cursor_execute", _record)

    assert result.processed_ids == []
    assert result.batches == 0
    assert writes == []


def test_concurrency_never_exceeds_limit(app, fake_completion):
    fake_completion.delay = 0.02
    _seed(app, 10)
    processor = get_ai_processor(app)

    result = processor.process_pending_bookmarks()

    assert len(result.completed_ids) == 10
    assert processor.max_concurrency == 3
    assert 1 <= processor.peak_active_tasks <= 3
    assert processor.active_tasks == 0


def test_overlapping_drain_is_skipped(app, completion_factory):
    _seed(app, 2)
    release = threading.Event()
    entered = threading.Event()

    class _BlockingCompletion(completion_factory):
        def complete(self, system_prompt, user_content):
            entered.set()
            release.wait(5)
            return super().complete(system_prompt, user_content)

    processor = AIProcessorService(app, completion=_BlockingCompletion())
    worker = threading.Thread(target=processor.process_pending_bookmarks)
    worker.start()
    try:
        assert entered.wait(5)
        assert processor.is_draining
        skipped = processor.process_pending_bookmarks()
        assert skipped.skipped
        assert skipped.processed_ids == []
        assert processor.recover_interrupted() == 0
    finally:
        release.set()
        worker.join(5)

    assert not processor.is_draining
    assert set(_statuses(app).values()) == {"completed"}


def test_rate_limit_storm_pauses_between_batches(app, completion_factory):
    _seed(app, 10)
    pauses = []
    processor = AIProcessorService(
        app,
        completion=completion_factory(error="OpenAI rate limit exceeded (429)"),
        cooldown_seconds=60,
        sleep=pauses.append,
    )

    result = processor.process_pending_bookmarks()

    assert result.batches == 2
    assert result.cooldowns == 2
    assert pauses == [60.0, 60.0]
    assert len(result.failed_ids) == 10


def test_few_rate_limit_errors_do_not_pause(app, completion_factory):
    _seed(app, 2)
    pauses = []
    processor = AIProcessorService(
        app,
        completion=completion_factory(error="429 Too Many Requests"),
        sleep=pauses.append,
    )

    result = processor.process_pending_bookmarks()

    assert result.cooldowns == 0
    assert pauses == []


def test_failed_bookmarks_are_not_retried_by_drain(app):
    _seed(app, 2, status="failed")

    result = get_ai_processor(app).process_pending_bookmarks()

    assert result.processed_ids == []
    assert set(_statuses(app).values()) == {"failed"}


def test_retry_failed_and_reprocess_requeue_bookmarks(app):
    user_id, ids = _seed(app, 3, status="failed")

    with app.app_context():
        assert retry_failed(user_id=user_id) == 3
    get_ai_processor(app).process_pending_bookmarks(user_id)
    assert set(_statuses(app).values()) == {"completed"}

    with app.app_context():
        assert reprocess_bookmarks([ids[0]], user_id=user_id) == 1
        assert reprocess_bookmarks([ids[0]], user_id=user_id) == 0
    assert _statuses(app)[ids[0]] == "pending"

    get_ai_processor(app).process_pending_bookmarks()
    with app.app_context():
        assert Insight.query.filter_by(bookmark_id=ids[0]).count() == 1
        assert Tag.query.filter_by(name="Python").one().count == 3


def test_drain_scoped_to_user(app):
    _seed(app, 2, username="alice")
    bob_id, bob_ids = _seed(app, 2, username="bob")

    result = get_ai_processor(app).process_after_sync(bob_id)

    assert sorted(result.processed_ids) == bob_ids
    statuses = _statuses(app)
    assert [statuses[bookmark_id] for bookmark_id in bob_ids] == ["completed"] * 2
    assert list(statuses.values()).count("pending") == 2


def test_recover_interrupted_releases_processing_rows(app):
    _seed(app, 3, status="processing")

    assert get_ai_processor(app).recover_interrupted() == 3
    assert set(_statuses(app).values()) == {"pending"}


def test_storage_error_mid_batch_fails_claimed_rows_and_drain_continues(app):
    _user_id, ids = _seed(app, 7)
    raised = []

    def _locked_once(_conn, _cursor, statement, *_args):
        if (
            not raised
            and statement.lstrip().upper().startswith("SELECT")
            and "bookmarks.id IN" in statement
        ):
            raised.append(statement)
            raise sqlite3.OperationalError("database is locked")

    with app.app_context():
        engine = db.engine
    event.listen(engine, "before_cursor_execute", _locked_once)
    try:
        result = get_ai_processor(app).process_pending_bookmarks()
    finally:
        event.remove(engine, "before_cursor_execute", _locked_once)

    assert len(raised) == 1
    assert result.batches == 2
    assert sorted(result.failed_ids) == ids[:5]
    assert sorted(result.completed_ids) == ids[5:]
    statuses = _statuses(app)
    assert [statuses[bookmark_id] for bookmark_id in ids] == ["failed"] * 5 + [
        "completed"
    ] * 2

    with app.app_context():
        assert reprocess_bookmarks(ids[:5]) == 5


def test_recover_interrupted_releases_lock_when_reset_fails(app, monkeypatch):
    _seed(app, 2, status="processing")
    processor = get_ai_processor(app)

    def _boom(**_kwargs):
        raise OperationalError("UPDATE bookmarks", {}, Exception("database is locked"))

    with monkeypatch.context() as patch:
        patch.setattr(
            "app.services.ai_processor.storage.reset_bookmarks_to_pending", _boom
        )
        with pytest.raises(OperationalError):
            processor.recover_interrupted()

    assert not processor.is_draining
    assert set(_statuses(app).values()) == {"processing"}
    assert processor.recover_interrupted() == 2
    assert set(_statuses(app).values()) == {"pending"}
