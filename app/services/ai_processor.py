from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from app.extensions import db
from app.models import (
    AI_STATUS_COMPLETED,
    AI_STATUS_FAILED,
    AI_STATUS_PROCESSING,
    TAG_TYPE_SYSTEM,
    Bookmark,
)
from app.services import storage
from app.services.completion import (
    CompletionService,
    build_completion_service,
    is_rate_limit_error,
)
from app.services.content import (
    InsightResult,
    generate_insights,
    process_content,
    request_tags,
)
from app.services.prompts import (
    SUMMARY_PROMPT_KEY,
    TAGGING_PROMPT_KEY,
    get_prompt_or_default,
)
from app.services.tag_normalizer import process_ai_tags


@dataclass
class _WorkItem:
    bookmark_id: int
    url: str
    content_html: str | None


@dataclass
class BookmarkAnalysis:
    insight: InsightResult
    tags: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.insight.failed


@dataclass
class DrainResult:
    processed_ids: list[int] = field(default_factory=list)
    completed_ids: list[int] = field(default_factory=list)
    failed_ids: list[int] = field(default_factory=list)
    batches: int = 0
    cooldowns: int = 0
    skipped: bool = False

    def as_dict(self):
        return {
            "processed_ids": list(self.processed_ids),
            "completed_ids": list(self.completed_ids),
            "failed_ids": list(self.failed_ids),
            "batches": self.batches,
            "cooldowns": self.cooldowns,
            "skipped": self.skipped,
        }


class AIProcessorService:
    """Drains bookmarks in the ``pending`` AI state.

    One instance lives for the lifetime of the process (see
    ``init_ai_processor``). Only one drain runs at a time per instance;
    claiming rows through a conditional status update keeps separate
    instances from processing the same bookmark.
    """

    def __init__(
        self,
        app: Flask,
        completion: CompletionService | None = None,
        *,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        rate_limit_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        insight_depth: int | None = None,
        sleep=time.sleep,
    ):
        config = app.config
        self.app = app
        self.completion = completion or build_completion_service(config)
        self.batch_size = max(1, int(batch_size or config.get("AI_BATCH_SIZE", 5)))
        self.max_concurrency = max(
            1, int(max_concurrency or config.get("AI_MAX_CONCURRENCY", 3))
        )
        self.rate_limit_threshold = int(
            rate_limit_threshold
            if rate_limit_threshold is not None
            else config.get("AI_RATE_LIMIT_THRESHOLD", 2)
        )
        self.cooldown_seconds = float(
            cooldown_seconds
            if cooldown_seconds is not None
            else config.get("AI_RATE_LIMIT_COOLDOWN_SECONDS", 60)
        )
        self.insight_depth = int(insight_depth or config.get("AI_INSIGHT_DEPTH", 1))
        self._sleep = sleep

        self._drain_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.max_concurrency)
        self.active_tasks = 0
        self.peak_active_tasks = 0
        self.recent_rate_limit_errors = 0

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    def process_after_sync(self, user_id: int | None = None) -> DrainResult:
        self.app.logger.info(
            "Processing bookmarks after sync%s",
            f" for user {user_id}" if user_id is not None else "",
        )
        return self.process_pending_bookmarks(user_id)

    def process_pending_bookmarks(self, user_id: int | None = None) -> DrainResult:
        """Claim and process pending bookmarks in batches until none are left."""
        if not self._drain_lock.acquire(blocking=False):
            self.app.logger.info("AI processing already in progress, skipping this run")
            return DrainResult(skipped=True)

        result = DrainResult()
        try:
            with self.app.app_context():
                try:
                    self._drain(result, user_id)
                except Exception:
                    db.session.rollback()
                    self.app.logger.exception("Error in AI bookmark processing")
                finally:
                    db.session.remove()
        finally:
            self._drain_lock.release()
        return result

    def recover_interrupted(self) -> int:
        """Return bookmarks stuck in ``processing`` by a previous process to pending.

        Skipped while a drain of this instance is running, because its rows
        are legitimately in ``processing``. Every ``processing`` row is
        released, so this assumes a single process drains the database.
        """
        if not self._drain_lock.acquire(blocking=False):
            return 0
        try:
            with self.app.app_context():
                try:
                    count = storage.reset_bookmarks_to_pending(
                        from_statuses=(AI_STATUS_PROCESSING,)
                    )
                    db.session.commit()
                except Exception:
                    db.session.rollback()
                    raise
                finally:
                    db.session.remove()
        finally:
            self._drain_lock.release()
        if count:
            self.app.logger.info(
                "Released %s bookmarks left in processing by a previous run", count
            )
        return count

    def _drain(self, result: DrainResult, user_id: int | None) -> None:
        batch_number = 1
        while True:
            claimed_ids = storage.claim_pending_bookmarks(self.batch_size, user_id=user_id)
            db.session.commit()
            if not claimed_ids:
                self.app.logger.info("No more pending bookmarks found for AI processing")
                break

            self.app.logger.info(
                "Claimed %s pending bookmarks for AI processing (batch #%s)",
                len(claimed_ids),
                batch_number,
            )
            result.batches += 1
            result.processed_ids.extend(claimed_ids)
            self.recent_rate_limit_errors = 0
            try:
                self._process_batch(claimed_ids, result)
            except Exception:
                db.session.rollback()
                self.app.logger.exception(
                    "Error in AI processing batch #%s", batch_number
                )
                self._fail_unfinished(claimed_ids, result)

            if self.recent_rate_limit_errors > self.rate_limit_threshold:
                self.app.logger.warning(
                    "Detected %s rate limit errors, pausing AI processing for %ss",
                    self.recent_rate_limit_errors,
                    self.cooldown_seconds,
                )
                result.cooldowns += 1
                self._sleep(self.cooldown_seconds)
                self.recent_rate_limit_errors = 0
            batch_number += 1

        self.app.logger.info(
            "AI processing complete. Total bookmarks processed: %s",
            len(result.processed_ids),
        )

    def _process_batch(self, claimed_ids: list[int], result: DrainResult) -> None:
        bookmarks = (
            Bookmark.query.filter(Bookmark.id.in_(claimed_ids))
            .order_by(Bookmark.id.asc())
            .all()
        )
        items = [
            _WorkItem(
                bookmark_id=bookmark.id,
                url=bookmark.url,
                content_html=bookmark.content_html,
            )
            for bookmark in bookmarks
        ]
        summary_prompt = get_prompt_or_default(SUMMARY_PROMPT_KEY)
        tagging_prompt = get_prompt_or_default(TAGGING_PROMPT_KEY)

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="ai-processor"
        ) as executor:
            futures = {
                executor.submit(self._analyze, item, summary_prompt, tagging_prompt): item
                for item in items
            }
            for future in as_completed(futures):
                item = futures[future]
                try:
                    analysis = future.result()
                except Exception as exc:
                    self.app.logger.warning(
                        "Error processing bookmark %s: %s", item.bookmark_id, exc
                    )
                    self._record_errors([str(exc)])
                    self._mark_failed(item.bookmark_id, result)
                    continue

                self._record_errors(analysis.errors)
                self._persist(item, analysis, result)

    def _analyze(
        self, item: _WorkItem, summary_prompt: str, tagging_prompt: str
    ) -> BookmarkAnalysis:
        with self._slots:
            self._enter_task()
            try:
                if not item.url:
                    raise ValueError("bookmark has no URL")

                text = process_content(item.content_html).text
                insight = generate_insights(
                    item.url,
                    text,
                    self.insight_depth,
                    custom_prompt=summary_prompt,
                    completion=self.completion,
                )
                if insight.failed:
                    return BookmarkAnalysis(insight=insight, errors=[insight.error])

                tag_result = request_tags(
                    text,
                    item.url,
                    custom_prompt=tagging_prompt,
                    completion=self.completion,
                )
                errors = [tag_result.error] if tag_result.error else []
                return BookmarkAnalysis(
                    insight=insight,
                    tags=process_ai_tags([*tag_result.tags, *insight.tags]),
                    errors=errors,
                )
            finally:
                self._leave_task()

    def _enter_task(self) -> None:
        with self._counter_lock:
            self.active_tasks += 1
            self.peak_active_tasks = max(self.peak_active_tasks, self.active_tasks)

    def _leave_task(self) -> None:
        with self._counter_lock:
            self.active_tasks -= 1

    def _record_errors(self, errors: list[str]) -> None:
        if any(is_rate_limit_error(error) for error in errors):
            self.app.logger.info("Detected completion service rate limit error")
            self.recent_rate_limit_errors += 1

    def _persist(
        self, item: _WorkItem, analysis: BookmarkAnalysis, result: DrainResult
    ) -> None:
        if analysis.failed:
            self.app.logger.warning(
                "AI processing failed for bookmark %s: %s",
                item.bookmark_id,
                analysis.insight.error,
            )
            self._mark_failed(item.bookmark_id, result)
            return

        try:
            storage.create_insight(
                item.bookmark_id,
                summary=analysis.insight.summary,
                sentiment=analysis.insight.sentiment,
                depth_level=self.insight_depth,
                related_links=analysis.insight.related_links,
            )
            for name in analysis.tags:
                tag = storage.get_or_create_tag(name, TAG_TYPE_SYSTEM)
                storage.add_bookmark_tag(item.bookmark_id, tag.id)
            storage.update_bookmark_status(item.bookmark_id, AI_STATUS_COMPLETED)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            self.app.logger.warning(
                "Failed to store AI results for bookmark %s: %s", item.bookmark_id, exc
            )
            self._mark_failed(item.bookmark_id, result)
            return

        self.app.logger.info(
            "AI processing completed for bookmark %s (%s tags)",
            item.bookmark_id,
            len(analysis.tags),
        )
        result.completed_ids.append(item.bookmark_id)

    def _fail_unfinished(self, claimed_ids: list[int], result: DrainResult) -> None:
        finished = {*result.completed_ids, *result.failed_ids}
        for bookmark_id in claimed_ids:
            if bookmark_id not in finished:
                self._mark_failed(bookmark_id, result)

    def _mark_failed(self, bookmark_id: int, result: DrainResult) -> None:
        try:
            storage.update_bookmark_status(bookmark_id, AI_STATUS_FAILED)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            self.app.logger.error(
                "Could not mark bookmark %s as failed: %s", bookmark_id, exc
            )
        result.failed_ids.append(bookmark_id)


def reprocess_bookmarks(bookmark_ids: list[int], user_id: int | None = None) -> int:
    """Put completed or failed bookmarks back into the pending state."""
    count = storage.reset_bookmarks_to_pending(
        bookmark_ids=bookmark_ids,
        user_id=user_id,
        from_statuses=(AI_STATUS_COMPLETED, AI_STATUS_FAILED),
    )
    db.session.commit()
    return count


def retry_failed(user_id: int | None = None) -> int:
    count = storage.reset_bookmarks_to_pending(user_id=user_id)
    db.session.commit()
    return count


def init_ai_processor(
    app: Flask, completion: CompletionService | None = None
) -> AIProcessorService:
    service = AIProcessorService(app, completion=completion)
    app.extensions["completion_service"] = service.completion
    app.extensions["ai_processor"] = service
    return service


def get_ai_processor(app: Flask) -> AIProcessorService:
    return app.extensions["ai_processor"]


def start_background_drain(app: Flask, user_id: int | None = None) -> None:
    worker = threading.Thread(
        target=get_ai_processor(app).process_pending_bookmarks,
        args=(user_id,),
        daemon=True,
        name=f"ai-drain-{user_id if user_id is not None else 'all'}",
    )
    worker.start()
