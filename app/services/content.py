from __future__ import annotations

import json
import logging
import math
import re
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable

import trafilatura
from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning
from flask import current_app

from app.services.completion import (
    CompletionError,
    CompletionService,
    build_completion_service,
)
from app.services.prompts import (
    SUMMARY_PROMPT_KEY,
    TAGGING_PROMPT_KEY,
    build_system_prompt,
    get_prompt_or_default,
)
from app.services.tag_normalizer import process_ai_tags

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 225
MIN_CONTENT_LENGTH = 100
MAX_INSIGHT_CONTENT_CHARS = 15000
MAX_SUMMARY_CONTENT_CHARS = 8000
MAX_FALLBACK_SUMMARY_CHARS = 1000
MAX_EXTRACTED_CHARS = 200000

NEUTRAL_SENTIMENT = 5
MIN_SENTIMENT = 0
MAX_SENTIMENT = 10

NO_SUMMARY = "No summary generated"
FAILED_INSIGHTS_SUMMARY = "Failed to generate insights"
FAILED_SUMMARY = "Failed to generate summary"

_NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]
_WHITESPACE_RE = re.compile(r"\s+")
_QUOTED_RE = re.compile(r"[\"']([^\"']+)[\"']")


@dataclass
class ProcessedContent:
    text: str
    reading_time_minutes: int


@dataclass
class InsightResult:
    summary: str
    sentiment: int
    tags: list[str] = field(default_factory=list)
    related_links: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class TagResult:
    tags: list[str]
    error: str | None = None


class UnparseableResponse(ValueError):
    """The completion text is not a JSON object."""


# HTML -> text


def extract_text_from_html(html: str) -> tuple[str | None, str]:
    title = None
    text = ""

    try:
        extracted = trafilatura.extract(
            html,
            include_comments=False,
            include_tables=False,
            favor_precision=True,
            no_fallback=False,
        )
        if extracted:
            text = extracted
        meta = trafilatura.extract_metadata(html)
        if meta and getattr(meta, "title", None):
            title = meta.title.strip()
    except Exception as exc:
        logger.debug("trafilatura failed, falling back to BeautifulSoup: %s", exc)

    if not text:
        soup = _build_soup(html)
        if soup.title and soup.title.string:
            title = soup.title.string.strip()
        text = html_to_text(html, soup=soup)

    return title, text[:MAX_EXTRACTED_CHARS]


def html_to_text(html: str, soup: BeautifulSoup | None = None) -> str:
    soup = soup if soup is not None else _build_soup(html)
    for element in soup.find_all(_NON_CONTENT_TAGS):
        element.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()


def _build_soup(html: str) -> BeautifulSoup:
    if _looks_like_xml(html):
        try:
            return BeautifulSoup(html, "xml")
        except Exception:
            logger.debug("XML parser rejected document, using lxml HTML parser")
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(html, "lxml")


def _looks_like_xml(html: str) -> bool:
    leading = html.lstrip()[:200].lower()
    return (
        leading.startswith("<?xml")
        or leading.startswith("<rss")
        or leading.startswith("<feed")
    )


def reading_time_minutes(text: str) -> int:
    word_count = len(text.split())
    if word_count == 0:
        return 0
    return math.ceil(word_count / WORDS_PER_MINUTE)


def process_content(html: str | None) -> ProcessedContent:
    """Strip markup to plain text and estimate the reading time.

    Never raises: empty or broken input yields empty text and zero minutes.
    """
    if not html or not isinstance(html, str) or not html.strip():
        return ProcessedContent(text="", reading_time_minutes=0)

    try:
        _title, text = extract_text_from_html(html)
    except Exception as exc:
        logger.warning("Could not extract text from HTML: %s", exc)
        return ProcessedContent(text="", reading_time_minutes=0)

    text = _WHITESPACE_RE.sub(" ", text).strip()
    return ProcessedContent(text=text, reading_time_minutes=reading_time_minutes(text))


# Completion payload parsing

_MISSING = object()


def _text(value):
    return value if isinstance(value, str) else _MISSING


def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return _MISSING
    return value


def _numeric_text(value):
    if not isinstance(value, str):
        return _MISSING
    try:
        return float(value.strip())
    except ValueError:
        return _MISSING


def _list(value):
    return value if isinstance(value, list) else _MISSING


def _comma_separated(value):
    if not isinstance(value, str):
        return _MISSING
    return [part.strip() for part in value.split(",")]


def _single_item(value):
    return [value] if isinstance(value, str) else _MISSING


@dataclass(frozen=True)
class FieldAliases:
    """A logical result field and the (key, coercion) pairs that may carry it."""

    name: str
    candidates: tuple[tuple[str, Callable[[Any], Any]], ...]
    default: Any


INSIGHT_FIELDS = (
    FieldAliases(
        "summary",
        (("summary", _text), ("Summary", _text), ("content", _text)),
        NO_SUMMARY,
    ),
    FieldAliases(
        "sentiment",
        (
            ("sentiment", _number),
            ("sentiment", _numeric_text),
            ("Sentiment", _number),
            ("Sentiment", _numeric_text),
            ("score", _number),
            ("score", _numeric_text),
        ),
        NEUTRAL_SENTIMENT,
    ),
    FieldAliases(
        "tags",
        (("tags", _list), ("Tags", _list), ("tags", _comma_separated)),
        (),
    ),
    FieldAliases(
        "related_links",
        (
            ("relatedLinks", _list),
            ("related_links", _list),
            ("links", _list),
            ("relatedLinks", _single_item),
        ),
        (),
    ),
)


def resolve_fields(payload: dict, rules=INSIGHT_FIELDS) -> dict[str, Any]:
    resolved = {}
    for rule in rules:
        value = _MISSING
        for key, coerce in rule.candidates:
            if key in payload:
                value = coerce(payload[key])
                if value is not _MISSING:
                    break
        resolved[rule.name] = rule.default if value is _MISSING else value
    return resolved


def _strip_code_fence(text: str) -> str:
    if not text.startswith("```"):
        return text
    lines = text.split("\n")
    end_index = len(lines)
    for index, line in enumerate(lines[1:], 1):
        if line.strip() == "```":
            end_index = index
            break
    return "\n".join(lines[1:end_index])


def parse_json_payload(response_text: str | None) -> Any:
    text = _strip_code_fence((response_text or "").strip()) or "{}"
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise UnparseableResponse(f"response is not valid JSON: {exc.msg}") from exc


def parse_json_object(response_text: str | None) -> dict:
    payload = parse_json_payload(response_text)
    if not isinstance(payload, dict):
        raise UnparseableResponse(
            f"response is not a JSON object: {type(payload).__name__}"
        )
    return payload


def clamp_sentiment(value) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_SENTIMENT
    if not math.isfinite(number):
        return NEUTRAL_SENTIMENT
    return max(MIN_SENTIMENT, min(MAX_SENTIMENT, int(round(number))))


def _clean_strings(values) -> list[str]:
    return [
        value.strip()
        for value in values or ()
        if isinstance(value, str) and value.strip()
    ]


def _truncate(text: str, limit: int = MAX_FALLBACK_SUMMARY_CHARS) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def parse_insight_response(response_text: str | None) -> InsightResult:
    try:
        payload = parse_json_object(response_text)
    except UnparseableResponse as exc:
        logger.warning("Insight response unparseable, keeping raw text: %s", exc)
        return InsightResult(
            summary=_truncate((response_text or "").strip()) or NO_SUMMARY,
            sentiment=NEUTRAL_SENTIMENT,
        )

    fields = resolve_fields(payload)
    return InsightResult(
        summary=fields["summary"],
        sentiment=clamp_sentiment(fields["sentiment"]),
        tags=process_ai_tags(_clean_strings(fields["tags"])),
        related_links=_clean_strings(fields["related_links"]),
    )


def parse_tag_response(response_text: str | None) -> list[str]:
    try:
        payload = parse_json_payload(response_text)
    except UnparseableResponse:
        raw_tags = _QUOTED_RE.findall(response_text or "")
    else:
        if isinstance(payload, list):
            raw_tags = payload
        elif isinstance(payload, dict) and isinstance(payload.get("tags"), list):
            raw_tags = payload["tags"]
        elif isinstance(payload, dict):
            raw_tags = [value for value in payload.values() if isinstance(value, str)]
        else:
            raw_tags = []
    return process_ai_tags(_clean_strings(raw_tags))


# Completion calls


def _resolve_completion(completion: CompletionService | None) -> CompletionService:
    if completion is not None:
        return completion
    try:
        service = current_app.extensions.get("completion_service")
        return service or build_completion_service(current_app.config)
    except RuntimeError as exc:
        raise CompletionError("no completion service is configured") from exc


def _use_url_directly(url: str | None, content: str | None) -> bool:
    return bool(url) and (not content or len(content) < MIN_CONTENT_LENGTH)


def generate_insights(
    url: str,
    content: str | None = None,
    depth_level: int = 1,
    custom_prompt: str | None = None,
    completion: CompletionService | None = None,
) -> InsightResult:
    """Ask the completion service for summary, sentiment, tags and links.

    Never raises. Upstream failures come back as a neutral result whose
    ``error`` holds the reason.
    """
    try:
        use_url = _use_url_directly(url, content)
        logger.info(
            "Generating insights for %s using %s analysis",
            url,
            "URL-based" if use_url else "content-based",
        )
        instructions = custom_prompt or get_prompt_or_default(SUMMARY_PROMPT_KEY)
        system_prompt = build_system_prompt(instructions, url=url, depth_level=depth_level)
        user_content = url if use_url else (content or "")[:MAX_INSIGHT_CONTENT_CHARS]
        response_text = _resolve_completion(completion).complete(
            system_prompt, user_content
        )
    except CompletionError as exc:
        logger.warning("Insight generation failed for %s: %s", url, exc)
        return _failed_insights(str(exc))
    except Exception as exc:
        logger.exception("Unexpected error generating insights for %s", url)
        return _failed_insights(str(exc) or exc.__class__.__name__)

    try:
        return parse_insight_response(response_text)
    except Exception as exc:
        logger.exception("Unexpected error parsing insights for %s", url)
        return _failed_insights(str(exc) or exc.__class__.__name__)


def _failed_insights(error: str) -> InsightResult:
    return InsightResult(
        summary=FAILED_INSIGHTS_SUMMARY,
        sentiment=NEUTRAL_SENTIMENT,
        error=error,
    )


def request_tags(
    content: str | None,
    url: str | None = None,
    custom_prompt: str | None = None,
    completion: CompletionService | None = None,
) -> TagResult:
    try:
        use_url = _use_url_directly(url, content)
        instructions = custom_prompt or get_prompt_or_default(TAGGING_PROMPT_KEY)
        system_prompt = build_system_prompt(instructions, url=url)
        user_content = url if use_url else (content or "")[:MAX_INSIGHT_CONTENT_CHARS]
        response_text = _resolve_completion(completion).complete(
            system_prompt, user_content
        )
        return TagResult(tags=parse_tag_response(response_text))
    except Exception as exc:
        logger.warning("Tag generation failed for %s: %s", url or "content", exc)
        return TagResult(tags=[], error=str(exc) or exc.__class__.__name__)


def generate_tags(
    content: str | None,
    url: str | None = None,
    custom_prompt: str | None = None,
    completion: CompletionService | None = None,
) -> list[str]:
    return request_tags(content, url, custom_prompt, completion).tags


def summarize_content(
    content: str,
    custom_prompt: str | None = None,
    completion: CompletionService | None = None,
) -> str:
    try:
        instructions = custom_prompt or get_prompt_or_default(SUMMARY_PROMPT_KEY)
        system_prompt = build_system_prompt(instructions)
        response_text = _resolve_completion(completion).complete(
            system_prompt, (content or "")[:MAX_SUMMARY_CONTENT_CHARS]
        )
    except Exception as exc:
        logger.warning("Summarization failed: %s", exc)
        return FAILED_SUMMARY
    return response_text or NO_SUMMARY
