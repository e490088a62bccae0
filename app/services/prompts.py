from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from app.services import storage

logger = logging.getLogger(__name__)

SUMMARY_PROMPT_KEY = "summary_prompt"
TAGGING_PROMPT_KEY = "auto_tagging_prompt"

BASE_SYSTEM_PROMPT = (
    "You will receive content details about a user submitted bookmark. "
    "Follow the user's instructions precisely and format your response as "
    "JSON to be properly parsed as a reply."
)

DEFAULT_PROMPTS = {
    SUMMARY_PROMPT_KEY: (
        "Summarize the bookmarked content in a few sentences. Respond with a "
        'JSON object with the keys "summary" (string), "sentiment" (integer '
        'from 0, very negative, to 10, very positive), "tags" (3-7 short topic '
        'labels) and "relatedLinks" (URLs mentioned in or closely related to '
        "the content)."
    ),
    TAGGING_PROMPT_KEY: (
        "Generate 3-7 tags that accurately represent the main topics of the "
        "content. Use single words or short 2-3 word phrases, avoid redundant "
        "tags and punctuation, and prefer established category names. Respond "
        'with a JSON object in the format {"tags": ["tag1", "tag2"]}.'
    ),
}

FALLBACK_PROMPT = "Analyze the bookmarked content and respond with a JSON object."


def get_prompt_or_default(key: str) -> str:
    """Return the stored prompt for ``key``, falling back to the built-in one."""
    default = DEFAULT_PROMPTS.get(key, FALLBACK_PROMPT)
    try:
        setting = storage.get_setting(key)
    except (RuntimeError, SQLAlchemyError) as exc:
        # RuntimeError: called outside of an application context.
        logger.warning("Could not load prompt %r, using default: %s", key, exc)
        return default

    value = (setting.value or "").strip() if setting else ""
    return value or default


def build_system_prompt(
    instructions: str, url: str | None = None, depth_level: int = 1
) -> str:
    prompt = f"{BASE_SYSTEM_PROMPT}\n\nUser Instructions: {instructions}"
    if url:
        prompt += f"\n\nThe content is from URL: {url}"
    if depth_level and depth_level > 1:
        prompt += f"\n\nAnalyze at depth level: {depth_level} (1-4 scale)"
    return prompt
