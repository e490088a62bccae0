"""Canonical tag vocabulary.

Every tag name that reaches the database, whether typed by a user or
produced by the completion service, goes through ``normalize_tag``.
The canonical form is lower-cased, stripped to letters, digits, spaces
and hyphens, and then capitalized word by word ("machine_learning" ->
"Machine Learning"). The mapping is idempotent.
"""

from __future__ import annotations

import logging
import re
import unicodedata

logger = logging.getLogger(__name__)

MIN_TAG_LENGTH = 2
MAX_TAG_LENGTH = 50

_WHITESPACE_RE = re.compile(r"\s+")
_HYPHEN_RUN_RE = re.compile(r"\s*-[\s-]*")

# Plural-looking words that are not plurals, or whose singular names a
# different concept.
_PLURAL_EXCEPTIONS = frozenset(
    {
        "analytics",
        "arts",
        "aws",
        "business",
        "canvas",
        "chess",
        "communications",
        "css",
        "devops",
        "diabetes",
        "economics",
        "electronics",
        "ethics",
        "gaming",
        "genomics",
        "glasses",
        "goods",
        "graphics",
        "humanities",
        "ios",
        "kubernetes",
        "linguistics",
        "logistics",
        "macos",
        "mathematics",
        "means",
        "news",
        "nodejs",
        "operations",
        "physics",
        "politics",
        "relations",
        "robotics",
        "rss",
        "sales",
        "series",
        "species",
        "statistics",
        "tennis",
        "thanks",
        "windows",
    }
)

_IRREGULAR_PLURALS = {
    "buses": "bus",
    "caches": "cache",
    "children": "child",
    "cookies": "cookie",
    "indices": "index",
    "matrices": "matrix",
    "men": "man",
    "movies": "movie",
    "people": "person",
    "statuses": "status",
    "viruses": "virus",
    "women": "woman",
}

_KEEP_ENDINGS = ("ss", "us", "is", "os", "as")


def singularize_word(word: str) -> str:
    """Return the singular form of a lower-case word, or the word itself.

    Only unambiguous suffix rules are applied; anything that looks risky
    is left untouched. Applying it to its own output changes nothing.
    """
    previous = None
    while word != previous:
        previous = word
        word = _singularize_once(word)
    return word


def _singularize_once(word: str) -> str:
    if word in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[word]
    if len(word) <= 3 or word in _PLURAL_EXCEPTIONS:
        return word
    if not word.isalpha():
        return word
    if word.endswith("ies") and len(word) > 4:
        return word[:-3] + "y"
    if word.endswith("sses"):
        return word[:-2]
    if word.endswith(("ches", "shes", "xes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith(_KEEP_ENDINGS):
        return word[:-1]
    return word


def _capitalize_word(word: str) -> str:
    head = word[:1].upper()
    # Characters whose upper case form expands (e.g. German sharp s) stay
    # lower case so that normalizing twice gives the same result.
    if len(head) != 1 or head.lower() != word[:1]:
        return word
    return head + word[1:]


def _present(text: str) -> str:
    words = []
    for word in text.split(" "):
        words.append("-".join(_capitalize_word(part) for part in word.split("-")))
    return " ".join(words)


def normalize_tag(raw) -> str:
    """Map a free-form tag string to its canonical form ("" when unusable)."""
    if not isinstance(raw, str):
        return ""

    text = unicodedata.normalize("NFKC", unicodedata.normalize("NFKC", raw).lower())
    text = text.replace("_", " ")
    text = "".join(
        char if char.isalnum() or char == "-" or char.isspace() else " "
        for char in text
    )
    text = _WHITESPACE_RE.sub(" ", text).strip()
    text = _HYPHEN_RUN_RE.sub("-", text).strip("- ")
    if not text:
        return ""

    words = text.split(" ")
    parts = words[-1].split("-")
    parts[-1] = singularize_word(parts[-1])
    words[-1] = "-".join(parts)
    return _present(" ".join(words))


def is_degenerate_tag(tag: str) -> bool:
    if not tag:
        return True
    if len(tag) < MIN_TAG_LENGTH or len(tag) > MAX_TAG_LENGTH:
        return True
    return not any(char.isalnum() for char in tag)


def deduplicate_tags(tags) -> list[str]:
    """Normalize and deduplicate, keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for raw in tags or []:
        tag = normalize_tag(raw)
        if is_degenerate_tag(tag):
            continue
        key = tag.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(tag)
    return result


def process_ai_tags(raw_tags) -> list[str]:
    """Turn raw tags from the completion service or a user into canonical tags.

    The output never holds two entries with the same canonical form and is
    never longer than the input.
    """
    if not raw_tags or isinstance(raw_tags, (str, bytes)):
        return []

    filtered = [
        tag
        for tag in raw_tags
        if isinstance(tag, str)
        and MIN_TAG_LENGTH <= len(tag.strip()) <= MAX_TAG_LENGTH
    ]
    result = deduplicate_tags(filtered)
    logger.debug("Normalized tags %r -> %r", list(raw_tags), result)
    return result
