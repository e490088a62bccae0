import pytest

from app.services.tag_normalizer import (
    deduplicate_tags,
    is_degenerate_tag,
    normalize_tag,
    process_ai_tags,
    singularize_word,
)


SAMPLES = [
    "",
    "   ",
    "AI",
    " ai ",
    "JavaScript",
    "machine_learning",
    "Machine   Learning!!",
    "web-frameworks",
    "Web -- Frameworks",
    "news",
    "Kubernetes",
    "libraries",
    "boxes",
    "classes",
    "mens",
    "people",
    "C++",
    "ÉCOLE Ouverte",
    "straße",
    "ﬁles",
    "--",
    "#python",
    "data science tools",
    "2024 elections",
]


@pytest.mark.parametrize("raw", SAMPLES)
def test_normalize_is_idempotent(raw):
    once = normalize_tag(raw)
    assert normalize_tag(once) == once


def test_normalize_applies_casing_and_character_policy():
    assert normalize_tag("JavaScript") == "Javascript"
    assert normalize_tag("machine_learning") == "Machine Learning"
    assert normalize_tag("  Machine   Learning!! ") == "Machine Learning"
    assert normalize_tag("Web -- Frameworks") == "Web-Framework"
    assert normalize_tag("#python") == "Python"
    assert normalize_tag("--") == ""
    assert normalize_tag("   ") == ""
    assert normalize_tag(None) == ""


def test_singularize_is_conservative():
    assert singularize_word("libraries") == "library"
    assert singularize_word("boxes") == "box"
    assert singularize_word("classes") == "class"
    assert singularize_word("tools") == "tool"
    assert singularize_word("houses") == "house"
    assert singularize_word("viruses") == "virus"
    assert singularize_word("news") == "news"
    assert singularize_word("kubernetes") == "kubernetes"
    assert singularize_word("analytics") == "analytics"
    assert singularize_word("bus") == "bus"
    assert singularize_word("people") == "person"
    assert singularize_word("mens") == "man"


def test_only_last_word_is_singularized():
    assert normalize_tag("data science tools") == "Data Science Tool"
    assert normalize_tag("sales operations") == "Sales Operations"


def test_process_ai_tags_collapses_case_variants():
    assert process_ai_tags(["AI", "ai", " Ai "]) == ["Ai"]


def test_process_ai_tags_keeps_first_seen_order_and_drops_degenerate():
    result = process_ai_tags(
        ["Python", "x", "Web Frameworks", "python", "!!", "web framework", "a" * 51]
    )
    assert result == ["Python", "Web Framework"]


@pytest.mark.parametrize(
    "raw",
    [
        ["AI", "ai", " Ai "],
        ["Tools", "tool", "TOOLS", "tooling"],
        ["", "  ", "--", "ok"],
        SAMPLES,
    ],
)
def test_process_ai_tags_output_is_unique_and_never_longer(raw):
    result = process_ai_tags(raw)
    assert len(result) <= len(raw)
    keys = [normalize_tag(tag).casefold() for tag in result]
    assert len(keys) == len(set(keys))
    assert all(normalize_tag(tag) == tag for tag in result)


def test_process_ai_tags_rejects_non_lists():
    assert process_ai_tags(None) == []
    assert process_ai_tags("python, web") == []
    assert process_ai_tags([None, 3, "Python"]) == ["Python"]


def test_degenerate_tags():
    assert is_degenerate_tag("")
    assert is_degenerate_tag("a")
    assert is_degenerate_tag("-" * 3)
    assert not is_degenerate_tag("Go")
    assert deduplicate_tags(["go", "Go", "GO"]) == ["Go"]
