"""
Document Stats Plugin for Quarry

Shows word count and estimated reading time for the open document, and an
outline of its markdown headings.
"""

import re

HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")


def _text(api):
    document = api.get_current_document() or {}
    return document.get("content") or ""


def count_words(text):
    return len(re.findall(r"\b\w+\b", text))


def outline(text, max_depth=6):
    headings = []
    in_code = False

    for line in text.splitlines():
        if line.lstrip().startswith("```"):
            in_code = not in_code
            continue
        if in_code:
            continue

        match = HEADING.match(line)
        if match and len(match.group(1)) <= max_depth:
            headings.append({"level": len(match.group(1)), "title": match.group(2)})

    return headings


def render_word_count(props):
    words = count_words(_text(props.api))
    per_minute = max(1, int(props.api.get_setting("words_per_minute", 200)))

    return {
        "type": "stat",
        "words": words,
        "reading_minutes": -(-words // per_minute),
        "theme": props.theme,
    }


def render_outline(props):
    depth = int(props.settings.get("max_heading_depth", 3))
    return {"type": "outline", "items": outline(_text(props.api), depth)}


def announce_stats(api):
    words = count_words(_text(api))
    api.notify(f"{words} words in this document")
    return words
