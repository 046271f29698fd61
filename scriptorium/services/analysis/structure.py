from __future__ import annotations

import re
from typing import Any


EXCERPT_CHARS = 500

# Chapter headings like "Chapter 3", "CHAPTER XII: The Fall" at the start of a line.
_CHAPTER_RE = re.compile(r"^chapter\s+(\d+|[ivxlcdm]+)\b[ \t]*[:.\-]?[ \t]*([^\n]*)", re.IGNORECASE | re.MULTILINE)


def count_words(text: str) -> int:
    return len(text.split())


def analyze_structure(text: str) -> dict[str, Any]:
    """Chapter boundaries, per-chapter word counts and excerpts, and overall totals."""
    matches = list(_CHAPTER_RE.finditer(text))
    chapters: list[dict[str, Any]] = []
    for index, match in enumerate(matches):
        start = match.start()
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        body = text[start:end]
        chapters.append(
            {
                "number": index + 1,
                "label": match.group(1),
                "title": match.group(2).strip() or f"Chapter {index + 1}",
                "position": start,
                "wordCount": count_words(body),
                "excerpt": body[:EXCERPT_CHARS],
            }
        )
    total_words = count_words(text)
    average = round(total_words / len(chapters)) if chapters else 0
    return {
        "totalWords": total_words,
        "chapterCount": len(chapters),
        "avgChapterLength": average,
        "chapters": chapters,
        "hasStructuredChapters": bool(chapters),
    }
