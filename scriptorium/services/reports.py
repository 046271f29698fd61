from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any

from scriptorium.runtime.clock import utc_iso


_STYLE = """
body { font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #2c3e50; margin: 0; padding: 24px; }
main { max-width: 8.5in; margin: 0 auto; }
h1 { font-weight: 300; border-bottom: 3px solid #3498db; padding-bottom: 12px; }
section { margin: 32px 0; }
.meta { color: #7f8c8d; font-size: 14px; }
.score { font-size: 36px; font-weight: bold; }
.issue { border-left: 4px solid #f39c12; padding: 8px 12px; margin: 12px 0; background: #fdf6ec; }
.issue.high { border-color: #e74c3c; }
.issue.low { border-color: #2ecc71; }
.original { text-decoration: line-through; color: #c0392b; }
.suggestion { color: #27ae60; }
mark { background: #fff3cd; }
mark.copy { background: #f8d7da; }
.manuscript { white-space: pre-wrap; }
"""


def _e(value: Any) -> str:
    return html.escape("" if value is None else str(value))


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n<head>\n<meta charset="UTF-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        f"<title>{_e(title)}</title>\n<style>{_STYLE}</style>\n</head>\n"
        f"<body>\n<main>\n{body}\n</main>\n</body>\n</html>\n"
    )


def _list(items: Any) -> str:
    if not isinstance(items, list) or not items:
        return ""
    return "<ul>" + "".join(f"<li>{_e(item)}</li>" for item in items) + "</ul>"


def _developmental_section(dev: dict[str, Any]) -> str:
    structure = dev.get("structure") or {}
    parts = [
        "<section id=\"developmental\">",
        "<h2>Developmental Analysis</h2>",
        f"<p class=\"score\">{_e(dev.get('overallScore', 'n/a'))}<span class=\"meta\"> / 10</span></p>",
        f"<p>{_e(dev.get('summary'))}</p>",
    ]
    if structure:
        parts.append(
            f"<p class=\"meta\">Chapters: {_e(structure.get('chapterCount'))} "
            f"&middot; Words: {_e(structure.get('totalWords'))}</p>"
        )
    priorities = dev.get("topPriorities")
    if priorities:
        parts.append("<h3>Top priorities</h3>" + _list(priorities))
    parts.append("</section>")
    return "\n".join(parts)


def _issue_block(original: Any, replacement: Any, note: Any, severity: Any) -> str:
    level = _e(severity or "medium")
    lines = [f'<div class="issue {level}">']
    if original:
        lines.append(f'<span class="original">{_e(original)}</span>')
    if replacement:
        lines.append(f' &rarr; <span class="suggestion">{_e(replacement)}</span>')
    if note:
        lines.append(f"<p>{_e(note)}</p>")
    lines.append("</div>")
    return "".join(lines)


def _line_section(line: dict[str, Any]) -> str:
    issues = line.get("issues") or []
    blocks = [
        _issue_block(i.get("original"), i.get("suggestion"), i.get("explanation"), i.get("severity"))
        for i in issues
        if isinstance(i, dict)
    ]
    body = "\n".join(blocks) or "<p>No line-level issues found.</p>"
    return f'<section id="line">\n<h2>Line Editing</h2>\n<p class="meta">{len(blocks)} issues</p>\n{body}\n</section>'


def _copy_section(copy: dict[str, Any]) -> str:
    errors = copy.get("errors") or []
    blocks = [
        _issue_block(err.get("original"), err.get("correction"), err.get("type"), err.get("severity"))
        for err in errors
        if isinstance(err, dict)
    ]
    by_type = copy.get("errorsByType") or {}
    summary = ""
    if isinstance(by_type, dict) and by_type:
        summary = _list([f"{kind}: {count}" for kind, count in sorted(by_type.items())])
    body = "\n".join(blocks) or "<p>No copy-editing errors found.</p>"
    return f'<section id="copy">\n<h2>Copy Editing</h2>\n{summary}\n{body}\n</section>'


def render_report(
    *,
    report_id: str,
    title: str | None,
    developmental: dict[str, Any],
    line: dict[str, Any],
    copy: dict[str, Any],
    generated_at: float,
) -> str:
    """Self-contained HTML for the three analyses. All agent text is escaped."""
    heading = title or "Manuscript Analysis Report"
    line_count = len(line.get("issues") or [])
    copy_count = len(copy.get("errors") or [])
    summary = (
        '<section id="summary">\n<h2>Summary</h2>\n'
        f"<p>Overall score {_e(developmental.get('overallScore', 'n/a'))}, "
        f"{line_count} line-editing issues, {copy_count} copy-editing errors.</p>\n</section>"
    )
    body = "\n".join(
        [
            f"<h1>{_e(heading)}</h1>",
            f'<p class="meta">Report {_e(report_id)} &middot; generated {_e(utc_iso(generated_at))}</p>',
            summary,
            _developmental_section(developmental),
            _line_section(line),
            _copy_section(copy),
        ]
    )
    return _page(heading, body)


@dataclass(frozen=True)
class Annotation:
    start: int
    end: int
    source: str
    note: str


def locate_annotations(text: str, line: dict[str, Any], copy: dict[str, Any]) -> list[Annotation]:
    """Place each issue at the first occurrence of its original phrase; overlapping spans are dropped."""
    found: list[Annotation] = []
    candidates: list[tuple[str, dict[str, Any], str]] = []
    for issue in line.get("issues") or []:
        if isinstance(issue, dict):
            candidates.append(("line", issue, str(issue.get("suggestion") or issue.get("explanation") or "")))
    for err in copy.get("errors") or []:
        if isinstance(err, dict):
            candidates.append(("copy", err, str(err.get("correction") or "")))
    for source, entry, note in candidates:
        original = entry.get("original")
        if not original:
            continue
        start = text.find(str(original))
        if start < 0:
            continue
        found.append(Annotation(start, start + len(str(original)), source, note))

    found.sort(key=lambda a: (a.start, -a.end))
    placed: list[Annotation] = []
    for annotation in found:
        if placed and annotation.start < placed[-1].end:
            continue
        placed.append(annotation)
    return placed


def render_annotated(*, report_id: str, title: str | None, text: str, line: dict[str, Any], copy: dict[str, Any]) -> str:
    annotations = locate_annotations(text, line, copy)
    chunks: list[str] = []
    cursor = 0
    for annotation in annotations:
        chunks.append(_e(text[cursor : annotation.start]))
        chunks.append(
            f'<mark class="{annotation.source}" title="{_e(annotation.note)}">'
            f"{_e(text[annotation.start : annotation.end])}</mark>"
        )
        cursor = annotation.end
    chunks.append(_e(text[cursor:]))
    heading = title or "Annotated Manuscript"
    body = "\n".join(
        [
            f"<h1>{_e(heading)}</h1>",
            f'<p class="meta">Report {_e(report_id)} &middot; {len(annotations)} highlighted issues</p>',
            f'<div class="manuscript">{"".join(chunks)}</div>',
        ]
    )
    return _page(heading, body)
