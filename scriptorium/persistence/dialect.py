from __future__ import annotations

import re
from dataclasses import dataclass, field


# Ordered rewrites from the embedded SQL dialect to PostgreSQL.
_REWRITES: tuple[tuple[str, re.Pattern[str], str], ...] = (
    (
        "autoincrement",
        re.compile(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", re.IGNORECASE),
        "BIGSERIAL PRIMARY KEY",
    ),
    (
        "unixepoch",
        re.compile(r"DEFAULT\s*\(\s*unixepoch\(\)\s*\)", re.IGNORECASE),
        "DEFAULT EXTRACT(EPOCH FROM NOW())::BIGINT",
    ),
    ("unixepoch", re.compile(r"unixepoch\(\)", re.IGNORECASE), "EXTRACT(EPOCH FROM NOW())::BIGINT"),
    ("timestamp_integer", re.compile(r"\b(\w+_at)\s+INTEGER\b", re.IGNORECASE), r"\1 BIGINT"),
    ("real", re.compile(r"\bREAL\b", re.IGNORECASE), "DOUBLE PRECISION"),
    ("blob", re.compile(r"\bBLOB\b", re.IGNORECASE), "BYTEA"),
    ("datetime_now", re.compile(r"datetime\(\s*'now'\s*\)", re.IGNORECASE), "NOW()"),
    ("json_array_length", re.compile(r"\bjson_array_length\(", re.IGNORECASE), "jsonb_array_length("),
)

_INSERT_OR_IGNORE_RE = re.compile(r"INSERT\s+OR\s+IGNORE\s+INTO\s+(.*?);", re.IGNORECASE | re.DOTALL)
_INSERT_OR_REPLACE_RE = re.compile(r"INSERT\s+OR\s+REPLACE\s+INTO", re.IGNORECASE)


@dataclass
class ConversionResult:
    sql: str
    counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def convert_sqlite_to_postgres(sql: str) -> ConversionResult:
    """Rewrite SQLite-only constructs; anything without a mechanical translation is flagged."""
    counts: dict[str, int] = {}
    warnings: list[str] = []
    converted = sql
    for name, pattern, replacement in _REWRITES:
        converted, hits = pattern.subn(replacement, converted)
        if hits:
            counts[name] = counts.get(name, 0) + hits

    def _ignore(match: re.Match[str]) -> str:
        return f"INSERT INTO {match.group(1).rstrip()} ON CONFLICT DO NOTHING;"

    converted, hits = _INSERT_OR_IGNORE_RE.subn(_ignore, converted)
    if hits:
        counts["insert_or_ignore"] = hits
    if _INSERT_OR_REPLACE_RE.search(converted):
        warnings.append("INSERT OR REPLACE needs an explicit ON CONFLICT (...) DO UPDATE clause")
    if re.search(r"\bCREATE\s+TRIGGER\b", converted, re.IGNORECASE):
        warnings.append("Triggers must be rewritten as PL/pgSQL functions")
    return ConversionResult(sql=converted, counts=counts, warnings=warnings)
