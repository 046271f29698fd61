from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from scriptorium.core.errors import StorageError
from scriptorium.runtime.relational import Database


logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).with_name("migrations")
_FILENAME_RE = re.compile(r"^migration_(\d{3,})_[A-Za-z0-9_\-]+\.sql$")
_DOLLAR_TAG_RE = re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*\$|\$\$")
_BENIGN_MARKERS = ("already exists", "duplicate object", "duplicate column")

_STATE_TABLE_SQL = (
    "CREATE TABLE IF NOT EXISTS schema_migrations ("
    "name TEXT NOT NULL UNIQUE, "
    "applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP)"
)


class MigrationOrderError(ValueError):
    """Migration file numbers are not strictly increasing."""


@dataclass(frozen=True)
class MigrationScript:
    number: int
    name: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


@dataclass
class MigrationReport:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def discover_migrations(directory: Path | None = None) -> list[MigrationScript]:
    """List ``migration_NNN_*.sql`` files ordered by number."""
    directory = directory or MIGRATIONS_DIR
    scripts: list[MigrationScript] = []
    for path in directory.iterdir():
        match = _FILENAME_RE.match(path.name)
        if match is None or not path.is_file():
            continue
        scripts.append(MigrationScript(int(match.group(1)), path.name, path))
    scripts.sort(key=lambda script: (script.number, script.name))
    for previous, current in zip(scripts, scripts[1:]):
        if current.number <= previous.number:
            raise MigrationOrderError(
                f"Migration numbers must strictly increase: {previous.name} and {current.name}"
            )
    return scripts


def _strip_comment_lines(sql: str) -> str:
    return "\n".join(line for line in sql.splitlines() if not line.strip().startswith("--"))


def split_statements(sql: str) -> list[str]:
    """Split a script on semicolons, never inside quotes or ``$tag$ ... $tag$`` bodies."""
    body = _strip_comment_lines(sql)
    statements: list[str] = []
    current: list[str] = []
    dollar_tag: str | None = None
    quote: str | None = None
    index = 0
    while index < len(body):
        char = body[index]
        if dollar_tag is not None:
            if body.startswith(dollar_tag, index):
                current.append(dollar_tag)
                index += len(dollar_tag)
                dollar_tag = None
                continue
            current.append(char)
            index += 1
            continue
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            index += 1
            continue
        if char in ("'", '"'):
            quote = char
            current.append(char)
            index += 1
            continue
        if char == "$":
            match = _DOLLAR_TAG_RE.match(body, index)
            if match is not None:
                dollar_tag = match.group(0)
                current.append(dollar_tag)
                index = match.end()
                continue
        if char == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            index += 1
            continue
        current.append(char)
        index += 1
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


def is_benign_error(exc: BaseException) -> bool:
    # Re-running DDL against an existing object is treated as already applied.
    messages = [str(exc)]
    if exc.__cause__ is not None:
        messages.append(str(exc.__cause__))
    lowered = " ".join(messages).lower()
    return any(marker in lowered for marker in _BENIGN_MARKERS)


async def applied_migrations(db: Database) -> set[str]:
    rows = await db.prepare("SELECT name FROM schema_migrations").bind().all()
    return {row["name"] for row in rows}


async def apply_migrations(db: Database, directory: Path | None = None) -> MigrationReport:
    """Apply pending scripts in order; a failing script is skipped and later ones still run."""
    report = MigrationReport()
    await db.exec_script_statement(_STATE_TABLE_SQL)
    done = await applied_migrations(db)
    for script in discover_migrations(directory):
        if script.name in done:
            report.skipped.append(script.name)
            continue
        error = await _apply_script(db, script)
        if error is not None:
            report.failed[script.name] = error
            logger.error("migration_failed name=%s error=%s", script.name, error)
            continue
        await db.prepare("INSERT INTO schema_migrations (name) VALUES (?)").bind(script.name).run()
        report.applied.append(script.name)
        logger.info("migration_applied name=%s", script.name)
    return report


async def _apply_script(db: Database, script: MigrationScript) -> str | None:
    for statement in split_statements(script.read()):
        try:
            await db.exec_script_statement(statement)
        except StorageError as exc:
            if is_benign_error(exc):
                logger.info("migration_statement_exists name=%s", script.name)
                continue
            return str(exc.__cause__ or exc)
    return None
