from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from scriptorium.core.errors import ValidationError
from scriptorium.providers.agents.base import STAGE_COPY, STAGE_DEVELOPMENTAL, STAGE_LINE


# Processed-bucket suffixes appended to the raw blob key.
RESULT_SUFFIXES: dict[str, str] = {
    STAGE_DEVELOPMENTAL: "-analysis.json",
    STAGE_LINE: "-line-analysis.json",
    STAGE_COPY: "-copy-analysis.json",
}

STAGE_LABELS: dict[str, str] = {
    STAGE_DEVELOPMENTAL: "Developmental analysis",
    STAGE_LINE: "Line editing",
    STAGE_COPY: "Copy editing",
}

_REQUIRED_FIELDS = ("reportId", "blobKey", "principalId", "manuscriptId")


def result_key(blob_key: str, stage: str) -> str:
    return f"{blob_key}{RESULT_SUFFIXES[stage]}"


@dataclass(frozen=True)
class PipelineJob:
    """Body shared by analysis-queue and asset-queue messages."""

    report_id: str
    blob_key: str
    principal_id: str
    manuscript_id: str
    genre: str | None = None
    attempt: int = 0
    author_data: dict[str, Any] | None = None
    series_data: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "PipelineJob":
        missing = [name for name in _REQUIRED_FIELDS if not body.get(name)]
        if missing:
            raise ValidationError("Queue message is missing fields", details={"missing": missing})
        known = {*_REQUIRED_FIELDS, "genre", "attempt", "authorData", "seriesData"}
        return cls(
            report_id=str(body["reportId"]),
            blob_key=str(body["blobKey"]),
            principal_id=str(body["principalId"]),
            manuscript_id=str(body["manuscriptId"]),
            genre=body.get("genre"),
            attempt=int(body.get("attempt") or 0),
            author_data=body.get("authorData"),
            series_data=body.get("seriesData"),
            extra={key: value for key, value in body.items() if key not in known},
        )

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "reportId": self.report_id,
            "blobKey": self.blob_key,
            "principalId": self.principal_id,
            "manuscriptId": self.manuscript_id,
            "genre": self.genre,
        }
        if self.author_data is not None:
            body["authorData"] = self.author_data
        if self.series_data is not None:
            body["seriesData"] = self.series_data
        return body
