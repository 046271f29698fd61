from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field


Role = Literal["user", "admin"]
Tier = Literal["free", "pro", "enterprise"]

MANUSCRIPT_UPLOADED = "uploaded"
MANUSCRIPT_QUEUED = "queued"
MANUSCRIPT_ANALYZING = "analyzing"
MANUSCRIPT_ANALYZED = "analyzed"
MANUSCRIPT_FAILED = "failed"
MANUSCRIPT_ARCHIVED = "archived"

TIERS: tuple[str, ...] = ("free", "pro", "enterprise")


class User(BaseModel):
    id: str
    email: str
    full_name: str | None = None
    role: Role = "user"
    tier: Tier = "free"
    email_verified: bool = False
    created_at: int
    updated_at: int
    last_login_at: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "User":
        # Verifier columns never leave the repository layer through this model.
        return cls(
            id=row["id"],
            email=row["email"],
            full_name=row.get("full_name"),
            role=row.get("role") or "user",
            tier=row.get("tier") or "free",
            email_verified=bool(row.get("email_verified")),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            last_login_at=row.get("last_login_at"),
        )

    def public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "fullName": self.full_name,
            "role": self.role,
            "tier": self.tier,
            "emailVerified": self.email_verified,
            "createdAt": self.created_at,
        }


class Manuscript(BaseModel):
    id: str
    user_id: str
    title: str
    genre: str | None = None
    word_count: int | None = None
    status: str = MANUSCRIPT_UPLOADED
    blob_key: str
    report_id: str | None = None
    file_type: str
    file_size: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    uploaded_at: int
    updated_at: int
    analyzed_at: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Manuscript":
        raw_metadata = row.get("metadata")
        if isinstance(raw_metadata, str) and raw_metadata:
            metadata = json.loads(raw_metadata)
        elif isinstance(raw_metadata, dict):
            metadata = raw_metadata
        else:
            metadata = {}
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            genre=row.get("genre"),
            word_count=row.get("word_count"),
            status=row["status"],
            blob_key=row["blob_key"],
            report_id=row.get("report_id"),
            file_type=row["file_type"],
            file_size=int(row["file_size"]),
            metadata=metadata,
            uploaded_at=int(row["uploaded_at"]),
            updated_at=int(row["updated_at"]),
            analyzed_at=row.get("analyzed_at"),
        )

    def public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "genre": self.genre,
            "wordCount": self.word_count,
            "status": self.status,
            "reportId": self.report_id,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "metadata": self.metadata,
            "uploadedAt": self.uploaded_at,
            "updatedAt": self.updated_at,
            "analyzedAt": self.analyzed_at,
        }
