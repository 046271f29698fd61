from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile

from scriptorium.apps.api.deps import get_ingest_service, get_settings_dep, require_auth
from scriptorium.core.config import Settings
from scriptorium.domain.models import User
from scriptorium.services.ingest.upload import IngestService, UploadedFile, read_bounded


router = APIRouter(prefix="/upload", tags=["upload"])


@router.post("/manuscript", status_code=201)
async def upload_manuscript(
    file: UploadFile | None = File(default=None),
    title: str | None = Form(default=None),
    genre: str | None = Form(default=None),
    principal: User = Depends(require_auth),
    ingest: IngestService = Depends(get_ingest_service),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    upload = None
    if file is not None:
        upload = UploadedFile(
            filename=file.filename or "",
            content_type=file.content_type,
            data=await read_bounded(file, settings.max_upload_bytes),
        )
    return await ingest.ingest(principal, upload, title=title, genre=genre)
