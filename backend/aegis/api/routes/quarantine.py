"""API routes for uploading quarantined files to object storage."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.config import settings
from aegis.db import get_db
from aegis.db.models import Device, Quarantine, User
from aegis.schemas.common import ok
from aegis.services.auth import get_current_user
from aegis.services.storage import (
    StorageNotConfigured,
    get_quarantine_storage,
    quarantine_key,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quarantine", tags=["quarantine"])

MAX_UPLOAD_BYTES = 100 * 1024 * 1024


class SignedUploadRequest(BaseModel):
    quarantineId: str = Field(..., min_length=1)
    fileSize: int = Field(..., gt=0, le=MAX_UPLOAD_BYTES)
    contentType: str = Field(..., min_length=1, max_length=128)


@router.post("/signed-upload", summary="Get a presigned URL to upload a quarantined file")
async def signed_upload(
    body: SignedUploadRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage=Depends(get_quarantine_storage),
):
    if not settings.storage_configured:
        logger.error("Quarantine upload requested but S3 storage is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )

    item = (
        await db.execute(
            select(Quarantine)
            .join(Device, Device.id == Quarantine.device_id)
            .where(Quarantine.id == body.quarantineId, Device.user_id == user.id)
        )
    ).scalar_one_or_none()
    if item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Quarantine item not found",
        )

    key = quarantine_key(user.id, item.device_id, item.file_hash)
    expires_in = settings.QUARANTINE_UPLOAD_EXPIRES_SECONDS
    try:
        upload_url = storage.presign_upload(
            key,
            content_type=body.contentType,
            content_length=body.fileSize,
            metadata={
                "userId": user.id,
                "deviceId": item.device_id,
                "fileHash": item.file_hash,
            },
            expires_in=expires_in,
        )
    except StorageNotConfigured:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )

    item.storage_key = key
    item.file_size = body.fileSize
    item.upload_status = "pending"
    await db.flush()

    return ok({"uploadUrl": upload_url, "storageKey": key, "expiresIn": expires_in})
