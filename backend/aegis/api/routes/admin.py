"""Admin routes: threat signature uploads and the audit trail."""

import hashlib
import json
import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.core.audit import log_admin_action
from aegis.db import get_db
from aegis.db.models import AdminAction, AdminAuditLog, ThreatSignature, ThreatType, User, as_utc
from aegis.schemas.common import ok
from aegis.services.auth import require_admin
from aegis.services.cache import CacheBackend, get_cache
from aegis.services.threat_lookup import invalidate_hashes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ── Models ────────────────────────────────────────────────────────────


class ThreatItem(BaseModel):
    type: Literal["hash", "package", "url", "behavior"]
    signature: str = Field(..., min_length=1, max_length=512)
    threatName: str = Field(..., min_length=1, max_length=256)
    severity: Literal["critical", "high", "medium", "low"]
    category: Literal["malware", "spyware", "adware", "trojan", "phishing"]
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ThreatUploadRequest(BaseModel):
    threats: list[ThreatItem] = Field(..., min_length=1, max_length=1000)
    version: int = Field(..., gt=0)


def upload_checksum(threats: list[ThreatItem]) -> str:
    """sha256 of the canonical JSON (sorted keys, no whitespace) of the threat list."""
    canonical = json.dumps(
        [t.model_dump(exclude_none=True) for t in threats],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def _upsert_signature(db: AsyncSession, threat: ThreatItem, version: int) -> None:
    row = (
        await db.execute(
            select(ThreatSignature).where(ThreatSignature.signature == threat.signature)
        )
    ).scalar_one_or_none()
    if row is None:
        row = ThreatSignature(signature=threat.signature)
        db.add(row)
    row.type = threat.type
    row.threat_name = threat.threatName
    row.severity = threat.severity
    row.category = threat.category
    row.description = threat.description
    row.metadata_ = threat.metadata
    row.version = version
    row.is_active = True
    await db.flush()


# ── Routes ────────────────────────────────────────────────────────────


@router.post("/threats/upload", summary="Bulk upsert threat signatures")
async def upload_threats(
    body: ThreatUploadRequest,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
):
    checksum = upload_checksum(body.threats)

    uploaded = 0
    failed = 0
    for threat in body.threats:
        try:
            async with db.begin_nested():
                await _upsert_signature(db, threat, body.version)
            uploaded += 1
        except SQLAlchemyError as e:
            failed += 1
            logger.warning("Signature %s rejected: %s", threat.signature[:16], e)

    log_admin_action(
        db,
        admin.id,
        AdminAction.THREAT_UPLOAD,
        metadata={
            "version": body.version,
            "checksum": checksum,
            "totalThreats": len(body.threats),
            "successful": uploaded,
            "failed": failed,
        },
        request=request,
    )
    await db.flush()

    await invalidate_hashes(
        cache,
        [t.signature for t in body.threats if t.type == ThreatType.HASH.value],
    )

    logger.info(
        "Admin %s uploaded signature set v%d: %d ok, %d failed",
        admin.id, body.version, uploaded, failed,
    )
    return ok({
        "uploaded": uploaded,
        "failed": failed,
        "version": body.version,
        "checksum": checksum,
    })


@router.get("/audit", summary="List admin audit entries")
async def list_audit(
    action: Optional[str] = Query(None, description="Filter by action type"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(AdminAuditLog)
    count_stmt = select(func.count()).select_from(AdminAuditLog)
    if action:
        stmt = stmt.where(AdminAuditLog.action == action)
        count_stmt = count_stmt.where(AdminAuditLog.action == action)

    total = (await db.execute(count_stmt)).scalar_one()
    rows = (
        await db.execute(
            stmt.order_by(AdminAuditLog.timestamp.desc()).limit(limit).offset(offset)
        )
    ).scalars().all()

    return ok({
        "entries": [
            {
                "id": r.id,
                "adminId": r.admin_id,
                "action": r.action,
                "targetId": r.target_id,
                "metadata": r.metadata_ or {},
                "ipAddress": r.ip_address,
                "timestamp": as_utc(r.timestamp),
            }
            for r in rows
        ],
        "total": total,
    })
