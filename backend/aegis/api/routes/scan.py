"""API routes for hash reputation lookups and scan reports."""

import logging
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.config import settings
from aegis.db import get_db
from aegis.db.models import (
    Quarantine,
    QuarantineStatus,
    ScanLog,
    ThreatSignature,
    ThreatType,
    User,
)
from aegis.schemas.common import ok
from aegis.services.auth import get_current_user
from aegis.services.cache import CacheBackend, get_cache
from aegis.services.devices import get_owned_device
from aegis.services.rate_limit import user_rate_limit
from aegis.services.telemetry import record_event
from aegis.services.threat_lookup import check_hashes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scan", tags=["scan"])

Sha256 = Annotated[str, Field(min_length=64, max_length=64)]


# ── Models ────────────────────────────────────────────────────────────


class HashCheckRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    hashes: list[Sha256] = Field(..., min_length=1, max_length=100)


class ReportedThreat(BaseModel):
    fileName: str = Field(..., max_length=512)
    filePath: str
    fileHash: str = Field(..., min_length=1, max_length=128)
    threatName: str = Field(..., max_length=256)
    severity: Literal["low", "medium", "high", "critical"]


class ScanReportRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    scanType: Literal["quick", "full", "custom"]
    status: Literal["completed", "failed", "cancelled"]
    filesScanned: int = Field(..., ge=0)
    threatsFound: int = Field(..., ge=0)
    startedAt: datetime
    completedAt: Optional[datetime] = None
    threats: Optional[list[ReportedThreat]] = None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ── Routes ────────────────────────────────────────────────────────────


@router.post("/hash-check", summary="Look up file hashes against known threats")
async def hash_check(
    body: HashCheckRequest,
    user: User = Depends(user_rate_limit("hash_check", 50, 60)),
    db: AsyncSession = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
):
    device = await get_owned_device(db, user.id, body.deviceId)

    results = await check_hashes(
        db, cache, body.hashes, settings.THREAT_CACHE_TTL_SECONDS
    )
    threats_found = sum(1 for r in results if r["isThreat"])

    if threats_found:
        record_event(
            db,
            user.id,
            "threats_detected",
            {
                "deviceId": device.id,
                "count": threats_found,
                "hashes": [r["hash"] for r in results if r["isThreat"]],
            },
            device_id=device.id,
        )
        logger.info("Device %s reported %d known threats", device.id, threats_found)

    return ok({
        "results": results,
        "scanned": len(body.hashes),
        "threatsFound": threats_found,
    })


@router.post("/report", summary="Submit the results of a scan run")
async def scan_report(
    body: ScanReportRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    device = await get_owned_device(db, user.id, body.deviceId)

    started_at = _aware(body.startedAt)
    completed_at = _aware(body.completedAt) if body.completedAt else datetime.now(timezone.utc)
    if started_at > completed_at:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid timestamps: startedAt must be before or equal to completedAt",
        )
    duration_ms = int((completed_at - started_at).total_seconds() * 1000)
    completed = body.status == "completed"

    threats = body.threats or []
    scan_log = ScanLog(
        device_id=device.id,
        scan_type=body.scanType,
        status=body.status,
        files_scanned=body.filesScanned,
        threats_found=body.threatsFound,
        started_at=started_at,
        completed_at=completed_at if completed else None,
        duration=duration_ms if completed else None,
        metadata_={"threats": [t.model_dump() for t in threats]} if threats else None,
    )
    db.add(scan_log)
    await db.flush()

    distinct: dict[tuple[str, str], ReportedThreat] = {}
    for threat in threats:
        distinct.setdefault((threat.fileHash, threat.filePath), threat)

    signatures: dict[str, str] = {}
    if distinct:
        rows = await db.execute(
            select(ThreatSignature.signature, ThreatSignature.id).where(
                ThreatSignature.signature.in_({h for h, _ in distinct}),
                ThreatSignature.type == ThreatType.HASH.value,
                ThreatSignature.is_active.is_(True),
            )
        )
        signatures = {sig: sig_id for sig, sig_id in rows.all()}

    quarantined = []
    for threat in distinct.values():
        row = Quarantine(
            device_id=device.id,
            scan_log_id=scan_log.id,
            threat_signature_id=signatures.get(threat.fileHash),
            file_name=threat.fileName,
            file_path=threat.filePath,
            file_size=0,
            file_hash=threat.fileHash,
            threat_name=threat.threatName,
            severity=threat.severity,
            status=QuarantineStatus.QUARANTINED.value,
        )
        db.add(row)
        quarantined.append(row)

    record_event(
        db,
        user.id,
        "scan_completed",
        {
            "scanType": body.scanType,
            "status": body.status,
            "filesScanned": body.filesScanned,
            "threatsFound": body.threatsFound,
            "duration": duration_ms,
        },
        device_id=device.id,
    )
    await db.flush()

    return ok({
        "scanLogId": scan_log.id,
        "quarantined": [q.id for q in quarantined],
    })
