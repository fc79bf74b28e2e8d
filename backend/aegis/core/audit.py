"""Admin audit trail."""

from typing import Any, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from aegis.db.models import AdminAuditLog, AdminAction
from aegis.services.rate_limit import client_ip


def log_admin_action(
    db: AsyncSession,
    admin_id: str,
    action: AdminAction,
    metadata: Optional[dict[str, Any]] = None,
    target_id: Optional[str] = None,
    request: Optional[Request] = None,
) -> AdminAuditLog:
    """
    Stage an admin audit row in the current transaction.

    Args:
        db: Database session
        admin_id: ID of the admin performing the action
        action: What was done
        metadata: Additional details as JSON
        target_id: ID of the affected resource (if applicable)
        request: Incoming request, used for the caller IP
    """
    entry = AdminAuditLog(
        admin_id=admin_id,
        action=action.value,
        target_id=target_id,
        metadata_=metadata,
        ip_address=client_ip(request) if request else None,
    )
    db.add(entry)
    return entry
