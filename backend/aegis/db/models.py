"""SQLAlchemy ORM models for the Aegis backend.

All persistent entities: users, devices, push tokens, threat signatures,
scan logs, quarantine records, subscriptions, anti-theft commands,
telemetry and the admin audit trail.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    JSON,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .engine import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Enumerations (stored as plain strings) ────────────────────────────


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPPORT = "support"
    SUPERADMIN = "superadmin"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class ThreatType(str, Enum):
    HASH = "hash"
    PACKAGE = "package"
    URL = "url"
    BEHAVIOR = "behavior"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ThreatCategory(str, Enum):
    MALWARE = "malware"
    SPYWARE = "spyware"
    ADWARE = "adware"
    TROJAN = "trojan"
    PHISHING = "phishing"


class QuarantineStatus(str, Enum):
    QUARANTINED = "quarantined"
    RESTORED = "restored"
    DELETED = "deleted"


class CommandType(str, Enum):
    LOCATE = "locate"
    RING = "ring"
    LOCK = "lock"
    WIPE = "wipe"


class CommandStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    EXECUTED = "executed"
    FAILED = "failed"


class AdminAction(str, Enum):
    THREAT_UPLOAD = "threat_upload"
    USER_BAN = "user_ban"
    SIGNATURE_UPDATE = "signature_update"


ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trial")


# ── Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    auth_provider: Mapped[str] = mapped_column(String(16), nullable=False)  # google | apple | email
    auth_provider_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, index=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default=UserRole.USER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    devices: Mapped[list["Device"]] = relationship(back_populates="user", lazy="noload")
    subscriptions: Mapped[list["Subscription"]] = relationship(
        back_populates="user", lazy="noload"
    )


# ── Devices & push tokens ─────────────────────────────────────────────


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # hardware / install identifier reported by the app
    device_id: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    device_name: Mapped[str] = mapped_column(String(256), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)  # ios | android
    os_version: Mapped[str] = mapped_column(String(64), nullable=False)
    app_version: Mapped[str] = mapped_column(String(64), nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped["User"] = relationship(back_populates="devices", lazy="noload")
    push_tokens: Mapped[list["PushToken"]] = relationship(
        back_populates="device", lazy="noload", cascade="all, delete-orphan"
    )


class PushToken(Base):
    __tablename__ = "push_tokens"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    device_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    platform: Mapped[str] = mapped_column(String(8), nullable=False)  # apns | fcm
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    device: Mapped["Device"] = relationship(back_populates="push_tokens", lazy="noload")


# ── Threat signatures ─────────────────────────────────────────────────


class ThreatSignature(Base):
    __tablename__ = "threat_signatures"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    signature: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    threat_name: Mapped[str] = mapped_column(String(256), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_threat_signatures_type_active", "type", "is_active"),
    )


# ── Scans & quarantine ────────────────────────────────────────────────


class ScanLog(Base):
    __tablename__ = "scan_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    device_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_type: Mapped[str] = mapped_column(String(16), nullable=False)  # quick | full | custom
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    files_scanned: Mapped[int] = mapped_column(Integer, default=0)
    threats_found: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # milliseconds
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)


class Quarantine(Base):
    __tablename__ = "quarantine"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    device_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_log_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("scan_logs.id", ondelete="SET NULL"), nullable=True
    )
    threat_signature_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("threat_signatures.id"), nullable=True, index=True
    )
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    file_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    threat_name: Mapped[str] = mapped_column(String(256), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), default=Severity.MEDIUM.value)
    status: Mapped[str] = mapped_column(
        String(16), default=QuarantineStatus.QUARANTINED.value, index=True
    )
    storage_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    upload_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


# ── Subscriptions ─────────────────────────────────────────────────────


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tier: Mapped[str] = mapped_column(String(16), nullable=False)  # free | premium
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # active | trial | expired | cancelled
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    platform_sub_id: Mapped[Optional[str]] = mapped_column(String(512), unique=True, nullable=True)
    receipt_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="noload")


# ── Anti-theft ────────────────────────────────────────────────────────


class AntiTheftCommand(Base):
    __tablename__ = "anti_theft_commands"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    device_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    command_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    issued_by: Mapped[str] = mapped_column(String(32), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)


# ── Telemetry & audit ─────────────────────────────────────────────────


class TelemetryLog(Base):
    __tablename__ = "telemetry_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("devices.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    event_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    admin_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
