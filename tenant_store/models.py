"""Domain models for tenant records, their configuration blob and audit entries."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

TENANT_HEADER: tuple[str, ...] = ("id", "principalEmail", "active", "configBlob", "lastModified")
AUDIT_HEADER: tuple[str, ...] = ("timestamp", "actorPrincipal", "targetRecordId", "targetPrincipalEmail", "reason")

COLUMN_MAPPING_KEYS: tuple[str, ...] = ("answer", "reason", "class", "name", "timestamp", "email")
MAX_COLUMN_INDEX = 99

DEFAULT_SETUP_STATUS = "pending"
DEFAULT_THEME = "default"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_THEME_LENGTH = 50

_KNOWN_CONFIG_KEYS = {
    "setupStatus",
    "isPublished",
    "spreadsheetId",
    "sheetName",
    "formUrl",
    "displayMode",
    "displaySettings",
    "columnMapping",
    "etag",
    "lastAccessedAt",
}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class DisplaySettings:
    show_names: bool = False
    show_reactions: bool = False
    theme: str = DEFAULT_THEME
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> DisplaySettings:
        if not isinstance(payload, Mapping):
            return cls()
        theme = str(payload.get("theme") or DEFAULT_THEME)[:MAX_THEME_LENGTH]
        try:
            page_size = int(payload.get("pageSize") or DEFAULT_PAGE_SIZE)
        except (TypeError, ValueError):
            page_size = DEFAULT_PAGE_SIZE
        return cls(
            show_names=_coerce_bool(payload.get("showNames")),
            show_reactions=_coerce_bool(payload.get("showReactions")),
            theme=theme,
            page_size=min(max(page_size, 1), MAX_PAGE_SIZE),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "showNames": self.show_names,
            "showReactions": self.show_reactions,
            "theme": self.theme,
            "pageSize": self.page_size,
        }


def sanitize_column_mapping(payload: Mapping[str, Any] | None) -> dict[str, int]:
    """Keep only known mapping keys whose value is a column index in range."""

    if not isinstance(payload, Mapping):
        return {}
    sanitized: dict[str, int] = {}
    for key in COLUMN_MAPPING_KEYS:
        value = payload.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            continue
        if 0 <= value <= MAX_COLUMN_INDEX:
            sanitized[key] = value
    return sanitized


@dataclass(slots=True)
class TenantConfig:
    """Typed view of a tenant's configuration blob.

    Keys the model does not know about are preserved in ``extras`` and written
    back unchanged, so older or newer writers never lose each other's data.
    """

    setup_status: str = DEFAULT_SETUP_STATUS
    is_published: bool = False
    spreadsheet_id: str | None = None
    sheet_name: str | None = None
    form_url: str | None = None
    display_mode: str | None = None
    display_settings: DisplaySettings = field(default_factory=DisplaySettings)
    column_mapping: dict[str, int] = field(default_factory=dict)
    etag: str | None = None
    last_accessed_at: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def default(cls) -> TenantConfig:
        return cls()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TenantConfig:
        extras = {key: value for key, value in payload.items() if key not in _KNOWN_CONFIG_KEYS}
        return cls(
            setup_status=str(payload.get("setupStatus") or DEFAULT_SETUP_STATUS),
            is_published=_coerce_bool(payload.get("isPublished", False)),
            spreadsheet_id=_optional_str(payload.get("spreadsheetId")),
            sheet_name=_optional_str(payload.get("sheetName")),
            form_url=_optional_str(payload.get("formUrl")),
            display_mode=_optional_str(payload.get("displayMode")),
            display_settings=DisplaySettings.from_dict(payload.get("displaySettings")),
            column_mapping=sanitize_column_mapping(payload.get("columnMapping")),
            etag=_optional_str(payload.get("etag")),
            last_accessed_at=_optional_str(payload.get("lastAccessedAt")),
            extras=dict(extras),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extras)
        payload["setupStatus"] = self.setup_status
        payload["isPublished"] = self.is_published
        optional = {
            "spreadsheetId": self.spreadsheet_id,
            "sheetName": self.sheet_name,
            "formUrl": self.form_url,
            "displayMode": self.display_mode,
            "etag": self.etag,
            "lastAccessedAt": self.last_accessed_at,
        }
        for key, value in optional.items():
            if value is not None:
                payload[key] = value
        payload["displaySettings"] = self.display_settings.to_dict()
        if self.column_mapping:
            payload["columnMapping"] = dict(self.column_mapping)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    def copy(self) -> TenantConfig:
        return TenantConfig.from_dict(json.loads(self.to_json()))


@dataclass(slots=True)
class TenantRecord:
    """One row of the tenant table."""

    id: str
    principal_email: str
    active: bool
    config: TenantConfig
    last_modified: datetime

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> TenantRecord:
        """Parse a raw row; raises ``ValueError`` for rows that cannot be decoded."""

        if len(row) < len(TENANT_HEADER):
            raise ValueError(f"Tenant row has {len(row)} columns, expected {len(TENANT_HEADER)}")
        record_id, email, active, blob, modified = row[: len(TENANT_HEADER)]
        if not record_id:
            raise ValueError("Tenant row is missing an id")
        payload = json.loads(blob) if blob else {}
        if not isinstance(payload, dict):
            raise ValueError("configBlob must decode to a JSON object")
        return cls(
            id=str(record_id),
            principal_email=str(email or ""),
            active=_coerce_bool(active),
            config=TenantConfig.from_dict(payload),
            last_modified=parse_timestamp(modified),
        )

    def to_row(self) -> tuple[Any, ...]:
        return (
            self.id,
            self.principal_email,
            self.active,
            self.config.to_json(),
            format_timestamp(self.last_modified),
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TenantRecord:
        return cls(
            id=str(payload["id"]),
            principal_email=str(payload["principalEmail"]),
            active=bool(payload["active"]),
            config=TenantConfig.from_dict(payload.get("config") or {}),
            last_modified=parse_timestamp(payload["lastModified"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "principalEmail": self.principal_email,
            "active": self.active,
            "config": self.config.to_dict(),
            "lastModified": format_timestamp(self.last_modified),
        }

    def with_changes(self, **changes: Any) -> TenantRecord:
        return replace(self, **changes)


@dataclass(slots=True)
class AuditEntry:
    timestamp: datetime
    actor_principal: str
    target_record_id: str
    target_principal_email: str
    reason: str

    def to_row(self) -> tuple[Any, ...]:
        return (
            format_timestamp(self.timestamp),
            self.actor_principal,
            self.target_record_id,
            self.target_principal_email,
            self.reason,
        )

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> AuditEntry:
        if len(row) < len(AUDIT_HEADER):
            raise ValueError(f"Audit row has {len(row)} columns, expected {len(AUDIT_HEADER)}")
        timestamp, actor, record_id, email, reason = row[: len(AUDIT_HEADER)]
        return cls(
            timestamp=parse_timestamp(timestamp),
            actor_principal=str(actor),
            target_record_id=str(record_id),
            target_principal_email=str(email),
            reason=str(reason or ""),
        )


@dataclass(frozen=True, slots=True)
class DeleteAck:
    """Result of a successful delete; ``audit_recorded`` is False when the audit append failed."""

    target_id: str
    audit_recorded: bool
