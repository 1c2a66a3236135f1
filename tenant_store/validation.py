"""Validation of principal emails and tenant configuration blobs."""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Mapping
from uuid import uuid4

import jsonschema
from jsonschema import Draft202012Validator

from .errors import ValidationError
from .models import TenantConfig, format_timestamp

MAX_CONFIG_BYTES = 32_000
MAX_EMAIL_LENGTH = 254

LEGACY_CONFIG_FIELDS: tuple[str, ...] = ("setupComplete", "isDraft", "questionText")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CONFIG_BLOB_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "setupStatus": {"type": "string", "maxLength": 50},
        "isPublished": {"type": "boolean"},
        "spreadsheetId": {"type": "string", "maxLength": 200},
        "sheetName": {"type": "string", "maxLength": 200},
        "formUrl": {"type": "string", "maxLength": 2048},
        "displayMode": {"type": "string", "maxLength": 50},
        "displaySettings": {
            "type": "object",
            "properties": {
                "showNames": {"type": "boolean"},
                "showReactions": {"type": "boolean"},
                "theme": {"type": "string"},
                "pageSize": {"type": "integer"},
            },
        },
        "columnMapping": {
            "type": "object",
            "additionalProperties": {"type": "integer"},
        },
        "etag": {"type": "string"},
        "lastAccessedAt": {"type": "string"},
    },
}

Draft202012Validator.check_schema(CONFIG_BLOB_SCHEMA)
_CONFIG_VALIDATOR = Draft202012Validator(CONFIG_BLOB_SCHEMA)


def normalize_email(value: Any) -> str:
    """Return the case-folded email or raise ``ValidationError``."""

    if not isinstance(value, str):
        raise ValidationError("Principal email must be a string")
    normalized = value.strip().lower()
    if not normalized:
        raise ValidationError("Principal email must not be empty")
    if len(normalized) > MAX_EMAIL_LENGTH or not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("Principal email is not a valid address", details={"email": normalized})
    return normalized


def validate_config_payload(payload: Any) -> None:
    if not isinstance(payload, Mapping):
        raise ValidationError("configBlob must be a JSON object")
    try:
        _CONFIG_VALIDATOR.validate(dict(payload))
    except jsonschema.ValidationError as exc:
        raise ValidationError(
            f"configBlob failed schema validation: {exc.message}",
            details={"path": list(exc.path)},
        ) from exc


def parse_config_blob(blob: str | Mapping[str, Any]) -> TenantConfig:
    """Decode and validate a raw ``configBlob`` value into a ``TenantConfig``."""

    if isinstance(blob, Mapping):
        payload: Any = dict(blob)
    else:
        try:
            payload = json.loads(blob)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValidationError("configBlob is not valid JSON") from exc
    validate_config_payload(payload)
    return TenantConfig.from_dict(payload)


def coerce_config(value: TenantConfig | Mapping[str, Any] | str | None) -> TenantConfig:
    if value is None:
        return TenantConfig.default()
    if isinstance(value, TenantConfig):
        return value
    return parse_config_blob(value)


def merge_initial_config(initial: Mapping[str, Any] | None) -> TenantConfig:
    """Overlay caller-supplied fields on top of the default configuration."""

    merged = TenantConfig.default().to_dict()
    if initial:
        if not isinstance(initial, Mapping):
            raise ValidationError("initial_config must be a mapping")
        for key, value in initial.items():
            if key == "displaySettings" and isinstance(value, Mapping):
                settings = dict(merged["displaySettings"])
                settings.update(value)
                merged[key] = settings
            else:
                merged[key] = value
    return parse_config_blob(merged)


def prepare_config_for_write(config: TenantConfig, *, now: datetime) -> TenantConfig:
    """Validate a configuration and stamp it for persistence.

    Legacy keys are dropped, ``lastAccessedAt`` is refreshed and a new ``etag``
    is issued. Raises ``ValidationError`` when the result is malformed or too big.
    """

    if not isinstance(config, TenantConfig):
        raise ValidationError("Mutator must return a TenantConfig")
    payload = config.to_dict()
    for legacy in LEGACY_CONFIG_FIELDS:
        payload.pop(legacy, None)
    payload["lastAccessedAt"] = format_timestamp(now)
    payload["etag"] = uuid4().hex
    validate_config_payload(payload)

    encoded = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    size = len(encoded.encode("utf-8"))
    if size > MAX_CONFIG_BYTES:
        raise ValidationError(
            "configBlob exceeds the maximum size",
            details={"size": size, "limit": MAX_CONFIG_BYTES},
        )
    return TenantConfig.from_dict(payload)
