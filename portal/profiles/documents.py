"""
Profile <-> document conversion.

Documents use the camelCase keys the front-end has always stored (`displayName`,
`photoURL`, `createdAt`, ...). Timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from dateutil import parser as date_parser

from portal.auth.models import Profile

DOCUMENT_KEYS: Dict[str, str] = {
    "uid": "uid",
    "email": "email",
    "display_name": "displayName",
    "photo_url": "photoURL",
    "role": "role",
    "created_at": "createdAt",
    "last_login_at": "lastLoginAt",
}
_FIELDS_BY_KEY = {v: k for k, v in DOCUMENT_KEYS.items()}
_TIMESTAMP_FIELDS = ("created_at", "last_login_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; anything unparseable is treated as missing."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_document(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Convert profile fields (snake_case) to a partial document.

    Raises ValueError on fields outside the profile shape.
    """
    doc: Dict[str, Any] = {}
    for name, value in fields.items():
        key = DOCUMENT_KEYS.get(name)
        if key is None:
            raise ValueError(f"Unknown profile field: {name}")
        if isinstance(value, datetime):
            value = format_timestamp(value)
        doc[key] = value
    return doc


def from_document(doc: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert a stored document to profile fields, skipping unknown keys and bad timestamps."""
    fields: Dict[str, Any] = {}
    for key, value in doc.items():
        name = _FIELDS_BY_KEY.get(key)
        if name is None:
            continue
        if name in _TIMESTAMP_FIELDS:
            value = parse_timestamp(value)
            if value is None:
                continue
        elif value is not None:
            value = str(value)
        fields[name] = value
    return fields


def profile_to_document(profile: Profile) -> Dict[str, Any]:
    return to_document({k: v for k, v in asdict(profile).items() if v is not None})
