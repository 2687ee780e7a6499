"""
Registration Code Normalizer

Turns whatever the camera library (or a person at the keyboard) produced
into the registration identifier used for the store lookup. Badges printed
for earlier editions of the event carry older code shapes, so every shape
ever issued is still accepted. New QR schemes get a new resolution step
appended to RESOLVERS; existing steps must not change.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse


PARTICIPANT_CODE_PREFIX = "KDYES25"
LEGACY_PREFIX_MARKER = "YAH-Registration-"
REGISTRATION_TYPE_TAGS = ("registration", "YAH_REGISTRATION")
URL_PATH_MARKERS = ("/verify/", "/registration/")
URL_ID_LENGTHS = (24, 8)

OBJECT_ID_PATTERN = re.compile(r"[0-9a-f]{24}")
PARTICIPANT_CODE_PATTERN = re.compile(PARTICIPANT_CODE_PREFIX + r"[0-9]+", re.IGNORECASE)
ACCESS_CODE_PATTERN = re.compile(r"[A-Z0-9]{8}")


class CodeFormat(Enum):
    """Which code shape a scan was resolved from"""
    JSON_PAYLOAD = "json_payload"
    OBJECT_ID = "object_id"
    PARTICIPANT_CODE = "participant_code"
    LEGACY_PREFIX = "legacy_prefix"
    URL = "url"
    ACCESS_CODE = "access_code"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ResolvedCode:
    """
    Normalization result

    registration_id is None exactly when code_format is UNRECOGNIZED.
    """
    registration_id: Optional[str]
    code_format: CodeFormat

    @property
    def is_recognized(self) -> bool:
        return self.registration_id is not None


UNRECOGNIZED = ResolvedCode(None, CodeFormat.UNRECOGNIZED)


def _coerce_identifier(value) -> Optional[str]:
    # bool is an int subclass but never an identifier
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def _resolve_json_payload(text: str) -> Optional[str]:
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None

    registration_id = _coerce_identifier(payload.get("registrationId"))

    if payload.get("type") in REGISTRATION_TYPE_TAGS and registration_id:
        return registration_id

    # legacy badges: {"id": ..., "name": ..., "email": ...}
    legacy_id = _coerce_identifier(payload.get("id"))
    if legacy_id and payload.get("name") and payload.get("email"):
        return legacy_id

    return registration_id


def _resolve_object_id(text: str) -> Optional[str]:
    return text if OBJECT_ID_PATTERN.fullmatch(text) else None


def _resolve_participant_code(text: str) -> Optional[str]:
    return text if PARTICIPANT_CODE_PATTERN.fullmatch(text) else None


def _resolve_legacy_prefix(text: str) -> Optional[str]:
    if not text.startswith(LEGACY_PREFIX_MARKER):
        return None
    return text[len(LEGACY_PREFIX_MARKER):] or None


def _looks_like_url_id(segment: str) -> bool:
    return bool(segment) and (
        len(segment) in URL_ID_LENGTHS or PARTICIPANT_CODE_PATTERN.fullmatch(segment) is not None
    )


def _resolve_url(text: str) -> Optional[str]:
    if not any(marker in text for marker in URL_PATH_MARKERS):
        return None
    try:
        parsed = urlparse(text)
    except ValueError:
        parsed = None
    # Only absolute URLs are parsed; anything else is split as plain text,
    # query string included.
    if parsed is not None and parsed.scheme:
        segment = parsed.path.split("/")[-1]
    else:
        segment = text.split("/")[-1]
    return segment if _looks_like_url_id(segment) else None


def _resolve_access_code(text: str) -> Optional[str]:
    return text if ACCESS_CODE_PATTERN.fullmatch(text) else None


# Resolution order matters: first match wins.
RESOLVERS: List[Tuple[CodeFormat, Callable[[str], Optional[str]]]] = [
    (CodeFormat.JSON_PAYLOAD, _resolve_json_payload),
    (CodeFormat.OBJECT_ID, _resolve_object_id),
    (CodeFormat.PARTICIPANT_CODE, _resolve_participant_code),
    (CodeFormat.LEGACY_PREFIX, _resolve_legacy_prefix),
    (CodeFormat.URL, _resolve_url),
    (CodeFormat.ACCESS_CODE, _resolve_access_code),
]


def normalize_code(raw) -> ResolvedCode:
    """
    Resolve a raw scanned or typed string to a registration identifier

    Scanning libraries occasionally hand over non-string values, so the
    input is coerced with str() and stripped before parsing. The function
    never raises.

    Args:
        raw: Raw scan result, usually a str

    Returns:
        ResolvedCode with the identifier and the shape it came from, or
        UNRECOGNIZED when no shape matches
    """
    if raw is None:
        return UNRECOGNIZED
    try:
        text = str(raw).strip()
    except Exception:
        return UNRECOGNIZED
    if not text:
        return UNRECOGNIZED

    for code_format, resolver in RESOLVERS:
        registration_id = resolver(text)
        if registration_id:
            return ResolvedCode(registration_id, code_format)
    return UNRECOGNIZED
