"""Input validators for auth payloads and flash requests.

Each validator returns the normalised value or raises :class:`BadInput` with a
message that is safe to show to the client.
"""

from __future__ import annotations

import posixpath
import re
from pathlib import Path
from typing import AbstractSet

import structlog

from ..core.errors import BadInput

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SERIAL_PORT_PATTERN = re.compile(r"^[\w\-/.:]+$", re.ASCII)
FQBN_PATTERN = re.compile(r"^[\w:.\-]{3,120}$", re.ASCII)
MAX_EMAIL_LENGTH = 254
MAX_PORT_LENGTH = 200
MAX_FQBN_LENGTH = 120
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def _reject(field: str, message: str) -> BadInput:
    logger.warning("validation.rejected", field=field, reason=message)
    return BadInput(message)


def normalize_email(email: object) -> str:
    if not isinstance(email, str):
        raise _reject("email", "Bad input types")
    normalized = email.strip().lower()
    if len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.fullmatch(normalized):
        raise _reject("email", "Invalid email format")
    return normalized


def validate_password_strength(password: object) -> str:
    if not isinstance(password, str):
        raise _reject("password", "Bad input types")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise _reject("password", "Password must be at most 128 characters")
    if (
        len(password) < MIN_PASSWORD_LENGTH
        or not re.search(r"\d", password)
        or not re.search(r"[a-zA-Z]", password)
    ):
        raise _reject(
            "password",
            "Password must be at least 8 characters and contain at least one letter and one number",
        )
    return password


def validate_serial_port(port: object) -> str:
    if (
        not isinstance(port, str)
        or len(port) > MAX_PORT_LENGTH
        or not SERIAL_PORT_PATTERN.fullmatch(port)
    ):
        raise _reject("port", "Invalid serial port identifier")
    return port


def validate_fqbn(fqbn: object) -> str | None:
    """FQBN is optional; empty values mean "let the tool pick"."""

    if fqbn is None or fqbn == "":
        return None
    if (
        not isinstance(fqbn, str)
        or len(fqbn) > MAX_FQBN_LENGTH
        or not FQBN_PATTERN.fullmatch(fqbn)
    ):
        raise _reject("fqbn", "Invalid FQBN value")
    return fqbn


def sanitize_relative_path(raw_path: object) -> str | None:
    """Normalise separators and dot segments; None if the result still climbs upward."""

    if not isinstance(raw_path, str):
        return None
    trimmed = raw_path.replace("\\", "/").strip()
    if not trimmed or "\x00" in trimmed:
        return None
    normalized = posixpath.normpath(trimmed)
    if ".." in normalized.split("/"):
        return None
    return normalized


def resolve_sketch_path(
    raw_path: object,
    *,
    project_root: Path,
    allowed_extensions: AbstractSet[str],
) -> Path:
    """Resolve a client-supplied sketch path to an existing file inside ``project_root``."""

    sanitized = sanitize_relative_path(raw_path)
    if sanitized is None:
        raise _reject("sketchPath", "Invalid sketch path")

    root = project_root.resolve()
    # An absolute input replaces the root in the join; the containment check catches it.
    try:
        resolved = (root / sanitized).resolve()
    except (OSError, ValueError) as exc:
        raise _reject("sketchPath", "Invalid sketch path") from exc
    if not resolved.is_relative_to(root):
        raise _reject("sketchPath", "Sketch path must stay within project workspace")

    if resolved.suffix.lower() not in allowed_extensions:
        raise _reject("sketchPath", "Unsupported sketch file extension")

    try:
        exists, is_file = resolved.exists(), resolved.is_file()
    except OSError as exc:
        raise _reject("sketchPath", "Invalid sketch path") from exc
    if not exists:
        raise _reject("sketchPath", "Sketch file not found")
    if not is_file:
        raise _reject("sketchPath", "Sketch path must point to a file")
    return resolved
