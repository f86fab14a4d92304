from __future__ import annotations

import hashlib
import json
import re
import secrets
import time
from pathlib import PurePosixPath
from typing import Any, Optional

from .errors import ValidationError

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def new_session_id() -> str:
    return f"{int(time.time())}-{secrets.token_hex(3)}"


def check_session_id(session_id: str) -> str:
    # session ids end up in container names and in-container paths
    if not session_id or not _SESSION_ID_RE.match(session_id):
        raise ValidationError(f"invalid session id: {session_id!r}")
    return session_id


def normalize_path(raw: str) -> str:
    """Return a clean relative POSIX path or raise ``ValidationError``.

    Absolute paths, ``..`` segments, backslashes and NUL bytes are refused so a
    file can never land outside the session workspace.
    """
    if not raw or not raw.strip():
        raise ValidationError("file path must not be empty")
    if "\\" in raw or "\x00" in raw:
        raise ValidationError(f"invalid characters in file path: {raw!r}")
    if raw.startswith("/"):
        raise ValidationError(f"file path must be relative: {raw!r}")
    parts = [p for p in raw.split("/") if p not in ("", ".")]
    if not parts:
        raise ValidationError(f"file path must name a file: {raw!r}")
    if any(p == ".." for p in parts):
        raise ValidationError(f"file path escapes the workspace: {raw!r}")
    return str(PurePosixPath(*parts))


def excerpt(text: Optional[str], limit: int = 2000) -> str:
    """Bound a diagnostic to ``limit`` characters, keeping the tail (where tools print errors)."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return "…" + text[-(limit - 1):]


def digest(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
