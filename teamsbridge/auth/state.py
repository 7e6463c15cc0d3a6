"""
Auth state model, durable storage and the process-wide holder.

AuthState is created by the login flow, persisted to a JSON file, and
mutated in place when the skypetoken is re-acquired. The holder serializes
access with a lock that is never held across I/O: callers copy the state
out, do network work, then publish the result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from teamsbridge.config import default_auth_state_path
from teamsbridge.exceptions import AuthRequiredError

logger = logging.getLogger(__name__)

# Safety margin before the recorded skypetoken expiry
SKYPE_TOKEN_EXPIRY_SKEW = 60


@dataclass
class AuthState:
    """Tokens for one logged-in consumer account.

    The access/refresh/ID tokens come from the browser login and are only
    used to acquire the skypetoken; consumer API calls use skype_token.
    """

    access_token: str = ""
    refresh_token: str = ""
    expires_at: int = 0
    id_token: str = ""
    skype_token: str = ""
    skype_token_expires_at: int = 0
    teams_user_id: str = ""
    graph_access_token: str = ""
    graph_expires_at: int = 0

    def has_any_token(self) -> bool:
        return bool(self.access_token or self.refresh_token or self.id_token or self.skype_token)

    def has_valid_skype_token(self, now: Optional[float] = None) -> bool:
        """True when the skypetoken outlives now by at least the 60s skew."""
        if not self.skype_token or not self.skype_token_expires_at:
            return False
        current = time.time() if now is None else now
        return self.skype_token_expires_at - current >= SKYPE_TOKEN_EXPIRY_SKEW

    def has_valid_graph_token(self, now: Optional[float] = None) -> bool:
        if not self.graph_access_token:
            return False
        if not self.graph_expires_at:
            return True
        current = time.time() if now is None else now
        return self.graph_expires_at - current >= SKYPE_TOKEN_EXPIRY_SKEW

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in ("", 0) or k in _REQUIRED_KEYS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


_REQUIRED_KEYS = ("access_token", "refresh_token", "expires_at")


def normalize_teams_user_id(value: str) -> str:
    """Ensure a consumer user id carries the "8:" MRI prefix."""
    trimmed = (value or "").strip()
    if not trimmed:
        return ""
    if trimmed.startswith("8:"):
        return trimmed
    return "8:" + trimmed


def write_file_atomic(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Write via a temp file in the same directory, fsync, then rename.

    The parent directory is created with owner-only permissions.
    """
    path = Path(path)
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def load_auth_state(path: Optional[Path] = None) -> Optional[AuthState]:
    """Read the auth-state file (default: auth.json under the state dir).

    Returns None when the file does not exist or holds no token at all.
    """
    try:
        raw = Path(path or default_auth_state_path()).read_bytes()
    except FileNotFoundError:
        return None
    state = AuthState.from_dict(json.loads(raw))
    if not state.has_any_token():
        return None
    return state


def save_auth_state(path: Path, state: AuthState) -> None:
    """Persist the auth state atomically with mode 0600."""
    data = json.dumps(state.to_dict(), indent=2).encode("utf-8")
    write_file_atomic(Path(path), data, 0o600)
    logger.debug(f"Saved auth state to {path}")


class AuthStateHolder:
    """Lock-guarded owner of the current AuthState.

    Reads return a copy so no caller can observe a partial update or hold
    the lock while awaiting I/O.
    """

    def __init__(self, state: Optional[AuthState] = None, path: Optional[Path] = None):
        self._state = state or AuthState()
        self._path = Path(path) if path else None
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "AuthStateHolder":
        path = Path(path or default_auth_state_path())
        return cls(load_auth_state(path), path)

    def snapshot(self) -> AuthState:
        with self._lock:
            return replace(self._state)

    def skype_token(self) -> str:
        """Current skypetoken, or AuthRequiredError when none is stored."""
        with self._lock:
            token = self._state.skype_token
        if not token:
            raise AuthRequiredError("no skypetoken stored")
        return token

    def teams_user_id(self) -> str:
        with self._lock:
            return self._state.teams_user_id

    def graph_token(self) -> str:
        with self._lock:
            valid = self._state.has_valid_graph_token()
            token = self._state.graph_access_token
        if not valid:
            raise AuthRequiredError("graph access token missing or expired")
        return token

    def _apply(self, changes: dict[str, Any]) -> AuthState:
        with self._lock:
            self._state = replace(self._state, **changes)
            return replace(self._state)

    def update(self, **changes: Any) -> AuthState:
        """Apply field changes, persist when a path is configured, return a copy."""
        current = self._apply(changes)
        if self._path is not None:
            save_auth_state(self._path, current)
        return current

    async def update_async(self, **changes: Any) -> AuthState:
        """Like update(), but the fsync'd write runs in a worker thread."""
        current = self._apply(changes)
        if self._path is not None:
            await asyncio.to_thread(save_auth_state, self._path, current)
        return current

    def replace_state(self, state: AuthState) -> None:
        with self._lock:
            self._state = replace(state)
        if self._path is not None:
            save_auth_state(self._path, state)
