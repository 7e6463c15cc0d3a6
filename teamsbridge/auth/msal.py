"""
Token extraction from browser MSAL localStorage dumps.

The consumer web client stores its MSAL cache in localStorage. An index entry
("msal.token.keys.<clientId>") lists the storage keys of refresh, ID and
access token entries; each entry is a JSON object with secret/expiresOn/target.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from teamsbridge.auth.state import AuthState
from teamsbridge.exceptions import MSALExtractionError

logger = logging.getLogger(__name__)

TOKEN_KEYS_PREFIX = "msal.token.keys."
MBI_ACCESS_TOKEN_MARKER = "service::api.fl.spaces.skype.com::mbi_ssl"
MAX_REPORTED_TARGETS = 6


@dataclass
class MSALEntry:
    secret: str = ""
    expires_on: str = ""
    target: str = ""


def parse_storage(raw: Union[str, dict[str, Any]]) -> dict[str, str]:
    """Normalize a localStorage dump to a map of string values.

    Non-string values are re-encoded as JSON so every entry can be decoded
    the same way.
    """
    if isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            raise MSALExtractionError("empty localStorage payload")
        try:
            data = json.loads(trimmed)
        except json.JSONDecodeError as e:
            raise MSALExtractionError(f"localStorage payload is not JSON: {e}") from e
    else:
        data = raw
    if not isinstance(data, dict):
        raise MSALExtractionError("localStorage payload must be a JSON object")
    return {
        key: value if isinstance(value, str) else json.dumps(value)
        for key, value in data.items()
    }


def parse_msal_expires(value: Any) -> Optional[int]:
    """Parse expiresOn as a Unix integer or an RFC3339 timestamp."""
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return int(parsed.timestamp())


def _decode_entry(storage: dict[str, str], key: str) -> Optional[MSALEntry]:
    raw = storage.get(key)
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return MSALEntry(
        secret=str(data.get("secret") or ""),
        expires_on=str(data.get("expiresOn") or ""),
        target=str(data.get("target") or ""),
    )


def find_token_keys(storage: dict[str, str], client_id: str) -> str:
    if client_id:
        exact = storage.get(TOKEN_KEYS_PREFIX + client_id)
        if exact is not None:
            return exact
    for key, value in storage.items():
        if key.startswith(TOKEN_KEYS_PREFIX):
            return value
    raise MSALExtractionError("msal token keys entry not found")


def _select_access_token(
    storage: dict[str, str], keys: list[str], matches
) -> tuple[str, int]:
    best_token, best_expiry = "", 0
    for key in keys:
        entry = _decode_entry(storage, key)
        if entry is None or not entry.secret or not matches(entry.target.lower()):
            continue
        expiry = parse_msal_expires(entry.expires_on) or 0
        if not best_token or expiry > best_expiry:
            best_token, best_expiry = entry.secret, expiry
    return best_token, best_expiry


def select_mbi_access_token(storage: dict[str, str], keys: list[str]) -> tuple[str, int]:
    """Latest-expiring access token scoped to the consumer chat service."""
    return _select_access_token(storage, keys, lambda t: MBI_ACCESS_TOKEN_MARKER in t)


def select_graph_access_token(storage: dict[str, str], keys: list[str]) -> tuple[str, int]:
    """Latest-expiring access token carrying Graph Files.ReadWrite."""
    return _select_access_token(
        storage, keys, lambda t: "graph.microsoft.com" in t and "files.readwrite" in t
    )


def collect_access_token_targets(
    storage: dict[str, str], keys: list[str], limit: int = MAX_REPORTED_TARGETS
) -> list[str]:
    targets: list[str] = []
    for key in keys:
        if len(targets) >= limit:
            break
        entry = _decode_entry(storage, key)
        if entry is None or not entry.target or entry.target in targets:
            continue
        targets.append(entry.target)
    return targets


def extract_tokens_from_storage(
    raw: Union[str, dict[str, Any]], client_id: str
) -> AuthState:
    """Build an AuthState from a captured MSAL localStorage dump.

    Raises:
        MSALExtractionError: No token index, no refresh token, or no access
            token for the chat service (the message lists observed targets).
    """
    storage = parse_storage(raw)
    try:
        index = json.loads(find_token_keys(storage, client_id))
    except json.JSONDecodeError as e:
        raise MSALExtractionError("msal token keys entry is not JSON") from e

    refresh_keys = list(index.get("refreshToken") or [])
    id_keys = list(index.get("idToken") or [])
    access_keys = list(index.get("accessToken") or [])
    if not refresh_keys:
        raise MSALExtractionError("no refresh token keys in msal token keys")

    refresh = _decode_entry(storage, refresh_keys[0])
    if refresh is None:
        raise MSALExtractionError("refresh token entry not found in localStorage")
    if not refresh.secret:
        raise MSALExtractionError("refresh token secret missing")

    state = AuthState(refresh_token=refresh.secret)
    state.expires_at = parse_msal_expires(refresh.expires_on) or 0

    if access_keys:
        token, expiry = select_mbi_access_token(storage, access_keys)
        if not token:
            targets = collect_access_token_targets(storage, access_keys)
            message = "MBI_SSL access token not found in localStorage"
            if targets:
                message += "; observed targets: " + ", ".join(targets)
            raise MSALExtractionError(message)
        state.access_token = token
        if expiry:
            state.expires_at = expiry

        graph_token, graph_expiry = select_graph_access_token(storage, access_keys)
        if graph_token:
            state.graph_access_token = graph_token
            state.graph_expires_at = graph_expiry
        else:
            logger.info("No Graph Files.ReadWrite token in localStorage; attachments disabled")

    if id_keys:
        id_entry = _decode_entry(storage, id_keys[0])
        if id_entry is not None:
            state.id_token = id_entry.secret

    return state
