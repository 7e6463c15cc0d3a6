"""PKCE verifier/challenge generation and authorization URL construction."""

from __future__ import annotations

import base64
import hashlib
import secrets
from urllib.parse import urlencode

from teamsbridge.config import AuthConfig


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """Return a 43-character verifier from 32 random bytes (RFC 7636)."""
    return _b64url(secrets.token_bytes(32))


def code_challenge_s256(verifier: str) -> str:
    """S256 challenge for a verifier: base64url(sha256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Random opaque state value for the authorization request."""
    return _b64url(secrets.token_bytes(16))


def build_authorize_url(config: AuthConfig, code_challenge: str, state: str) -> str:
    """Build the interactive authorization URL for the consumer login flow."""
    query = urlencode(
        {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "response_mode": "fragment",
            "scope": " ".join(config.scopes),
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
    )
    return f"{config.authorize_endpoint}?{query}"
