"""Authentication lifecycle for the consumer chat service.

Usage:
    from teamsbridge.auth import AuthClient, AuthStateHolder, HelperListener

    holder = AuthStateHolder.from_file()  # auth.json under TEAMSBRIDGE_STATE_DIR
    client = AuthClient(session)
    token = await client.ensure_skype_token(holder)
"""

from teamsbridge.auth.capture import HelperListener, read_manual_state
from teamsbridge.auth.client import AuthClient, LoginRequest, ProbeResult, SkypeToken
from teamsbridge.auth.cookies import CookieRecord, CookieStore, host_allowed
from teamsbridge.auth.msal import extract_tokens_from_storage
from teamsbridge.auth.pkce import (
    build_authorize_url,
    code_challenge_s256,
    generate_code_verifier,
    generate_state,
)
from teamsbridge.auth.state import (
    AuthState,
    AuthStateHolder,
    load_auth_state,
    normalize_teams_user_id,
    save_auth_state,
)

__all__ = [
    "AuthClient",
    "LoginRequest",
    "ProbeResult",
    "SkypeToken",
    "HelperListener",
    "read_manual_state",
    "CookieRecord",
    "CookieStore",
    "host_allowed",
    "extract_tokens_from_storage",
    "build_authorize_url",
    "code_challenge_s256",
    "generate_code_verifier",
    "generate_state",
    "AuthState",
    "AuthStateHolder",
    "load_auth_state",
    "normalize_teams_user_id",
    "save_auth_state",
]
