"""
Consumer login client: code exchange, skypetoken acquisition and probing.

The browser SPA issues tokens that cannot be refreshed by a non-browser
client, so refresh_access_token always raises. When stored credentials run
out the operator repeats the interactive login.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlencode, urlsplit

import aiohttp

from teamsbridge.auth.cookies import CookieStore
from teamsbridge.auth.pkce import (
    build_authorize_url,
    code_challenge_s256,
    generate_code_verifier,
    generate_state,
)
from teamsbridge.auth.state import AuthState, AuthStateHolder, normalize_teams_user_id
from teamsbridge.config import AuthConfig, ExecutorConfig, get_executor_config
from teamsbridge.exceptions import (
    AuthRequiredError,
    ResponseShapeError,
    RetryableError,
    SkypeTokenError,
    TokenExchangeError,
    TransportError,
    ValidationError,
)
from teamsbridge.executor import HTTPResponse, PreparedRequest, RequestExecutor
from teamsbridge.http_client import TEAMS_ERROR_SNIPPET_BYTES, body_snippet

logger = logging.getLogger(__name__)

TOKEN_ERROR_SNIPPET_CHARS = 400
PROBE_SNIPPET_BYTES = 1024
GRAPH_SCOPE_MARKERS = ("graph.microsoft.com", "files.readwrite")


@dataclass
class LoginRequest:
    """Everything needed to start and later complete one interactive login."""

    verifier: str
    challenge: str
    state: str
    url: str


@dataclass
class SkypeToken:
    token: str
    expires_at: int
    teams_user_id: str = ""


@dataclass
class ProbeResult:
    status: int
    body_snippet: str
    auth_headers: dict[str, str] = field(default_factory=dict)


def redirect_origin(redirect_uri: str) -> str:
    parts = urlsplit(redirect_uri.strip())
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}"


def _truncate(text: str, limit: int = TOKEN_ERROR_SNIPPET_CHARS) -> str:
    text = text.strip()
    if len(text) > limit:
        return text[:limit] + "...(truncated)"
    return text


def _json_object(response: HTTPResponse, what: str) -> dict:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ResponseShapeError(f"{what} is not JSON") from e
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ResponseShapeError(f"{what} is not a JSON object")
    return payload


def _classify_token_response(response: HTTPResponse):
    if response.ok:
        return None
    if response.status == 429 or response.status >= 500:
        return RetryableError(status=response.status)
    return TokenExchangeError(response.status, _truncate(response.text()))


def _classify_skype_token_response(response: HTTPResponse):
    if response.ok:
        return None
    if response.status == 429 or response.status >= 500:
        return RetryableError(status=response.status)
    return SkypeTokenError(
        "skypetoken endpoint returned non-2xx status",
        response.status,
        body_snippet(response.body, TEAMS_ERROR_SNIPPET_BYTES),
    )


class AuthClient:
    """Talks to the consumer login endpoints.

    Args:
        session: aiohttp session; pass `cookies.jar` as its cookie_jar to
            capture login cookies.
        config: Client registration and endpoints.
        cookies: Optional CookieStore that tracks visited origins.
        executor: Optional executor; auth calls retry at most twice by default.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: Optional[AuthConfig] = None,
        cookies: Optional[CookieStore] = None,
        executor: Optional[RequestExecutor] = None,
    ):
        self.config = config or AuthConfig()
        self.cookies = cookies
        self.executor = executor or RequestExecutor(
            session, get_executor_config(ExecutorConfig(max_retries=2))
        )

    def begin_login(self) -> LoginRequest:
        """Generate PKCE material and the authorization URL to open in a browser."""
        verifier = generate_code_verifier()
        challenge = code_challenge_s256(verifier)
        state = generate_state()
        url = build_authorize_url(self.config, challenge, state)
        if self.cookies is not None:
            self.cookies.track_url(self.config.authorize_endpoint)
        return LoginRequest(verifier=verifier, challenge=challenge, state=state, url=url)

    async def exchange_code(self, code: str, verifier: str) -> AuthState:
        """Exchange an authorization code for access/refresh/ID tokens (PKCE)."""
        if not code:
            raise ValidationError("authorization code")
        if not verifier:
            raise ValidationError("code verifier")
        scope = " ".join(self.config.scopes)
        form = urlencode(
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": verifier,
            }
        ).encode("ascii")
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        origin = redirect_origin(self.config.redirect_uri)
        if origin:
            headers["Origin"] = origin
        if self.cookies is not None:
            self.cookies.track_url(self.config.token_endpoint)

        logger.info("Exchanging authorization code")
        request = PreparedRequest("POST", self.config.token_endpoint, headers, form, lambda: form)
        response = await self.executor.execute(request, _classify_token_response)

        payload = _json_object(response, "token response")
        access_token = payload.get("access_token") or ""
        if not access_token:
            raise ResponseShapeError("token response missing access_token", "access_token")
        state = AuthState(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or "",
            id_token=payload.get("id_token") or "",
        )
        expires_in = int(payload.get("expires_in") or 0)
        if expires_in > 0:
            state.expires_at = int(time.time()) + expires_in
        if should_persist_graph_token(scope):
            state.graph_access_token = access_token
            state.graph_expires_at = state.expires_at
        return state

    async def refresh_access_token(self, refresh_token: str) -> AuthState:
        """Always raises; SPA refresh tokens are bound to the browser origin."""
        raise AuthRequiredError("token refresh is not supported for consumer logins")

    async def acquire_skype_token(self, access_token: str) -> SkypeToken:
        """Exchange an access token for a consumer skypetoken."""
        if not access_token:
            raise ValidationError("access token")
        logger.info("Acquiring Teams skypetoken")
        request = PreparedRequest(
            "POST",
            self.config.skype_token_endpoint,
            {"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        response = await self.executor.execute(request, _classify_skype_token_response)
        payload = _json_object(response, "skypetoken response").get("skypeToken")
        if not isinstance(payload, dict) or not payload.get("skypetoken"):
            raise SkypeTokenError("skypetoken response missing token")
        token = payload["skypetoken"]
        expires_in = int(payload.get("expiresIn") or 0)
        expires_at = int(time.time()) + expires_in if expires_in > 0 else 0
        return SkypeToken(
            token=token,
            expires_at=expires_at,
            teams_user_id=normalize_teams_user_id(payload.get("skypeid") or ""),
        )

    async def ensure_skype_token(self, holder: AuthStateHolder) -> str:
        """Return a valid skypetoken, re-acquiring it from the stored access token if needed.

        Raises:
            AuthRequiredError: The access token is missing, expired or rejected.
        """
        state = holder.snapshot()
        if state.has_valid_skype_token():
            return state.skype_token
        if not state.access_token:
            raise AuthRequiredError("no access token stored")
        if state.expires_at and state.expires_at <= time.time():
            raise AuthRequiredError("access token expired")
        try:
            acquired = await self.acquire_skype_token(state.access_token)
        except (SkypeTokenError, TransportError) as e:
            raise AuthRequiredError(f"skypetoken acquisition failed: {e}") from e
        changes = {
            "skype_token": acquired.token,
            "skype_token_expires_at": acquired.expires_at,
        }
        if acquired.teams_user_id:
            changes["teams_user_id"] = acquired.teams_user_id
        await holder.update_async(**changes)
        logger.info("Refreshed Teams skypetoken")
        return acquired.token

    async def probe(self, endpoint: str, skype_token: str = "") -> ProbeResult:
        """GET an endpoint once and report status, snippet and auth-related headers."""
        headers = {}
        if skype_token:
            headers["authentication"] = f"skypetoken={skype_token}"
        if self.cookies is not None:
            self.cookies.track_url(endpoint)
        response = await self.executor.execute(
            PreparedRequest("GET", endpoint, headers), lambda _resp: None
        )
        auth_headers = {
            k: v
            for k, v in response.headers.items()
            if k.lower() in ("www-authenticate", "x-ms-diagnostics") or k.lower().startswith("x-skype")
        }
        return ProbeResult(
            status=response.status,
            body_snippet=body_snippet(response.body, PROBE_SNIPPET_BYTES),
            auth_headers=auth_headers,
        )


def should_persist_graph_token(scope: str) -> bool:
    """True when a token requested with `scope` is usable against Graph."""
    parts = scope.lower().split()
    if not parts:
        return True
    for part in parts:
        if "service::api.fl.spaces.skype.com::mbi_ssl" in part:
            return False
        if GRAPH_SCOPE_MARKERS[0] in part or part.endswith(GRAPH_SCOPE_MARKERS[1]):
            return True
    return False
