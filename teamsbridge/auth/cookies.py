"""
Cookie jar for the login flow, with allow-listed persistence.

CookieStore records every cookie the session receives, keyed per origin by
name|domain|path, so the login probe can replay them. Only cookies for
allow-listed Microsoft hosts are ever written to disk.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from http.cookies import Morsel, SimpleCookie
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import aiohttp
from yarl import URL

from teamsbridge.auth.state import write_file_atomic
from teamsbridge.config import default_cookies_path

logger = logging.getLogger(__name__)

ALLOWED_HOSTS = frozenset({"login.live.com", "login.microsoftonline.com", "teams.live.com"})
ALLOWED_SUFFIXES = (".skype.com", ".teams.live.com")


def host_allowed(host: str) -> bool:
    """True if cookies for this host may be persisted."""
    host = (host or "").lower()
    if not host:
        return False
    return host in ALLOWED_HOSTS or host.endswith(ALLOWED_SUFFIXES)


def origin_from_url(url: Union[str, URL]) -> str:
    parsed = URL(str(url))
    if not parsed.host:
        return ""
    scheme = parsed.scheme or "https"
    host = parsed.host
    if parsed.explicit_port:
        host = f"{host}:{parsed.port}"
    return f"{scheme}://{host}"


@dataclass
class CookieRecord:
    """A single persisted cookie."""

    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires_unix: int = 0
    secure: bool = False
    http_only: bool = False

    @property
    def key(self) -> str:
        return f"{self.name}|{self.domain}|{self.path}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.domain:
            out["domain"] = self.domain
        if self.path:
            out["path"] = self.path
        if self.expires_unix:
            out["expires_unix"] = self.expires_unix
        if self.secure:
            out["secure"] = True
        if self.http_only:
            out["http_only"] = True
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CookieRecord":
        return cls(
            name=str(data.get("name", "")),
            value=str(data.get("value", "")),
            domain=str(data.get("domain", "")),
            path=str(data.get("path") or "/"),
            expires_unix=int(data.get("expires_unix") or 0),
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("http_only", False)),
        )

    def to_morsel(self) -> Morsel:
        morsel: Morsel = Morsel()
        morsel.set(self.name, self.value, self.value)
        if self.domain:
            morsel["domain"] = self.domain
        morsel["path"] = self.path or "/"
        if self.expires_unix:
            morsel["max-age"] = str(max(0, self.expires_unix - int(time.time())))
        if self.secure:
            morsel["secure"] = True
        if self.http_only:
            morsel["httponly"] = True
        return morsel


def _morsel_expiry(morsel: Morsel, now: float) -> Optional[int]:
    """Expiry as Unix seconds, 0 for session cookies, None when already expired."""
    max_age = morsel.get("max-age")
    if max_age:
        try:
            seconds = int(max_age)
        except ValueError:
            seconds = None
        if seconds is not None:
            return None if seconds <= 0 else int(now) + seconds
    expires = morsel.get("expires")
    if expires:
        try:
            at = parsedate_to_datetime(expires).timestamp()
        except (TypeError, ValueError):
            return 0
        return None if at < now else int(at)
    return 0


class _RecordingCookieJar(aiohttp.CookieJar):
    """aiohttp jar that mirrors received cookies into a CookieStore."""

    def __init__(self, store: "CookieStore"):
        super().__init__()
        self._store = store

    def update_cookies(self, cookies, response_url: URL = URL()) -> None:
        if response_url.host:
            morsels = cookies.values() if hasattr(cookies, "values") else []
            self._store.record(response_url, [m for m in morsels if isinstance(m, Morsel)])
        super().update_cookies(cookies, response_url)


class CookieStore:
    """Thread-safe per-origin cookie recorder backing an aiohttp cookie jar.

    Pass `store.jar` as the session's cookie_jar. The jar is created on first
    access, which must happen inside a running event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_origin: dict[str, dict[str, CookieRecord]] = {}
        self._jar: Optional[_RecordingCookieJar] = None
        self._pending: list[tuple[str, list[CookieRecord]]] = []

    @property
    def jar(self) -> aiohttp.CookieJar:
        if self._jar is None:
            self._jar = _RecordingCookieJar(self)
            with self._lock:
                pending, self._pending = self._pending, []
            for origin, records in pending:
                cookie = SimpleCookie()
                for record in records:
                    cookie[record.name] = record.to_morsel()
                self._jar.update_cookies(cookie, URL(origin))
        return self._jar

    def track_url(self, url: Union[str, URL]) -> None:
        origin = origin_from_url(url)
        if not origin:
            return
        with self._lock:
            self._by_origin.setdefault(origin, {})

    def record(self, url: Union[str, URL], morsels: Iterable[Morsel], now: Optional[float] = None) -> None:
        """Record cookies set by a response from `url`; expired ones are removed."""
        origin = origin_from_url(url)
        if not origin:
            return
        current = time.time() if now is None else now
        with self._lock:
            bucket = self._by_origin.setdefault(origin, {})
            for morsel in morsels:
                if not morsel.key:
                    continue
                record = CookieRecord(
                    name=morsel.key,
                    value=morsel.value,
                    domain=morsel.get("domain", "") or "",
                    path=morsel.get("path", "") or "/",
                    secure=bool(morsel.get("secure")),
                    http_only=bool(morsel.get("httponly")),
                )
                expiry = _morsel_expiry(morsel, current)
                if expiry is None:
                    bucket.pop(record.key, None)
                    continue
                record.expires_unix = expiry
                bucket[record.key] = record

    def snapshot(self, origin: str) -> list[CookieRecord]:
        with self._lock:
            return list(self._by_origin.get(origin, {}).values())

    def origins(self) -> list[str]:
        with self._lock:
            return sorted(self._by_origin)

    def load(self, path: Optional[Path] = None) -> None:
        """Load persisted cookies; a missing file is not an error."""
        try:
            data = json.loads(Path(path or default_cookies_path()).read_bytes())
        except FileNotFoundError:
            return
        for entry in data.get("origins") or []:
            origin = origin_from_url(entry.get("origin", ""))
            if not origin:
                continue
            records = [
                CookieRecord.from_dict(c) for c in entry.get("cookies") or [] if c.get("name")
            ]
            with self._lock:
                bucket = self._by_origin.setdefault(origin, {})
                for record in records:
                    bucket[record.key] = record
                if self._jar is None:
                    self._pending.append((origin, records))
            if self._jar is not None and records:
                cookie = SimpleCookie()
                for record in records:
                    cookie[record.name] = record.to_morsel()
                self._jar.update_cookies(cookie, URL(origin))

    def save(self, path: Optional[Path] = None) -> None:
        """Atomically write cookies for allow-listed hosts only."""
        origins = []
        for origin in self.origins():
            if not host_allowed(URL(origin).host or ""):
                continue
            cookies = self.snapshot(origin)
            if cookies:
                origins.append({"origin": origin, "cookies": [c.to_dict() for c in cookies]})
        payload = json.dumps({"origins": origins}, indent=2).encode("utf-8")
        write_file_atomic(Path(path or default_cookies_path()), payload, 0o600)
        logger.debug(f"Saved cookies for {len(origins)} origins")

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "CookieStore":
        store = cls()
        store.load(path)
        return store
