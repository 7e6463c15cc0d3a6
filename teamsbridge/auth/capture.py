"""
Browser token capture: a short-lived local helper page or manual paste.

The helper listener serves an instruction page on 127.0.0.1 and accepts a
POST of the browser's localStorage dump. The first dump that yields usable
tokens resolves the capture; the listener then shuts down.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional, TextIO

from aiohttp import web

from teamsbridge.auth.msal import extract_tokens_from_storage
from teamsbridge.auth.state import AuthState
from teamsbridge.exceptions import MSALExtractionError, TokenCaptureError

logger = logging.getLogger(__name__)

HELPER_PAGE_HTML = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8" />
<title>Teams Login Helper</title>
<style>
body { font-family: sans-serif; margin: 24px; max-width: 720px; }
textarea { width: 100%; height: 120px; }
</style>
</head>
<body>
<h1>Teams Login Helper</h1>
<p>After logging in, open https://teams.live.com/v2 and run this in the browser console:</p>
<pre><code>copy(JSON.stringify(Object.fromEntries(Object.entries(localStorage))))</code></pre>
<p>Paste the result below.</p>
<textarea id="storage"></textarea>
<button id="submit">Submit</button>
<div id="status"></div>
<script>
const input = document.getElementById('storage');
const status = document.getElementById('status');
document.getElementById('submit').addEventListener('click', () => {
  const value = input.value.trim();
  if (!value) { status.textContent = 'Paste the localStorage JSON first.'; return; }
  status.textContent = 'Submitting tokens...';
  fetch('/capture', {
    method: 'POST',
    headers: { 'Content-Type': 'application/json' },
    body: JSON.stringify({ storage: value })
  }).then((resp) => {
    status.textContent = resp.ok ? 'Tokens captured. You can close this tab.' : 'Tokens rejected.';
  }).catch(() => { status.textContent = 'Failed to submit tokens.'; });
});
</script>
</body>
</html>
"""


class HelperListener:
    """Local HTTP listener that receives a localStorage dump from the operator.

    Usage:
        listener = HelperListener(client_id)
        url = await listener.start()
        print(f"Open {url}")
        state = await listener.wait_for_state()  # cancellable
    """

    def __init__(self, client_id: str, host: str = "127.0.0.1", port: int = 0):
        self.client_id = client_id
        self.host = host
        self.port = port
        self.url = ""
        self._runner: Optional[web.AppRunner] = None
        self._result: Optional[asyncio.Future] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_post("/capture", self._handle_capture)
        return app

    async def start(self) -> str:
        self._result = asyncio.get_running_loop().create_future()
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        addresses = self._runner.addresses
        port = addresses[0][1] if addresses else self.port
        self.url = f"http://{self.host}:{port}/"
        logger.info(f"Login helper listening on {self.url}")
        return self.url

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def wait_for_state(self) -> AuthState:
        if self._result is None:
            raise TokenCaptureError("helper listener not started")
        try:
            return await self._result
        finally:
            await self.stop()

    async def _handle_index(self, request: web.Request) -> web.Response:
        return web.Response(text=HELPER_PAGE_HTML, content_type="text/html")

    async def _handle_capture(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return web.Response(status=400, text="invalid JSON")
        storage = payload.get("storage") if isinstance(payload, dict) else None
        if not storage or not isinstance(storage, str):
            return web.Response(status=400, text="missing storage")
        try:
            state = extract_tokens_from_storage(storage, self.client_id)
        except MSALExtractionError as e:
            logger.warning(f"Failed to extract tokens from localStorage: {e}")
            return web.Response(status=400, text=str(e))
        if self._result is not None and not self._result.done():
            self._result.set_result(state)
        return web.json_response({"status": "ok"})


async def read_manual_state(reader: TextIO, writer: TextIO, client_id: str) -> AuthState:
    """Prompt for a pasted localStorage dump on one line and extract tokens."""
    writer.write("Paste the localStorage JSON and press Enter:\n")
    writer.flush()
    line = await asyncio.get_running_loop().run_in_executor(None, reader.readline)
    if not line.strip():
        raise TokenCaptureError("no localStorage JSON provided")
    return extract_tokens_from_storage(line, client_id)
