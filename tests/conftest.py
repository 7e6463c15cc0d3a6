"""
Shared pytest fixtures for the teamsbridge test suite.

HTTP is faked at the aiohttp session boundary: `mock_session(...)` returns a
MagicMock whose request() yields async context managers over canned
responses. Stores and the Matrix side are in-memory fakes implementing the
Protocols in teamsbridge.protocols.
"""

import json
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from teamsbridge.auth.state import AuthState, AuthStateHolder
from teamsbridge.config import ExecutorConfig
from teamsbridge.exceptions import MatrixNotFoundError, SendError
from teamsbridge.executor import RequestExecutor
from teamsbridge.logging_config import clear_context
from teamsbridge.protocols import (
    ConsumptionHorizonRecord,
    MessageMapping,
    Profile,
    ReactionMapping,
    SendIntent,
    SendStatus,
    ThreadRecord,
)
from teamsbridge.teams.model import Thread

SELF_USER_ID = "8:live:self"
THREAD_ID = "19:abc@thread.v2"
ROOM_ID = "!room:example.org"


# ============================================================================
# HTTP mocks
# ============================================================================


BODY_LENGTH = object()


def make_response(
    status: int = 200,
    body: Any = b"",
    headers: Optional[dict[str, str]] = None,
    content_length: Any = BODY_LENGTH,
) -> MagicMock:
    """Build a mock aiohttp response. Dict/list bodies are JSON-encoded.

    content_length defaults to the body size; pass None for a response
    without a Content-Length header.
    """
    if isinstance(body, (dict, list)):
        body = json.dumps(body).encode("utf-8")
    elif isinstance(body, str):
        body = body.encode("utf-8")
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.read = AsyncMock(return_value=body)
    response.content_length = len(body) if content_length is BODY_LENGTH else content_length
    response.content.iter_chunked = MagicMock(side_effect=lambda size: _chunks(body, size))
    return response


async def _chunks(body: bytes, size: int):
    for start in range(0, len(body), size):
        yield body[start : start + size]


def _as_context(item: Any) -> Any:
    if isinstance(item, BaseException):
        return item
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=item)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


def mock_session(*responses: Any) -> MagicMock:
    """Session whose successive request() calls return `responses` in order.

    Exception instances in `responses` are raised from request() instead.
    """
    session = MagicMock()
    session.request = MagicMock(side_effect=[_as_context(r) for r in responses])
    return session


def request_call(session: MagicMock, index: int = 0) -> tuple[str, str, dict, Optional[bytes]]:
    """(method, url, headers, body) of the index-th request made on a mock session."""
    call = session.request.call_args_list[index]
    method, url = call.args[0], call.args[1]
    return method, url, call.kwargs.get("headers") or {}, call.kwargs.get("data")


def request_json(session: MagicMock, index: int = 0) -> Any:
    body = request_call(session, index)[3]
    return json.loads(body) if body else None


def fast_executor(session: MagicMock, max_retries: int = 4) -> RequestExecutor:
    """Executor that never really sleeps and uses no jitter."""
    return RequestExecutor(
        session,
        ExecutorConfig(max_retries=max_retries),
        jitter=lambda backoff: backoff,
        sleep=AsyncMock(),
    )


# ============================================================================
# In-memory stores
# ============================================================================


class InMemorySendIntentStore:
    def __init__(self):
        self.intents: dict[str, SendIntent] = {}
        self.status_history: list[tuple[str, SendStatus]] = []

    async def insert(self, intent: SendIntent) -> None:
        self.intents[intent.client_message_id] = intent

    async def update_status(self, client_message_id: str, status: SendStatus) -> None:
        self.intents[client_message_id].status = status
        self.status_history.append((client_message_id, status))

    async def clear_intent_ref(self, client_message_id: str) -> None:
        self.intents[client_message_id].intent_user_id = ""

    async def get_by_client_message_id(self, client_message_id: str) -> Optional[SendIntent]:
        return self.intents.get(client_message_id)


class InMemoryReactionMapStore:
    def __init__(self):
        self.mappings: dict[tuple[str, str, str, str], ReactionMapping] = {}

    @staticmethod
    def _key(m: ReactionMapping) -> tuple[str, str, str, str]:
        return (m.thread_id, m.teams_message_id, m.teams_user_id, m.emotion_key)

    async def get_by_mapping_key(self, thread_id, teams_message_id, teams_user_id, emotion_key):
        return self.mappings.get((thread_id, teams_message_id, teams_user_id, emotion_key))

    async def get_by_reaction_event_id(self, reaction_event_id: str) -> Optional[ReactionMapping]:
        for mapping in self.mappings.values():
            if mapping.reaction_event_id == reaction_event_id:
                return mapping
        return None

    async def list_by_message(self, thread_id: str, teams_message_id: str) -> list[ReactionMapping]:
        return [
            m
            for m in self.mappings.values()
            if m.thread_id == thread_id and m.teams_message_id == teams_message_id
        ]

    async def insert(self, mapping: ReactionMapping) -> None:
        self.mappings[self._key(mapping)] = mapping

    async def delete(self, mapping: ReactionMapping) -> None:
        self.mappings.pop(self._key(mapping), None)


class InMemoryConsumptionHorizonStore:
    def __init__(self):
        self.records: dict[tuple[str, str], ConsumptionHorizonRecord] = {}
        self.fail_upsert: Optional[Exception] = None
        self.upserts = 0

    async def get(self, thread_id: str, teams_user_id: str) -> Optional[ConsumptionHorizonRecord]:
        return self.records.get((thread_id, teams_user_id))

    async def upsert_last_read(self, thread_id: str, teams_user_id: str, last_read_ts: int) -> None:
        if self.fail_upsert is not None:
            raise self.fail_upsert
        self.upserts += 1
        self.records[(thread_id, teams_user_id)] = ConsumptionHorizonRecord(
            thread_id, teams_user_id, last_read_ts
        )


class InMemoryThreadStore:
    def __init__(self):
        self.rows: dict[str, ThreadRecord] = {}

    async def get_room_for_thread(self, thread_id: str) -> Optional[str]:
        row = self.rows.get(thread_id)
        return row.room_id if row else None

    async def get_thread_for_room(self, room_id: str) -> Optional[str]:
        for row in self.rows.values():
            if row.room_id == room_id:
                return row.thread_id
        return None

    async def put(self, thread: Thread, room_id: str) -> None:
        self.rows[thread.id] = ThreadRecord(thread.id, room_id, thread.conversation_id)

    async def list_all(self) -> list[ThreadRecord]:
        return list(self.rows.values())


class InMemoryMessageMapStore:
    def __init__(self):
        self.by_event: dict[str, MessageMapping] = {}
        self.upserts = 0

    async def get_by_local_event_id(self, matrix_event_id: str) -> Optional[MessageMapping]:
        return self.by_event.get(matrix_event_id)

    async def get_by_remote_message_id(self, thread_id: str, teams_message_id: str) -> Optional[MessageMapping]:
        for mapping in self.by_event.values():
            if mapping.thread_id == thread_id and mapping.teams_message_id == teams_message_id:
                return mapping
        return None

    async def get_latest_self_authored_before(
        self, thread_id: str, max_ts_ms: int, self_user_id: str
    ) -> Optional[MessageMapping]:
        candidates = [
            m
            for m in self.by_event.values()
            if m.thread_id == thread_id and m.sender_id == self_user_id and m.message_ts_ms <= max_ts_ms
        ]
        return max(candidates, key=lambda m: m.message_ts_ms, default=None)

    async def upsert(self, mapping: MessageMapping) -> None:
        self.upserts += 1
        self.by_event[mapping.matrix_event_id] = mapping


class InMemoryCursorStore:
    def __init__(self):
        self.cursors: dict[str, str] = {}
        self.writes = 0

    async def get_cursor(self, thread_id: str) -> Optional[str]:
        return self.cursors.get(thread_id)

    async def put_cursor(self, thread_id: str, sequence_id: str) -> None:
        self.writes += 1
        self.cursors[thread_id] = sequence_id


class InMemoryProfileStore:
    def __init__(self):
        self.profiles: dict[str, Profile] = {}

    async def get(self, teams_user_id: str) -> Optional[Profile]:
        profile = self.profiles.get(teams_user_id)
        return Profile(profile.teams_user_id, profile.display_name, profile.last_seen_ms) if profile else None

    async def insert_if_missing(self, profile: Profile) -> bool:
        if profile.teams_user_id in self.profiles:
            return False
        self.profiles[profile.teams_user_id] = Profile(
            profile.teams_user_id, profile.display_name, profile.last_seen_ms
        )
        return True

    async def update_display_name(self, teams_user_id: str, display_name: str, last_seen_ms: int) -> None:
        self.profiles[teams_user_id] = Profile(teams_user_id, display_name, last_seen_ms)


class FakeMatrixSender:
    """Records every call; `fail_bodies` and `missing_events` inject failures."""

    def __init__(self):
        self.texts: list[tuple[str, str, Optional[dict]]] = []
        self.reactions: list[tuple[str, str, str, str]] = []
        self.redactions: list[tuple[str, str, str]] = []
        self.read_markers: list[tuple[str, str]] = []
        self.rooms: list[str] = []
        self.fail_bodies: set[str] = set()
        self.missing_events: set[str] = set()
        self.fail_read_markers = False
        self._counter = 0

    def _next_event_id(self) -> str:
        self._counter += 1
        return f"$event{self._counter}"

    async def send_text(self, room_id: str, body: str, extra: Optional[dict[str, Any]]) -> str:
        if body in self.fail_bodies:
            raise SendError(f"send failed for {body!r}")
        self.texts.append((room_id, body, extra))
        return self._next_event_id()

    async def send_reaction(self, room_id: str, target_event_id: str, symbol: str, sender_id: str = "") -> str:
        self.reactions.append((room_id, target_event_id, symbol, sender_id))
        return self._next_event_id()

    async def redact(self, room_id: str, event_id: str, sender_id: str = "") -> None:
        if event_id in self.missing_events:
            raise MatrixNotFoundError(f"event not found: {event_id}")
        self.redactions.append((room_id, event_id, sender_id))

    async def set_read_markers(self, room_id: str, event_id: str) -> None:
        if self.fail_read_markers:
            raise RuntimeError("read marker failed")
        self.read_markers.append((room_id, event_id))

    async def create_room(self, thread: Thread) -> str:
        room_id = f"!room{len(self.rooms) + 1}:example.org"
        self.rooms.append(room_id)
        return room_id


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def reset_log_context():
    """Ensure no log context leaks between tests."""
    clear_context()
    yield
    clear_context()


@pytest.fixture
def auth_holder() -> AuthStateHolder:
    """Holder with a valid skypetoken and Graph token for the self user."""
    return AuthStateHolder(
        AuthState(
            access_token="access",
            refresh_token="refresh",
            skype_token="skype-token",
            skype_token_expires_at=4_102_444_800,
            teams_user_id=SELF_USER_ID,
            graph_access_token="graph-token",
        )
    )


@pytest.fixture
def matrix_sender() -> FakeMatrixSender:
    return FakeMatrixSender()


@pytest.fixture
def message_map() -> InMemoryMessageMapStore:
    return InMemoryMessageMapStore()


@pytest.fixture
def reaction_map() -> InMemoryReactionMapStore:
    return InMemoryReactionMapStore()


@pytest.fixture
def cursor_store() -> InMemoryCursorStore:
    return InMemoryCursorStore()


@pytest.fixture
def intent_store() -> InMemorySendIntentStore:
    return InMemorySendIntentStore()


@pytest.fixture
def horizon_store() -> InMemoryConsumptionHorizonStore:
    return InMemoryConsumptionHorizonStore()


@pytest.fixture
def thread_store() -> InMemoryThreadStore:
    return InMemoryThreadStore()


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def thread_record() -> ThreadRecord:
    return ThreadRecord(thread_id=THREAD_ID, room_id=ROOM_ID, conversation_id=THREAD_ID)
