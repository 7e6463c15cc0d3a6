"""
Tests for the teamsbridge.teams package: payload models, the emoji table
and the consumer API client.
"""

import pytest

from teamsbridge.exceptions import (
    MessagesError,
    ReactionError,
    ResponseShapeError,
    RetryableError,
    SendMessageError,
    ValidationError,
)
from teamsbridge.teams.client import (
    ConsumerAPIClient,
    consumption_horizon_now,
    format_html_content,
    generate_client_message_id,
)
from teamsbridge.teams.emoji import emoji_to_emotion_key, emotion_key_to_emoji, normalize_emoji
from teamsbridge.teams.model import (
    ConsumptionHorizonsResponse,
    compare_sequence_id,
    extract_body,
    extract_sender_id,
    normalize_conversation,
    normalize_participant_id,
    normalize_sequence_id,
    parse_horizon_last_read_ts,
    parse_remote_message,
    parse_timestamp,
)
from tests.conftest import SELF_USER_ID, THREAD_ID, fast_executor, make_response, mock_session, request_call, request_json


def _client(session, auth_holder):
    return ConsumerAPIClient(
        session,
        auth_holder,
        executor=fast_executor(session),
        messages_url="https://msg.test/v1/users/ME/conversations",
        send_messages_url="https://send.test/v1/users/ME/conversations",
        conversations_url="https://list.test/v1/users/ME/conversations",
        consumption_horizons_url="https://threads.test/v1/threads",
    )


class TestSequenceIds:
    """Tests for sequence id normalization and ordering."""

    def test_numeric_comparison(self):
        """Numeric ids compare by value, not lexicographically."""
        assert compare_sequence_id("10", "2") > 0
        assert compare_sequence_id("2", "10") < 0
        assert compare_sequence_id("7", "7") == 0

    def test_lexicographic_fallback(self):
        """Non-numeric ids fall back to string order."""
        assert compare_sequence_id("b", "a") > 0
        assert compare_sequence_id("10", "a") < 0

    def test_normalize(self):
        """Strings pass through, integers are stringified, others are rejected."""
        assert normalize_sequence_id("42") == "42"
        assert normalize_sequence_id(42) == "42"
        assert normalize_sequence_id(42.0) == "42"
        assert normalize_sequence_id(None) == ""
        with pytest.raises(ValueError):
            normalize_sequence_id(True)
        with pytest.raises(ValueError):
            normalize_sequence_id(1.5)


class TestMessageParsing:
    """Tests for message payload parsing."""

    def test_parse_remote_message(self):
        """A listing entry is normalized into a RemoteMessage."""
        message = parse_remote_message(
            {
                "id": "1700000000001",
                "sequenceId": 5,
                "from": "https://msgapi.teams.live.com/v1/users/ME/contacts/8:live:alice",
                "imdisplayname": "Alice",
                "clientmessageid": "999",
                "originalarrivaltime": "2024-01-02T03:04:05.1234567Z",
                "content": "fish &amp; chips",
                "properties": {
                    "emotions": [
                        {"key": "like", "users": [{"mri": "8:live:bob", "time": "1700000000500"}]},
                        {"key": "heart", "users": []},
                    ]
                },
            }
        )

        assert message.sequence_id == "5"
        assert message.sender_id == "8:live:alice"
        assert message.body == "fish & chips"
        assert message.timestamp.microsecond == 123456
        assert [r.emotion_key for r in message.reactions] == ["like"]
        assert message.reactions[0].users[0].time_ms == 1700000000500

    def test_extract_body_envelope(self):
        """Content may arrive as a {"text": ...} envelope."""
        assert extract_body({"text": "&lt;hi&gt;"}) == "<hi>"
        assert extract_body(7) == ""

    def test_extract_sender_id(self):
        """Sender ids come from URL tails or id objects."""
        assert extract_sender_id("https://x/contacts/8:live:a") == "8:live:a"
        assert extract_sender_id({"id": "8:live:b"}) == "8:live:b"
        assert extract_sender_id(None) == ""

    def test_parse_timestamp_invalid(self):
        """Unparseable timestamps are None."""
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None


class TestConversationNormalization:
    """Tests for conversation record normalization."""

    def test_requires_original_thread_id(self):
        """Records without originalThreadId are dropped."""
        assert normalize_conversation({"id": "19:x", "threadProperties": {}}) is None

    def test_group_chat_uses_topic(self):
        """Group chats take their topic as room name."""
        thread = normalize_conversation(
            {
                "id": "19:group@thread.v2",
                "threadProperties": {"originalThreadId": "19:group@thread.v2", "topic": "Weekend plans"},
            }
        )
        assert thread.id == "19:group@thread.v2"
        assert thread.room_name == "Weekend plans"
        assert not thread.is_one_to_one

    def test_untitled_group_defaults(self):
        """Group chats with several members and no title use the default name."""
        thread = normalize_conversation(
            {
                "id": "c1",
                "threadProperties": {"originalThreadId": "19:g@thread.v2"},
                "members": [
                    {"id": "8:live:a", "displayName": "A"},
                    {"id": "8:live:b", "displayName": "B"},
                ],
            },
            SELF_USER_ID,
        )
        assert thread.room_name == "Chat"

    def test_one_to_one_uses_other_member_name(self):
        """Untitled chats with a single other human are DMs named after them."""
        thread = normalize_conversation(
            {
                "id": "c2",
                "threadProperties": {"originalThreadId": "19:dm@thread.v2"},
                "members": [
                    {"id": SELF_USER_ID, "displayName": "Me"},
                    {"id": "8:live:alice", "displayName": "Alice"},
                    {"id": "28:teamsbot", "displayName": "Bot"},
                ],
            },
            SELF_USER_ID,
        )
        assert thread.is_one_to_one
        assert thread.room_name == "Alice"
        assert thread.conversation_id == "c2"

    def test_normalize_participant_id(self):
        """Numeric MRI prefixes are stripped and case folded."""
        assert normalize_participant_id("8:Live:Bob") == "live:bob"
        assert normalize_participant_id("8:orgid:28:x") == "orgid:28:x"


class TestConsumptionHorizonParsing:
    """Tests for horizon payloads."""

    def test_last_read_ts(self):
        """The second field is the last-read timestamp."""
        assert parse_horizon_last_read_ts("1700;2000;0") == 2000
        assert parse_horizon_last_read_ts("1700") is None
        assert parse_horizon_last_read_ts("1700;-5;0") is None

    def test_response_from_dict(self):
        """Horizon entries are parsed and malformed ones skipped."""
        response = ConsumptionHorizonsResponse.from_dict(
            {"id": THREAD_ID, "version": "3", "consumptionhorizons": [{"id": "8:live:a", "consumptionhorizon": "1;2;0"}, "x"]}
        )
        assert response.version == "3"
        assert [h.id for h in response.horizons] == ["8:live:a"]

    def test_visibility_time_must_be_numeric(self):
        """Digit strings parse; anything else is a shape error, not a ValueError."""
        entry = {"id": "8:live:a", "consumptionhorizon": "1;2;0", "messageVisibilityTime": "1700"}
        parsed = ConsumptionHorizonsResponse.from_dict({"consumptionhorizons": [entry]})
        assert parsed.horizons[0].message_visibility_time == 1700

        entry["messageVisibilityTime"] = "soon"
        with pytest.raises(ResponseShapeError) as exc_info:
            ConsumptionHorizonsResponse.from_dict({"consumptionhorizons": [entry]})
        assert exc_info.value.field == "messageVisibilityTime"


class TestEmojiTable:
    """Tests for emoji and emotion key lookups."""

    def test_lookups(self):
        """Common reactions map in both directions."""
        assert emoji_to_emotion_key("👍") == "like"
        assert emotion_key_to_emoji("like") == "👍"
        assert emoji_to_emotion_key("😮") == "surprised"

    def test_variation_selector_is_ignored(self):
        """Heart with and without VS16 maps to the same key."""
        assert emoji_to_emotion_key("❤") == "heart"
        assert emoji_to_emotion_key("❤️") == "heart"
        assert normalize_emoji(" ❤️ ") == "❤"

    def test_unmapped(self):
        """Unknown or empty inputs yield None."""
        assert emoji_to_emotion_key("🦄🦄") is None
        assert emoji_to_emotion_key("  ") is None
        assert emotion_key_to_emoji("no-such-key") is None


class TestHelpers:
    """Tests for payload helpers."""

    def test_format_html_content(self):
        """Text is escaped, newlines become <br> and the result is wrapped."""
        assert format_html_content("a < b\r\nc") == "<p>a &lt; b<br>c</p>"

    def test_client_message_ids_increase(self):
        """Generated ids strictly increase."""
        ids = [int(generate_client_message_id()) for _ in range(100)]
        assert ids == sorted(set(ids))

    def test_consumption_horizon_now(self):
        """The horizon repeats the timestamp and ends with a zero counter."""
        assert consumption_horizon_now(1234) == "1234;1234;0"


class TestConsumerAPIClient:
    """Tests for ConsumerAPIClient requests."""

    @pytest.mark.asyncio
    async def test_list_messages_sorted_and_filtered(self, auth_holder):
        """Messages come back in numeric order past since_sequence."""
        session = mock_session(
            make_response(
                200,
                {
                    "messages": [
                        {"id": "m10", "sequenceId": "10", "from": {"id": "live:a"}, "content": "ten"},
                        {"id": "m2", "sequenceId": 2, "content": "two"},
                        {"id": "m9", "sequenceId": "9", "content": "nine"},
                    ]
                },
            )
        )
        client = _client(session, auth_holder)

        messages = await client.list_messages(THREAD_ID, since_sequence="2")

        assert [m.sequence_id for m in messages] == ["9", "10"]
        assert messages[1].sender_id == "8:live:a"
        method, url, headers, _ = request_call(session)
        assert method == "GET"
        assert url == "https://msg.test/v1/users/ME/conversations/19%3Aabc%40thread.v2/messages"
        assert headers["authentication"] == "skypetoken=skype-token"

    @pytest.mark.asyncio
    async def test_list_messages_invalid_sequence(self, auth_holder):
        """A boolean sequenceId fails the listing."""
        session = mock_session(make_response(200, {"messages": [{"id": "m", "sequenceId": True}]}))
        with pytest.raises(ValueError):
            await _client(session, auth_holder).list_messages(THREAD_ID)

    @pytest.mark.asyncio
    async def test_list_messages_non_json(self, auth_holder):
        """A 200 with a non-JSON body is a response shape error."""
        session = mock_session(make_response(200, b"<html>"))
        with pytest.raises(ResponseShapeError):
            await _client(session, auth_holder).list_messages(THREAD_ID)

    @pytest.mark.asyncio
    async def test_list_messages_terminal_error(self, auth_holder):
        """A 404 surfaces as MessagesError."""
        session = mock_session(make_response(404, b"gone"))
        with pytest.raises(MessagesError) as exc_info:
            await _client(session, auth_holder).list_messages(THREAD_ID)
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_list_conversations_drops_unthreaded(self, auth_holder):
        """Conversations without a canonical thread id are skipped."""
        session = mock_session(
            make_response(
                200,
                {
                    "conversations": [
                        {"id": "48:notes", "threadProperties": {}},
                        {"id": THREAD_ID, "threadProperties": {"originalThreadId": THREAD_ID, "topic": "T"}},
                    ]
                },
            )
        )
        threads = await _client(session, auth_holder).list_conversations()
        assert [t.id for t in threads] == [THREAD_ID]

    @pytest.mark.asyncio
    async def test_send_message_payload(self, auth_holder):
        """send_message posts an HTML body with the client message id."""
        session = mock_session(make_response(201))
        status = await _client(session, auth_holder).send_message(THREAD_ID, "hi & bye", SELF_USER_ID, "123")

        payload = request_json(session)
        assert status == 201
        assert payload["content"] == "<p>hi &amp; bye</p>"
        assert payload["messagetype"] == "RichText/Html"
        assert payload["clientmessageid"] == "123"
        assert payload["from"] == SELF_USER_ID
        assert request_call(session)[2]["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_send_message_validation(self, auth_holder):
        """Blank text is rejected before any request."""
        session = mock_session()
        with pytest.raises(ValidationError):
            await _client(session, auth_holder).send_message(THREAD_ID, "   ", SELF_USER_ID, "1")
        session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_message_exhausts_retries(self, auth_holder):
        """Persistent 5xx responses end in RetryableError."""
        session = mock_session(*[make_response(503) for _ in range(5)])
        with pytest.raises(RetryableError):
            await _client(session, auth_holder).send_message(THREAD_ID, "hi", SELF_USER_ID, "1")

    @pytest.mark.asyncio
    async def test_send_message_forbidden(self, auth_holder):
        """A 403 is terminal."""
        session = mock_session(make_response(403))
        with pytest.raises(SendMessageError):
            await _client(session, auth_holder).send_message(THREAD_ID, "hi", SELF_USER_ID, "1")

    @pytest.mark.asyncio
    async def test_send_typing(self, auth_holder):
        """Typing uses the Control/Typing message type."""
        session = mock_session(make_response(201))
        await _client(session, auth_holder).send_typing(THREAD_ID, SELF_USER_ID)
        assert request_json(session)["messagetype"] == "Control/Typing"

    @pytest.mark.asyncio
    async def test_add_and_remove_reaction(self, auth_holder):
        """Reactions PUT and DELETE the emotions property."""
        session = mock_session(make_response(200), make_response(200))
        client = _client(session, auth_holder)

        await client.add_reaction(THREAD_ID, "1700", "like", 1700000000000)
        await client.remove_reaction(THREAD_ID, "1700", "like")

        method, url, _, _ = request_call(session, 0)
        assert method == "PUT"
        assert url.endswith("/messages/1700/properties?name=emotions")
        assert request_json(session, 0) == {"emotions": {"key": "like", "value": 1700000000000}}
        assert request_call(session, 1)[0] == "DELETE"
        assert request_json(session, 1) == {"emotions": {"key": "like"}}

    @pytest.mark.asyncio
    async def test_add_reaction_requires_timestamp(self, auth_holder):
        """A zero applied-at timestamp is rejected."""
        with pytest.raises(ValidationError):
            await _client(mock_session(), auth_holder).add_reaction(THREAD_ID, "1", "like", 0)

    @pytest.mark.asyncio
    async def test_reaction_error(self, auth_holder):
        """A 400 on the reaction endpoint raises ReactionError."""
        session = mock_session(make_response(400))
        with pytest.raises(ReactionError):
            await _client(session, auth_holder).remove_reaction(THREAD_ID, "1", "like")

    @pytest.mark.asyncio
    async def test_non_object_payload_is_shape_error(self, auth_holder):
        """A JSON array where an object is expected raises ResponseShapeError."""
        session = mock_session(make_response(200, [{"id": "1"}]))
        with pytest.raises(ResponseShapeError, match="expected a JSON object"):
            await _client(session, auth_holder).list_messages(THREAD_ID)

    @pytest.mark.asyncio
    async def test_consumption_horizons(self, auth_holder):
        """Horizons are fetched from the threads endpoint and set via properties."""
        session = mock_session(
            make_response(200, {"id": THREAD_ID, "consumptionhorizons": [{"id": "8:live:a", "consumptionhorizon": "1;2;0"}]}),
            make_response(200),
        )
        client = _client(session, auth_holder)

        response = await client.get_consumption_horizons(THREAD_ID)
        await client.set_consumption_horizon(THREAD_ID, "5;5;0")

        assert response.horizons[0].consumption_horizon == "1;2;0"
        assert request_call(session, 0)[1].startswith("https://threads.test/v1/threads/")
        assert request_call(session, 1)[1].endswith("/properties?name=consumptionhorizon")
        assert request_json(session, 1) == {"consumptionhorizon": "5;5;0"}
