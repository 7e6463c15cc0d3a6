"""Consumer chat API client, payload models and the reaction emoji table."""

from teamsbridge.teams.client import (
    ConsumerAPIClient,
    consumption_horizon_now,
    format_html_content,
    generate_client_message_id,
)
from teamsbridge.teams.emoji import emoji_to_emotion_key, emotion_key_to_emoji
from teamsbridge.teams.model import (
    ConsumptionHorizon,
    ConsumptionHorizonsResponse,
    MessageReaction,
    ReactionUser,
    RemoteMessage,
    Thread,
    compare_sequence_id,
    normalize_conversation,
    parse_horizon_last_read_ts,
    parse_remote_message,
)

__all__ = [
    "ConsumerAPIClient",
    "consumption_horizon_now",
    "format_html_content",
    "generate_client_message_id",
    "emoji_to_emotion_key",
    "emotion_key_to_emoji",
    "ConsumptionHorizon",
    "ConsumptionHorizonsResponse",
    "MessageReaction",
    "ReactionUser",
    "RemoteMessage",
    "Thread",
    "compare_sequence_id",
    "normalize_conversation",
    "parse_horizon_last_read_ts",
    "parse_remote_message",
]
