"""
Emotion key <-> emoji table for consumer chat reactions.

The table is ordered. Several emoji may map to the same emotion key (and a
few emoji appear under more than one key); lookups in either direction use
the first registered pair, so results are deterministic.
"""

from __future__ import annotations

VARIATION_SELECTOR_16 = "\ufe0f"

# (emoji, emotion key) in registration order
EMOTION_TABLE: tuple[tuple[str, str], ...] = (
    ("👍", "like"),
    ("👍🏻", "like"),
    ("👌🏻", "ok"),
    ("🔥", "fire"),
    ("💙", "heartblue"),
    ("🙂", "smile"),
    ("😄", "laugh"),
    ("❤️", "heart"),
    ("😘", "kiss"),
    ("☹️", "sad"),
    ("😛", "tongueout"),
    ("😉", "wink"),
    ("😢", "cry"),
    ("😍", "inlove"),
    ("🤗", "hug"),
    ("😂", "cwl"),
    ("💋", "lips"),
    ("😊", "blush"),
    ("😮", "surprised"),
    ("🐧", "penguin"),
    ("😎", "cool"),
    ("🤣", "rofl"),
    ("🐱", "cat"),
    ("🐵", "monkey"),
    ("👋", "hi"),
    ("❄️", "snowangel"),
    ("🌸", "flower"),
    ("😁", "giggle"),
    ("😈", "devil"),
    ("🥳", "party"),
    ("😟", "worry"),
    ("🍾", "champagne"),
    ("☀️", "sun"),
    ("⭐", "star"),
    ("🐻‍❄️", "polarbear"),
    ("🙄", "eyeroll"),
    ("😶", "speechless"),
    ("🤔", "wonder"),
    ("😠", "angry"),
    ("🤮", "puke"),
    ("🤦", "facepalm"),
    ("😓", "sweat"),
    ("🤡", "holidayspirit"),
    ("😴", "sleepy"),
    ("🙇", "bow"),
    ("💄", "makeup"),
    ("💵", "cash"),
    ("🤐", "lipssealed"),
    ("🥶", "shivering"),
    ("🎂", "cake"),
    ("🤕", "headbang"),
    ("💃", "dance"),
    ("😳", "wasntme"),
    ("🤢", "hungover"),
    ("🥱", "yawn"),
    ("🎁", "gift"),
    ("😇", "angel"),
    ("🎄", "xmastree"),
    ("💔", "brokenheart"),
    ("🤔", "think"),
    ("👏", "clap"),
    ("👊", "punch"),
    ("😒", "envy"),
    ("🤝", "handshake"),
    ("🙂", "nod"),
    ("🤓", "nerdy"),
    ("🖤", "emo"),
    ("💪", "muscle"),
    ("😋", "mmm"),
    ("🙌", "highfive"),
    ("🦃", "turkey"),
    ("📞", "call"),
    ("🧔", "movember"),
    ("🐶", "dog"),
    ("☕", "coffee"),
    ("👉", "poke"),
    ("🤬", "swear"),
    ("😑", "donttalktome"),
    ("🤞", "fingerscrossed"),
    ("🌈", "rainbow"),
    ("🎧", "headphones"),
    ("⏳", "waiting"),
    ("🎉", "festiveparty"),
    ("🥷", "bandit"),
    ("🐿️", "heidy"),
    ("🍺", "beer"),
    ("🤦‍♂️", "doh"),
    ("💣", "bomb"),
    ("😀", "happy"),
    ("🥷", "ninja"),
)


def normalize_emoji(emoji: str) -> str:
    """Strip variation selectors so "❤" and "❤️" compare equal."""
    return emoji.strip().replace(VARIATION_SELECTOR_16, "")


def _build_maps() -> tuple[dict[str, str], dict[str, str]]:
    to_key: dict[str, str] = {}
    to_emoji: dict[str, str] = {}
    for emoji, key in EMOTION_TABLE:
        to_key.setdefault(normalize_emoji(emoji), key)
        to_emoji.setdefault(key, emoji)
    return to_key, to_emoji


_EMOJI_TO_KEY, _KEY_TO_EMOJI = _build_maps()


def emoji_to_emotion_key(emoji: str) -> str | None:
    """Emotion key for an emoji, or None when it has no consumer equivalent."""
    if not emoji or not emoji.strip():
        return None
    return _EMOJI_TO_KEY.get(normalize_emoji(emoji))


def emotion_key_to_emoji(emotion_key: str) -> str | None:
    """First-registered emoji for an emotion key, or None when unmapped."""
    key = (emotion_key or "").strip()
    if not key:
        return None
    return _KEY_TO_EMOJI.get(key)
