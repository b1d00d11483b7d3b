"""
Emoji reaction catalogue.

Reactions are stored by key; each key has a display glyph and an
engagement weight used to score media.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class EmojiOption:
    key: str
    emoji: str
    weight: int
    label: str


EMOJI_OPTIONS: tuple[EmojiOption, ...] = (
    EmojiOption("heart", "❤️", 3, "Love"),
    EmojiOption("thumbs_up", "👍", 1, "Like"),
    EmojiOption("party", "🎉", 3, "Party"),
    EmojiOption("laughing", "😂", 4, "Funny"),
    EmojiOption("fire", "🔥", 4, "Fire"),
    EmojiOption("heart_eyes", "😍", 4, "Adore"),
)

_BY_KEY = {option.key: option for option in EMOJI_OPTIONS}
_BY_GLYPH = {option.emoji: option for option in EMOJI_OPTIONS}
# Heart is often sent without the variation selector
_BY_GLYPH["❤"] = _BY_KEY["heart"]


def get_emoji_from_key(key: str) -> str | None:
    option = _BY_KEY.get(key)
    return option.emoji if option else None


def get_key_from_emoji(emoji: str) -> str | None:
    option = _BY_GLYPH.get(emoji)
    return option.key if option else None


def is_valid_emoji_key(key: str) -> bool:
    return key in _BY_KEY


def get_weight_from_key(key: str) -> int:
    """Engagement weight of a key; unknown keys weigh nothing."""
    option = _BY_KEY.get(key)
    return option.weight if option else 0


def normalize_emoji(value: str) -> str | None:
    """Accept either a key or a glyph and return the key."""
    value = (value or "").strip()
    if value in _BY_KEY:
        return value
    return get_key_from_emoji(value)


def get_emoji_options() -> list[dict]:
    return [
        {"key": option.key, "emoji": option.emoji, "weight": option.weight, "label": option.label}
        for option in EMOJI_OPTIONS
    ]


def compute_score(reaction_counts: dict[str, int]) -> int:
    """Sum of weight(key) * count over all reaction keys."""
    return sum(get_weight_from_key(key) * count for key, count in reaction_counts.items())
