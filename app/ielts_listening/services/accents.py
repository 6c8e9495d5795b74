"""Accent to Amazon Polly neural voice mapping."""
from __future__ import annotations

from typing import Optional

DEFAULT_ACCENT = 'British'

# Polly neural voices, one per supported accent
ACCENT_VOICES = {
    'British': 'Amy',
    'American': 'Matthew',
    'Canadian': 'Joanna',
    'Australian': 'Olivia',
    'NewZealand': 'Aria',
}

_ACCENT_ALIASES = {name.lower(): name for name in ACCENT_VOICES}
_ACCENT_ALIASES.update({
    'uk': 'British',
    'english': 'British',
    'us': 'American',
    'usa': 'American',
    'nz': 'NewZealand',
    'kiwi': 'NewZealand',
    'aussie': 'Australian',
})


def normalize_accent(value: Optional[str]) -> str:
    """Canonicalize free-form accent text to one of the supported accents.

    "new zealand", "New-Zealand" and "NEWZEALAND" all become ``NewZealand``;
    anything unrecognized becomes ``British``.
    """
    if not value or not isinstance(value, str):
        return DEFAULT_ACCENT
    key = ''.join(ch for ch in value.strip().lower() if ch.isalnum())
    return _ACCENT_ALIASES.get(key, DEFAULT_ACCENT)


def voice_for_accent(accent: Optional[str]) -> str:
    """Return the Polly voice id for an accent, falling back to the British voice."""
    if accent in ACCENT_VOICES:
        return ACCENT_VOICES[accent]
    return ACCENT_VOICES[normalize_accent(accent)]
