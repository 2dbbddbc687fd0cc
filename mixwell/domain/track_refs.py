"""Platform track reference encoding and validation.

Spotify references are ``spotify:track:`` followed by exactly 22 base62
characters. Apple Music references are ``apple:track:`` followed by either a
numeric catalog id or an ``i.``-prefixed library id.
"""
from __future__ import annotations

import re

from mixwell.domain.entities import PlatformKind
from mixwell.domain.errors import InvalidTrackReference


SPOTIFY_PREFIX = "spotify:track:"
APPLE_MUSIC_PREFIX = "apple:track:"

_PREFIXES = {
    PlatformKind.SPOTIFY: SPOTIFY_PREFIX,
    PlatformKind.APPLE_MUSIC: APPLE_MUSIC_PREFIX,
}

_ID_PATTERNS = {
    PlatformKind.SPOTIFY: re.compile(r"^[0-9A-Za-z]{22}$"),
    PlatformKind.APPLE_MUSIC: re.compile(r"^(\d{1,20}|i\.[0-9A-Za-z]{1,40})$"),
}


def encode_ref(platform: PlatformKind, native_id: str) -> str:
    return f"{_PREFIXES[platform]}{native_id}"


def is_valid_ref(platform: PlatformKind, reference: str) -> bool:
    if not reference or not isinstance(reference, str):
        return False
    prefix = _PREFIXES[platform]
    if not reference.startswith(prefix):
        return False
    return bool(_ID_PATTERNS[platform].match(reference[len(prefix):]))


def decode_ref(platform: PlatformKind, reference: str) -> str:
    """Return the native id inside a reference, raising InvalidTrackReference if malformed."""
    if not is_valid_ref(platform, reference):
        raise InvalidTrackReference(reference, platform.value)
    return reference[len(_PREFIXES[platform]):]
