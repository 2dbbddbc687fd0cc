from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional


_FEAT_PATTERN = re.compile(r"\b(feat\.?|ft\.)\b", re.IGNORECASE)
_PARENS_CHARS_PATTERN = re.compile(r"[\(\)\[\]\{\}]")
_PARENS_CONTENT_PATTERN = re.compile(r"\s*[\(\[\{][^\)\]\}]*[\)\]\}]\s*")
_VERSION_SUFFIX_PATTERN = re.compile(
    r"\s+-\s+((a\s+)?colou?rs?\s+show|((single|album|ep|radio)\s+)?(version|edit)|remaster(ed)?(\s+\d{4})?)\s*$",
    re.IGNORECASE,
)
# Keep all unicode word characters and spaces; strip punctuation/symbols. Then remove underscores separately.
_NON_WORD_SPACE_PATTERN = re.compile(r"[^\w\s]", re.UNICODE)
_MULTISPACE_PATTERN = re.compile(r"\s+")
_TAIL_TOKENS = {
    "vol", "pt", "remaster", "remastered", "live", "edit",
}
_VARIATION_PATTERN = re.compile(
    r"\b(remix|mix|live|acoustic|demo|cover|instrumental|extended|club|bonus|alternate|unplugged)\b",
    re.IGNORECASE,
)
_ISRC_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{3}\d{7}$")


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def normalize_string(value: str, keep_parenthetical: bool = False) -> str:
    value = value or ""
    value = _strip_diacritics(value)
    value = value.lower()
    value = value.replace("&", " and ")
    value = _FEAT_PATTERN.sub(" ", value)
    # Remove parenthetical/bracketed content entirely
    while not keep_parenthetical:
        new_value = _PARENS_CONTENT_PATTERN.sub(" ", value)
        if new_value == value:
            break
        value = new_value
    # Remove any leftover bracket characters
    value = _PARENS_CHARS_PATTERN.sub(" ", value)
    value = _NON_WORD_SPACE_PATTERN.sub(" ", value)
    # Replace underscores that \w preserved
    value = value.replace("_", " ")
    value = _MULTISPACE_PATTERN.sub(" ", value).strip()
    return value


def normalize_title(title: str) -> str:
    """Normalize a track title, also dropping trailing '- Single Version' style suffixes."""
    title = title or ""
    while True:
        stripped = _VERSION_SUFFIX_PATTERN.sub("", title)
        if stripped == title:
            break
        title = stripped
    return normalize_string(title)


def normalize_artist_tokens(artists: Iterable[str]) -> list[str]:
    """Normalize artist names and return a list of significant tokens.
    Drops numeric-only and common tail/service tokens like 'vol', 'pt', 'remaster', 'live', 'edit'.
    """
    tokens: list[str] = []
    for artist in artists or []:
        norm = normalize_string(artist)
        for tok in norm.split():
            if not tok:
                continue
            if tok.isdigit():
                continue
            if tok in _TAIL_TOKENS:
                continue
            tokens.append(tok)
    return tokens


def normalize_isrc(isrc: Optional[str]) -> Optional[str]:
    if not isrc:
        return None
    value = isrc.replace("-", "").strip().upper()
    return value if _ISRC_PATTERN.match(value) else None


def meta_key(name: str, artist: str) -> str:
    """Fallback identity; bracketed title parts such as "(Live)" stay part of the key."""
    return f"meta:{normalize_string(name, keep_parenthetical=True)}|{normalize_string(artist)}"


def build_canonical_key(name: str, artist: str, isrc: Optional[str] = None) -> str:
    """Platform-independent identity for a track.

    A valid ISRC wins; otherwise the normalized lowercase ``name|artist`` pair is used.
    """
    code = normalize_isrc(isrc)
    if code:
        return f"isrc:{code}"
    return meta_key(name, artist)


def song_signature(name: str, artist: str) -> str:
    """Same song by the same artist regardless of which release it appears on."""
    return f"{normalize_string(artist)}::{normalize_title(name)}"


def is_unique_variation(name: str) -> bool:
    return bool(_VARIATION_PATTERN.search(name or ""))
