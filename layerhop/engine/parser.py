from __future__ import annotations

import re

from layerhop.common.constants import CONTINENT_NAMES
from layerhop.common.types import PeerMessage

_HOP_PREFIX = re.compile(r"^\s*\[(?:autolayer|patchwerk)\]", re.IGNORECASE)
_LAYER = re.compile(r"\blayer\s*#?\s*(\d{1,3})\b", re.IGNORECASE)
_TARGET_LAYER = re.compile(r"\bto\s+layer\s*#?\s*(\d{1,3})\b", re.IGNORECASE)
_CONTINENT = re.compile(
    r"\b(?:i'?m|am|in|on|from)\s+(?:the\s+)?(outlands?|azeroth|kalimdor|eastern\s+kingdoms)\b",
    re.IGNORECASE,
)


def parse_peer_message(text: object) -> PeerMessage:
    """Extract an optional target layer and continent hint from free text.

    Examples that carry a layer: ``"[AutoLayer] Inviting you to layer 3..."``
    and ``"heading to layer 5"``. Unparseable input yields an empty result.
    """
    if not isinstance(text, str) or not text.strip():
        return PeerMessage()
    is_hop = bool(_HOP_PREFIX.match(text))
    layer = None
    # Hop messages may mention the old layer first; the target follows "to layer".
    match = (_TARGET_LAYER.search(text) if is_hop else None) or _LAYER.search(text)
    if match:
        value = int(match.group(1))
        if value > 0:
            layer = value
    continent = None
    match = _CONTINENT.search(text)
    if match:
        continent = CONTINENT_NAMES.get(" ".join(match.group(1).lower().split()))
    return PeerMessage(layer=layer, continent=continent, is_hop_message=is_hop)
