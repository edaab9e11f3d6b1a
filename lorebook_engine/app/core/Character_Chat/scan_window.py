# scan_window.py
# Description: Build the text window that world info keys are scanned against
#
# Imports
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

#######################################################################################################################
#
# Types & Functions:


class ChatTurn(BaseModel):
    """One transcript turn. Only ``content`` is scanned."""
    role: str = "user"
    content: str = ""
    name: Optional[str] = None


Turn = Union[ChatTurn, Mapping[str, Any], str]

_TEXT_FIELDS = ("content", "text", "mes", "message")


def turn_text(turn: Turn) -> str:
    """Plain text of a turn: a ChatTurn, a message mapping or a bare string."""
    if isinstance(turn, ChatTurn):
        return turn.content
    if isinstance(turn, str):
        return turn
    if isinstance(turn, Mapping):
        for field in _TEXT_FIELDS:
            value = turn.get(field)
            if value is not None:
                return str(value)
        return ""
    return "" if turn is None else str(turn)


def effective_depth(global_depth: int, entry_depth_override: Optional[int] = None) -> int:
    """An entry's own scan depth replaces the global one, even when it is larger."""
    return global_depth if entry_depth_override is None else entry_depth_override


def build_window(
    transcript: Sequence[Turn],
    global_depth: int,
    entry_depth_override: Optional[int] = None,
) -> str:
    """
    Concatenate the most recent turns, oldest first, one per line.

    Args:
        transcript: Turns, oldest first
        global_depth: Number of recent turns to include
        entry_depth_override: Per-entry depth that replaces ``global_depth``

    Returns:
        The window text; empty when the depth is zero or negative
    """
    depth = effective_depth(global_depth, entry_depth_override)
    if depth <= 0 or not transcript:
        return ""
    return "\n".join(turn_text(t) for t in list(transcript)[-depth:])


class ScanWindowCache:
    """Windows by depth for one transcript, built at most once each."""

    def __init__(self, transcript: Sequence[Turn], global_depth: int):
        self.transcript = list(transcript)
        self.global_depth = global_depth
        self._windows: Dict[int, str] = {}

    def window_for(self, entry_depth_override: Optional[int] = None) -> str:
        depth = max(0, effective_depth(self.global_depth, entry_depth_override))
        window = self._windows.get(depth)
        if window is None:
            window = build_window(self.transcript, depth)
            self._windows[depth] = window
        return window

#
# End of scan_window.py
#######################################################################################################################
