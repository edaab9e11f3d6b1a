"""
Top-level package initializer for lorebook_engine.

World-info (lorebook) activation for character-card conversations: card
normalization, an in-memory entry store, scan windows and the per-turn
activation engine.
"""

from __future__ import annotations

__version__ = "0.3.0"
