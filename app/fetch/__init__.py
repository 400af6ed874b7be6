"""
Fetch orchestration: the request path every caller uses.
"""
from .orchestrator import (
    FetchOrchestrator,
    FetchResult,
    ResourceSpec,
    box_score_key,
    game_key,
    roster_key,
    scoreboard_key,
    standings_key,
)

__all__ = [
    "FetchOrchestrator",
    "FetchResult",
    "ResourceSpec",
    "box_score_key",
    "game_key",
    "roster_key",
    "scoreboard_key",
    "standings_key",
]
