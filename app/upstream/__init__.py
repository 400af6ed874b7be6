"""
Upstream provider contract.
"""
from .provider import HttpSportsProvider, SportsDataProvider

__all__ = [
    "HttpSportsProvider",
    "SportsDataProvider",
]
