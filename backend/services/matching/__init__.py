"""
Driver matching.

This module handles:
    - Finding eligible drivers around a pickup point
    - Ranking them (rating first, then distance)
"""

from .candidate_search import Candidate, find_best_candidate, find_candidates

__all__ = [
    "Candidate",
    "find_candidates",
    "find_best_candidate",
]
