"""Montage test rule math: limits, outcomes and victory rewards.

Base limits come from the Montage Test Difficulty table for five heroes:
easy 5/5, moderate 6/4, hard 7/3. Smaller groups lose one from each limit per
missing hero (never below 2), larger groups gain one per extra hero.
"""

from __future__ import annotations

from montagetracker.backend.models import Limits

REFERENCE_GROUP_SIZE = 5
MIN_LIMIT = 2

BASE_LIMITS: dict[str, Limits] = {
    "easy": Limits(success_limit=5, failure_limit=5),
    "moderate": Limits(success_limit=6, failure_limit=4),
    "hard": Limits(success_limit=7, failure_limit=3),
}

OUTCOME_LABELS: dict[str, str] = {
    "totalSuccess": "Total Success",
    "partialSuccess": "Partial Success",
    "totalFailure": "Total Failure",
}


def compute_limits(difficulty: str, group_size: int) -> Limits:
    base = BASE_LIMITS[difficulty]
    success_limit = base.success_limit
    failure_limit = base.failure_limit

    if group_size < REFERENCE_GROUP_SIZE:
        delta = REFERENCE_GROUP_SIZE - group_size
        success_limit = max(MIN_LIMIT, success_limit - delta)
        failure_limit = max(MIN_LIMIT, failure_limit - delta)
    elif group_size > REFERENCE_GROUP_SIZE:
        delta = group_size - REFERENCE_GROUP_SIZE
        success_limit += delta
        failure_limit += delta

    return Limits(success_limit=success_limit, failure_limit=failure_limit)


def compute_outcome(
    successes: int,
    failures: int,
    success_limit: int,
    failure_limit: int,
    round_ended_by_time_limit: bool,
) -> str | None:
    """Return the montage outcome, or None while the test continues.

    The success limit is checked first, so reaching both limits in the same
    evaluation is a total success.
    """
    if successes >= success_limit:
        return "totalSuccess"
    if failures >= failure_limit or round_ended_by_time_limit:
        return "partialSuccess" if successes >= failures + 2 else "totalFailure"
    return None


def get_victory_count(outcome: str | None, difficulty: str) -> int:
    if outcome == "totalSuccess":
        return 2 if difficulty == "hard" else 1
    if outcome == "partialSuccess":
        return 0 if difficulty == "easy" else 1
    return 0


def outcome_label(outcome: str | None) -> str:
    if outcome is None:
        return ""
    return OUTCOME_LABELS.get(outcome, outcome)


def reward_text(outcome: str | None, difficulty: str) -> str | None:
    victories = get_victory_count(outcome, difficulty)
    if victories == 0:
        return None
    if victories == 1:
        return "The heroes earn 1 Victory."
    return f"The heroes earn {victories} Victories."
