"""Domain models for montage tests and their engine results."""

from __future__ import annotations

from dataclasses import dataclass, field

ACTION_TYPES = ("test", "assist", "ability", "abstain")

ERROR_PARTICIPANT_NOT_FOUND = "Participant not found"
ERROR_ALREADY_ACTED = "Already acted this round"
ERROR_CHARACTERISTIC_REQUIRED = "Characteristic required"
ERROR_CHARACTERISTIC_EXHAUSTED = "Characteristic already used this montage"
ERROR_NO_ACTIVE_MONTAGE = "No active montage"


class MontageError(Exception):
    """Base error for montage tracker failures."""


class SnapshotError(MontageError):
    """Raised when a persisted snapshot cannot be restored."""


class RollFailedError(MontageError):
    """Raised when the host roll could not be obtained for an approval."""

    def __init__(self, approval_id: str, reason: str) -> None:
        super().__init__(f"Roll failed for approval {approval_id}: {reason}")
        self.approval_id = approval_id
        self.reason = reason


@dataclass(frozen=True)
class MontageConfig:
    id: str
    title: str
    description: str
    difficulty: str
    visibility: str
    max_rounds: int
    group_size: int
    success_limit: int | None = None
    failure_limit: int | None = None


@dataclass(frozen=True)
class Participant:
    actor_id: str
    actor_name: str
    player_id: str | None
    # Human ancestry with the Determination perk; carried on the roster only.
    has_human_assist_perk: bool = False


@dataclass
class ParticipantRoundState:
    actor_id: str
    participating: bool = False
    action_type: str | None = None
    characteristic: str | None = None
    narrative: str | None = None

    def reset(self) -> None:
        self.action_type = None
        self.characteristic = None
        self.narrative = None


@dataclass(frozen=True)
class PendingApproval:
    id: str
    actor_id: str
    actor_name: str
    action_type: str
    submitted_at: str
    characteristic: str | None = None
    narrative: str | None = None


@dataclass
class MontageState:
    config: MontageConfig
    participants: list[Participant]
    started_at: str
    current_round: int = 1
    successes: int = 0
    failures: int = 0
    round_states: dict[int, list[ParticipantRoundState]] = field(default_factory=dict)
    pending_approvals: list[PendingApproval] = field(default_factory=list)
    used_characteristics: dict[str, set[str]] = field(default_factory=dict)
    outcome: str | None = None

    def find_participant(self, actor_id: str) -> Participant | None:
        for participant in self.participants:
            if participant.actor_id == actor_id:
                return participant
        return None

    def find_approval(self, approval_id: str) -> PendingApproval | None:
        for approval in self.pending_approvals:
            if approval.id == approval_id:
                return approval
        return None


@dataclass(frozen=True)
class IntentResult:
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class Limits:
    success_limit: int
    failure_limit: int


@dataclass(frozen=True)
class OutcomeSummary:
    title: str
    outcome: str
    outcome_label: str
    successes: int
    failures: int
    victories: int
    reward_text: str | None
