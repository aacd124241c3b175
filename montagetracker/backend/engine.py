"""Round-by-round state machine for a single montage test.

Every function takes the live MontageState explicitly and mutates it in
place; the coordinator is the only caller, so nothing here locks.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
import uuid

from montagetracker.backend.host import (
    ActorRecord,
    UserRecord,
    has_human_determination_perk,
    is_draw_steel_hero,
    resolve_player_owner,
)
from montagetracker.backend.models import (
    ERROR_ALREADY_ACTED,
    ERROR_CHARACTERISTIC_EXHAUSTED,
    ERROR_CHARACTERISTIC_REQUIRED,
    ERROR_PARTICIPANT_NOT_FOUND,
    IntentResult,
    MontageConfig,
    MontageState,
    Participant,
    ParticipantRoundState,
    PendingApproval,
)
from montagetracker.backend.rules import compute_limits, compute_outcome

SUCCESS_TIER = 3
CHARACTERISTIC_ACTIONS = ("test", "assist")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_montage_state(
    config: MontageConfig,
    candidates: Iterable[ActorRecord],
    users: Iterable[UserRecord] = (),
    *,
    is_eligible: Callable[[ActorRecord], bool] = is_draw_steel_hero,
    resolve_owner: Callable[[ActorRecord, list[UserRecord]], str | None] = resolve_player_owner,
    has_perk: Callable[[ActorRecord], bool] = has_human_determination_perk,
) -> MontageState:
    known_users = list(users)
    participants = [
        Participant(
            actor_id=actor.id,
            actor_name=actor.name,
            player_id=resolve_owner(actor, known_users),
            has_human_assist_perk=has_perk(actor),
        )
        for actor in candidates
        if is_eligible(actor)
    ]

    if config.success_limit is not None and config.failure_limit is not None:
        success_limit, failure_limit = config.success_limit, config.failure_limit
    else:
        limits = compute_limits(config.difficulty, config.group_size)
        success_limit, failure_limit = limits.success_limit, limits.failure_limit

    return MontageState(
        config=MontageConfig(
            id=config.id,
            title=config.title,
            description=config.description,
            difficulty=config.difficulty,
            visibility=config.visibility,
            max_rounds=config.max_rounds,
            group_size=config.group_size,
            success_limit=success_limit,
            failure_limit=failure_limit,
        ),
        participants=participants,
        started_at=_utc_now_iso(),
    )


def get_or_create_round_state(state: MontageState, round_number: int) -> list[ParticipantRoundState]:
    records = state.round_states.get(round_number)
    if records is None:
        records = [ParticipantRoundState(actor_id=p.actor_id) for p in state.participants]
        state.round_states[round_number] = records
    return records


def _current_record(state: MontageState, actor_id: str) -> ParticipantRoundState | None:
    if state.find_participant(actor_id) is None:
        return None
    for record in get_or_create_round_state(state, state.current_round):
        if record.actor_id == actor_id:
            return record
    return None


def submit_intent(
    state: MontageState,
    participant_id: str,
    action_type: str,
    characteristic: str | None = None,
    narrative: str | None = None,
) -> IntentResult:
    if action_type == "abstain":
        return abstain(state, participant_id)

    record = _current_record(state, participant_id)
    if record is None:
        return IntentResult(ok=False, error=ERROR_PARTICIPANT_NOT_FOUND)
    if record.action_type is not None:
        return IntentResult(ok=False, error=ERROR_ALREADY_ACTED)

    if action_type in CHARACTERISTIC_ACTIONS:
        if not characteristic:
            return IntentResult(ok=False, error=ERROR_CHARACTERISTIC_REQUIRED)
        if characteristic in state.used_characteristics.get(participant_id, set()):
            return IntentResult(ok=False, error=ERROR_CHARACTERISTIC_EXHAUSTED)

    participant = state.find_participant(participant_id)
    state.pending_approvals.append(
        PendingApproval(
            id=uuid.uuid4().hex,
            actor_id=participant_id,
            actor_name=participant.actor_name if participant is not None else "",
            action_type=action_type,
            characteristic=characteristic or None,
            narrative=narrative,
            submitted_at=_utc_now_iso(),
        )
    )
    record.participating = True
    record.action_type = action_type
    record.characteristic = characteristic or None
    record.narrative = narrative
    return IntentResult(ok=True)


def abstain(state: MontageState, participant_id: str) -> IntentResult:
    record = _current_record(state, participant_id)
    if record is None:
        return IntentResult(ok=False, error=ERROR_PARTICIPANT_NOT_FOUND)
    if record.action_type is not None:
        return IntentResult(ok=False, error=ERROR_ALREADY_ACTED)
    record.participating = True
    record.action_type = "abstain"
    return IntentResult(ok=True)


def _pop_approval(state: MontageState, approval_id: str) -> PendingApproval | None:
    for index, approval in enumerate(state.pending_approvals):
        if approval.id == approval_id:
            return state.pending_approvals.pop(index)
    return None


def reject_approval(state: MontageState, approval_id: str) -> bool:
    approval = _pop_approval(state, approval_id)
    if approval is None:
        return False
    record = _current_record(state, approval.actor_id)
    if record is not None:
        record.reset()
    return True


def apply_ability_auto_success(state: MontageState, approval_id: str) -> bool:
    if _pop_approval(state, approval_id) is None:
        return False
    state.successes += 1
    return True


def apply_roll_result(state: MontageState, approval_id: str, tier: int | None) -> bool:
    """Resolve a queued approval from the tier of its roll.

    Only tier 3 counts as a success; any other or missing tier is a failure.
    The characteristic is spent here, so a rejected action never burns it.
    """
    approval = _pop_approval(state, approval_id)
    if approval is None:
        return False

    if approval.action_type in ("abstain", "ability"):
        if approval.action_type == "ability":
            state.successes += 1
        return True

    if tier == SUCCESS_TIER:
        state.successes += 1
    else:
        state.failures += 1

    if approval.characteristic:
        state.used_characteristics.setdefault(approval.actor_id, set()).add(approval.characteristic)
    return True


def can_advance_round(state: MontageState) -> bool:
    records = get_or_create_round_state(state, state.current_round)
    acted = sum(1 for record in records if record.action_type is not None)
    return acted >= len(state.participants) and not state.pending_approvals


def _evaluate_outcome(state: MontageState) -> tuple[str | None, bool]:
    config = state.config
    round_ended_by_time_limit = state.current_round >= config.max_rounds
    outcome = compute_outcome(
        successes=state.successes,
        failures=state.failures,
        success_limit=int(config.success_limit or 0),
        failure_limit=int(config.failure_limit or 0),
        round_ended_by_time_limit=round_ended_by_time_limit,
    )
    return outcome, round_ended_by_time_limit


def advance_round(state: MontageState) -> bool:
    """Move to the next round, or settle the outcome and return False."""
    if not can_advance_round(state):
        return False

    outcome, round_ended_by_time_limit = _evaluate_outcome(state)
    state.outcome = outcome
    if outcome is not None or round_ended_by_time_limit:
        return False

    state.current_round += 1
    return True


def finalize_outcome(state: MontageState) -> str | None:
    outcome, _ = _evaluate_outcome(state)
    state.outcome = outcome
    return outcome
