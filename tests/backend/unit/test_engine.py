from montagetracker.backend.engine import (
    abstain,
    advance_round,
    apply_ability_auto_success,
    apply_roll_result,
    can_advance_round,
    create_montage_state,
    finalize_outcome,
    get_or_create_round_state,
    reject_approval,
    submit_intent,
)
from montagetracker.backend.host import ActorRecord, ItemRecord, UserRecord
from montagetracker.backend.models import IntentResult, MontageConfig, MontageState


def _config(difficulty: str = "moderate", group_size: int = 2, max_rounds: int = 2, **overrides) -> MontageConfig:
    return MontageConfig(
        id="m-1",
        title="Escape the Collapsing Mine",
        description="",
        difficulty=difficulty,
        visibility="hidden",
        max_rounds=max_rounds,
        group_size=group_size,
        **overrides,
    )


def _heroes(*ids: str) -> list[ActorRecord]:
    return [ActorRecord(id=actor_id, name=actor_id.title(), actor_type="hero") for actor_id in ids]


def _state(difficulty: str = "moderate", max_rounds: int = 2, ids: tuple[str, ...] = ("ash", "bree")) -> MontageState:
    return create_montage_state(_config(difficulty, len(ids), max_rounds), _heroes(*ids))


def _approve_roll(state: MontageState, actor_id: str, characteristic: str, tier: int | None) -> None:
    assert submit_intent(state, actor_id, "test", characteristic).ok
    approval = state.pending_approvals[-1]
    assert apply_roll_result(state, approval.id, tier) is True


def test_create_montage_state_filters_candidates_and_resolves_roster() -> None:
    candidates = [
        ActorRecord(
            id="ash",
            name="Ash",
            actor_type="hero",
            items=(ItemRecord(item_type="ancestry", name="Human"), ItemRecord(item_type="perk", name="Determination")),
            ownership={"gm": "OWNER", "u1": "OWNER"},
        ),
        ActorRecord(id="goblin", name="Goblin", actor_type="npc"),
        ActorRecord(id="guest", name="Guest", actor_type="hero", system_id="dnd5e"),
        ActorRecord(id="bree", name="Bree", actor_type="hero"),
    ]
    users = [UserRecord(id="gm", name="Director", is_gm=True), UserRecord(id="u1", name="Player One")]

    state = create_montage_state(_config(group_size=2), candidates, users)

    assert [p.actor_id for p in state.participants] == ["ash", "bree"]
    assert state.participants[0].player_id == "u1"
    assert state.participants[0].has_human_assist_perk is True
    assert state.participants[1].player_id is None
    assert state.participants[1].has_human_assist_perk is False
    assert state.current_round == 1
    assert (state.successes, state.failures) == (0, 0)
    assert state.round_states == {}
    assert state.pending_approvals == []
    assert state.used_characteristics == {}
    assert state.outcome is None
    assert state.started_at.endswith("+00:00")


def test_create_montage_state_computes_limits_unless_both_overrides_given() -> None:
    computed = create_montage_state(_config("moderate", group_size=5), _heroes("a"))
    overridden = create_montage_state(_config(success_limit=9, failure_limit=1), _heroes("a"))
    partial_override = create_montage_state(_config("hard", group_size=3, success_limit=9), _heroes("a"))

    assert (computed.config.success_limit, computed.config.failure_limit) == (6, 4)
    assert (overridden.config.success_limit, overridden.config.failure_limit) == (9, 1)
    assert (partial_override.config.success_limit, partial_override.config.failure_limit) == (5, 2)


def test_get_or_create_round_state_is_idempotent() -> None:
    state = _state()

    first = get_or_create_round_state(state, 1)
    second = get_or_create_round_state(state, 1)

    assert first is second
    assert [record.actor_id for record in first] == ["ash", "bree"]
    assert all(record.action_type is None for record in first)


def test_submit_intent_queues_approval_without_touching_tallies() -> None:
    state = _state()

    result = submit_intent(state, "ash", "test", "might", "Shoulders the beam")

    assert result == IntentResult(ok=True)
    record = get_or_create_round_state(state, 1)[0]
    assert record.participating is True
    assert record.action_type == "test"
    assert record.characteristic == "might"
    assert record.narrative == "Shoulders the beam"
    assert len(state.pending_approvals) == 1
    approval = state.pending_approvals[0]
    assert approval.actor_name == "Ash"
    assert approval.characteristic == "might"
    assert (state.successes, state.failures) == (0, 0)
    assert state.used_characteristics == {}


def test_submit_intent_for_unknown_participant_leaves_state_unchanged() -> None:
    state = _state()

    result = submit_intent(state, "stranger", "test", "might")

    assert result == IntentResult(ok=False, error="Participant not found")
    assert state.round_states == {}
    assert state.pending_approvals == []


def test_second_submission_in_same_round_is_rejected_for_any_kind() -> None:
    state = _state()
    submit_intent(state, "ash", "ability", narrative="Casts a ward")

    for action_type in ("test", "assist", "ability", "abstain"):
        result = submit_intent(state, "ash", action_type, "agility")
        assert result.ok is False
        assert result.error == "Already acted this round"
    assert len(state.pending_approvals) == 1


def test_test_and_assist_require_characteristic() -> None:
    state = _state()

    assert submit_intent(state, "ash", "test").error == "Characteristic required"
    assert submit_intent(state, "bree", "assist", "").error == "Characteristic required"
    assert state.pending_approvals == []


def test_resolved_characteristic_cannot_be_reused() -> None:
    state = _state(max_rounds=3)
    _approve_roll(state, "ash", "might", 3)
    abstain(state, "bree")
    assert advance_round(state) is True

    result = submit_intent(state, "ash", "assist", "might")

    assert result == IntentResult(ok=False, error="Characteristic already used this montage")
    assert submit_intent(state, "ash", "assist", "reason").ok is True


def test_rejected_action_does_not_consume_characteristic() -> None:
    state = _state()
    submit_intent(state, "ash", "test", "presence", "Talks down the guard")
    approval_id = state.pending_approvals[0].id

    assert reject_approval(state, approval_id) is True

    record = get_or_create_round_state(state, 1)[0]
    assert record.action_type is None
    assert record.characteristic is None
    assert record.narrative is None
    assert state.pending_approvals == []
    assert submit_intent(state, "ash", "test", "presence").ok is True


def test_unknown_approval_ids_are_no_ops() -> None:
    state = _state()

    assert reject_approval(state, "missing") is False
    assert apply_ability_auto_success(state, "missing") is False
    assert apply_roll_result(state, "missing", 3) is False
    assert (state.successes, state.failures) == (0, 0)


def test_abstain_marks_round_without_approval() -> None:
    state = _state()

    assert abstain(state, "bree") == IntentResult(ok=True)
    assert abstain(state, "bree").error == "Already acted this round"
    assert abstain(state, "nobody").error == "Participant not found"
    assert get_or_create_round_state(state, 1)[1].action_type == "abstain"
    assert state.pending_approvals == []


def test_ability_auto_success_adds_success() -> None:
    state = _state()
    submit_intent(state, "ash", "ability")

    assert apply_ability_auto_success(state, state.pending_approvals[0].id) is True
    assert state.successes == 1
    assert state.pending_approvals == []


def test_apply_roll_result_for_ability_ignores_tier() -> None:
    state = _state()
    submit_intent(state, "ash", "ability")

    assert apply_roll_result(state, state.pending_approvals[0].id, 1) is True
    assert (state.successes, state.failures) == (1, 0)


def test_apply_roll_result_counts_only_tier_three_as_success() -> None:
    state = _state(ids=("a", "b", "c", "d"))
    _approve_roll(state, "a", "might", 3)
    _approve_roll(state, "b", "might", 2)
    _approve_roll(state, "c", "might", 1)
    _approve_roll(state, "d", "might", None)

    assert (state.successes, state.failures) == (1, 3)
    assert state.used_characteristics == {"a": {"might"}, "b": {"might"}, "c": {"might"}, "d": {"might"}}


def test_advance_round_is_gated_by_pending_approvals() -> None:
    state = _state()
    submit_intent(state, "ash", "test", "might")
    abstain(state, "bree")

    assert can_advance_round(state) is False
    assert advance_round(state) is False
    assert state.current_round == 1
    assert state.outcome is None


def test_advance_round_waits_for_every_participant() -> None:
    state = _state()
    _approve_roll(state, "ash", "might", 3)

    assert can_advance_round(state) is False
    assert advance_round(state) is False
    assert state.current_round == 1


def test_advance_round_moves_to_next_round() -> None:
    state = _state(max_rounds=3)
    _approve_roll(state, "ash", "might", 3)
    abstain(state, "bree")

    assert advance_round(state) is True
    assert state.current_round == 2
    assert state.outcome is None
    assert all(record.action_type is None for record in get_or_create_round_state(state, 2))


def test_advance_round_at_time_limit_sets_outcome() -> None:
    state = _state(max_rounds=1)
    _approve_roll(state, "ash", "might", 3)
    abstain(state, "bree")

    assert advance_round(state) is False
    assert state.current_round == 1
    assert state.outcome == "totalFailure"


def test_moderate_party_of_five_reaches_total_success() -> None:
    state = _state("moderate", max_rounds=6, ids=("a", "b", "c", "d", "e"))
    assert (state.config.success_limit, state.config.failure_limit) == (6, 4)

    for actor_id in ("a", "b", "c", "d", "e"):
        _approve_roll(state, actor_id, "might", 3)
    assert advance_round(state) is True
    _approve_roll(state, "a", "agility", 3)
    for actor_id in ("b", "c", "d", "e"):
        abstain(state, actor_id)

    assert advance_round(state) is False
    assert state.outcome == "totalSuccess"


def test_hard_party_of_three_fails_when_successes_trail() -> None:
    state = _state("hard", max_rounds=3, ids=("a", "b", "c"))
    assert (state.config.success_limit, state.config.failure_limit) == (5, 2)

    _approve_roll(state, "a", "might", 3)
    _approve_roll(state, "b", "might", 3)
    _approve_roll(state, "c", "might", 1)
    assert advance_round(state) is True
    _approve_roll(state, "a", "reason", 3)
    _approve_roll(state, "b", "reason", 2)
    abstain(state, "c")

    assert advance_round(state) is False
    assert (state.successes, state.failures) == (3, 2)
    assert state.outcome == "totalFailure"


def test_finalize_outcome_ignores_queue_guard() -> None:
    state = _state(max_rounds=1)
    submit_intent(state, "ash", "test", "might")

    assert finalize_outcome(state) == "totalFailure"
    assert state.outcome == "totalFailure"
    assert len(state.pending_approvals) == 1
