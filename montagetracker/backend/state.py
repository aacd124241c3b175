"""Snapshot conversion between MontageState and JSON-safe documents.

The two mapping fields are flattened to ordered pairs so the document
survives any JSON store; restoring rebuilds the used characteristics as sets.
"""

from __future__ import annotations

from typing import Any

from montagetracker.backend.models import (
    MontageConfig,
    MontageState,
    Participant,
    ParticipantRoundState,
    PendingApproval,
    SnapshotError,
)


def serialize_state(state: MontageState) -> dict[str, Any]:
    config = state.config
    return {
        "config": {
            "id": config.id,
            "title": config.title,
            "description": config.description,
            "difficulty": config.difficulty,
            "visibility": config.visibility,
            "successLimit": config.success_limit,
            "failureLimit": config.failure_limit,
            "maxRounds": config.max_rounds,
            "groupSize": config.group_size,
        },
        "participants": [
            {
                "actorId": p.actor_id,
                "actorName": p.actor_name,
                "playerId": p.player_id,
                "hasHumanAssistPerk": p.has_human_assist_perk,
            }
            for p in state.participants
        ],
        "currentRound": state.current_round,
        "successes": state.successes,
        "failures": state.failures,
        "roundStates": [
            [round_number, [_round_record_to_dict(record) for record in records]]
            for round_number, records in state.round_states.items()
        ],
        "pendingApprovals": [_approval_to_dict(approval) for approval in state.pending_approvals],
        "usedCharacteristics": [
            [actor_id, sorted(used)] for actor_id, used in state.used_characteristics.items()
        ],
        "outcome": state.outcome,
        "startedAt": state.started_at,
    }


def restore_state(raw: dict[str, Any]) -> MontageState:
    config_raw = raw.get("config") if isinstance(raw, dict) else None
    if not isinstance(config_raw, dict):
        raise SnapshotError("snapshot has no config object")

    try:
        config = MontageConfig(
            id=str(config_raw["id"]),
            title=str(config_raw.get("title", "")),
            description=str(config_raw.get("description", "")),
            difficulty=str(config_raw["difficulty"]),
            visibility=str(config_raw.get("visibility", "hidden")),
            max_rounds=int(config_raw["maxRounds"]),
            group_size=int(config_raw["groupSize"]),
            success_limit=_optional_int(config_raw.get("successLimit")),
            failure_limit=_optional_int(config_raw.get("failureLimit")),
        )
        participants = [
            Participant(
                actor_id=str(entry["actorId"]),
                actor_name=str(entry.get("actorName", "")),
                player_id=entry.get("playerId"),
                has_human_assist_perk=bool(entry.get("hasHumanAssistPerk", False)),
            )
            for entry in raw.get("participants", [])
        ]
        round_states = {
            int(round_number): [_round_record_from_dict(entry) for entry in records]
            for round_number, records in raw.get("roundStates", [])
        }
        pending = [_approval_from_dict(entry) for entry in raw.get("pendingApprovals", [])]
        used = {str(actor_id): set(names) for actor_id, names in raw.get("usedCharacteristics", [])}
        current_round = int(raw.get("currentRound", 1))
        successes = int(raw.get("successes", 0))
        failures = int(raw.get("failures", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise SnapshotError(f"malformed snapshot: {exc}") from exc

    return MontageState(
        config=config,
        participants=participants,
        started_at=str(raw.get("startedAt", "")),
        current_round=current_round,
        successes=successes,
        failures=failures,
        round_states=round_states,
        pending_approvals=pending,
        used_characteristics=used,
        outcome=raw.get("outcome"),
    )


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _round_record_to_dict(record: ParticipantRoundState) -> dict[str, Any]:
    return {
        "actorId": record.actor_id,
        "participating": record.participating,
        "actionType": record.action_type,
        "characteristic": record.characteristic,
        "narrative": record.narrative,
    }


def _round_record_from_dict(entry: dict[str, Any]) -> ParticipantRoundState:
    return ParticipantRoundState(
        actor_id=str(entry["actorId"]),
        participating=bool(entry.get("participating", False)),
        action_type=entry.get("actionType"),
        characteristic=entry.get("characteristic"),
        narrative=entry.get("narrative"),
    )


def _approval_to_dict(approval: PendingApproval) -> dict[str, Any]:
    return {
        "id": approval.id,
        "actorId": approval.actor_id,
        "actorName": approval.actor_name,
        "actionType": approval.action_type,
        "characteristic": approval.characteristic,
        "narrative": approval.narrative,
        "submittedAt": approval.submitted_at,
    }


def _approval_from_dict(entry: dict[str, Any]) -> PendingApproval:
    return PendingApproval(
        id=str(entry["id"]),
        actor_id=str(entry["actorId"]),
        actor_name=str(entry.get("actorName", "")),
        action_type=str(entry["actionType"]),
        characteristic=entry.get("characteristic"),
        narrative=entry.get("narrative"),
        submitted_at=str(entry.get("submittedAt", "")),
    )
