"""Authoritative owner of the live montage test.

The coordinator is the only caller of the engine. It sequences approvals,
host rolls, persistence and announcements, and notifies subscribers after
every state change.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import logging
from typing import Any

from montagetracker.backend import engine
from montagetracker.backend.host import (
    DRAW_STEEL_SYSTEM_ID,
    ActorRecord,
    Announcer,
    LoggingAnnouncer,
    PowerRollTierExtractor,
    RollCollaborator,
    TierExtractor,
    UserRecord,
    is_draw_steel_hero,
)
from montagetracker.backend.models import (
    ACTION_TYPES,
    ERROR_NO_ACTIVE_MONTAGE,
    IntentResult,
    MontageConfig,
    MontageError,
    MontageState,
    OutcomeSummary,
    Participant,
    RollFailedError,
    SnapshotError,
)
from montagetracker.backend.rules import get_victory_count, outcome_label, reward_text
from montagetracker.backend.security import ROLE_HOST
from montagetracker.backend.state import restore_state, serialize_state
from montagetracker.backend.store import MontageStore

logger = logging.getLogger(__name__)

EVENT_STATE_CHANGED = "state.changed"
EVENT_OUTCOME = "montage.outcome"


class ApprovalInProgressError(MontageError):
    """Raised when an approval is approved again while its roll is pending."""


@dataclass(frozen=True)
class CoordinatorEvent:
    kind: str
    summary: OutcomeSummary | None = None


Listener = Callable[[CoordinatorEvent], None]


class MontageCoordinator:
    def __init__(
        self,
        store: MontageStore,
        roll_collaborator: RollCollaborator,
        tier_extractor: TierExtractor | None = None,
        announcer: Announcer | None = None,
        roll_difficulty: str = "medium",
        system_id: str = DRAW_STEEL_SYSTEM_ID,
    ) -> None:
        self._store = store
        self._roll_collaborator = roll_collaborator
        self._tier_extractor = tier_extractor if tier_extractor is not None else PowerRollTierExtractor()
        self._announcer = announcer if announcer is not None else LoggingAnnouncer()
        self._roll_difficulty = roll_difficulty
        self._system_id = system_id
        self._state: MontageState | None = None
        self._listeners: list[Listener] = []
        self._rolling: set[str] = set()
        self._announced_test_id: str | None = None

    @property
    def state(self) -> MontageState | None:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def load(self) -> MontageState | None:
        try:
            raw = self._store.load()
        except Exception:
            logger.exception("Montage state load failed")
            return None
        if raw is None:
            self._state = None
            return None
        try:
            self._state = restore_state(raw)
        except SnapshotError as exc:
            logger.warning("Ignoring stored montage snapshot: %s", exc)
            self._state = None
            return None
        logger.info("Restored montage '%s' at round %d", self._state.config.title, self._state.current_round)
        return self._state

    def is_eligible(self, actor: ActorRecord) -> bool:
        return is_draw_steel_hero(actor, system_id=self._system_id)

    def start_test(
        self,
        config: MontageConfig,
        candidates: Iterable[ActorRecord],
        users: Iterable[UserRecord] = (),
    ) -> MontageState:
        if self._state is not None:
            logger.info("Replacing active montage '%s'", self._state.config.title)
        self._state = engine.create_montage_state(
            config,
            candidates,
            users,
            is_eligible=self.is_eligible,
        )
        self._announced_test_id = None
        logger.info(
            "Started montage '%s' (%s, %d participants, limits %s/%s)",
            config.title,
            config.difficulty,
            len(self._state.participants),
            self._state.config.success_limit,
            self._state.config.failure_limit,
        )
        self._commit()
        return self._state

    def end_test(self) -> None:
        state = self._state
        if state is not None and state.outcome is not None:
            self._announce(state)
        self._state = None
        self._rolling.clear()
        if state is not None:
            logger.info(
                "Ended montage '%s' (%d pending approvals dropped)",
                state.config.title,
                len(state.pending_approvals),
            )
        self._commit()

    def submit_intent(
        self,
        participant_id: str,
        action_type: str,
        characteristic: str | None = None,
        narrative: str | None = None,
    ) -> IntentResult:
        if self._state is None:
            return IntentResult(ok=False, error=ERROR_NO_ACTIVE_MONTAGE)
        result = engine.submit_intent(self._state, participant_id, action_type, characteristic, narrative)
        return self._finish_intent(participant_id, action_type, result)

    def abstain(self, participant_id: str) -> IntentResult:
        if self._state is None:
            return IntentResult(ok=False, error=ERROR_NO_ACTIVE_MONTAGE)
        result = engine.abstain(self._state, participant_id)
        return self._finish_intent(participant_id, "abstain", result)

    def handle_message(self, payload: Any) -> IntentResult | None:
        """Process one relayed participant message; unknown messages are ignored."""
        if not isinstance(payload, dict) or payload.get("kind") != "submitIntent":
            return None
        participant_id = payload.get("participantId")
        if not isinstance(participant_id, str) or participant_id == "":
            return None
        action_type = payload.get("actionType") or "abstain"
        if action_type not in ACTION_TYPES:
            logger.warning("Ignoring intent with unknown action type %r", action_type)
            return None
        if action_type == "abstain":
            return self.abstain(participant_id)
        return self.submit_intent(
            participant_id,
            str(action_type),
            characteristic=payload.get("characteristic"),
            narrative=payload.get("narrative"),
        )

    def reject(self, approval_id: str) -> bool:
        if self._state is None:
            return False
        if approval_id in self._rolling:
            raise ApprovalInProgressError(f"Approval {approval_id} is being rolled")
        if not engine.reject_approval(self._state, approval_id):
            return False
        logger.info("Rejected approval %s", approval_id)
        self._commit()
        return True

    async def approve(self, approval_id: str) -> bool:
        state = self._state
        if state is None:
            return False
        approval = state.find_approval(approval_id)
        if approval is None:
            return False

        if approval.action_type == "ability":
            engine.apply_ability_auto_success(state, approval_id)
            logger.info("Ability from %s auto-succeeds", approval.actor_name)
            self._commit()
            self._try_advance_round()
            return True

        if approval.action_type not in engine.CHARACTERISTIC_ACTIONS or not approval.characteristic:
            logger.warning("Approval %s (%s) has nothing to roll", approval_id, approval.action_type)
            return False

        if approval_id in self._rolling:
            raise ApprovalInProgressError(f"Approval {approval_id} is already being rolled")

        participant = state.find_participant(approval.actor_id) or Participant(
            actor_id=approval.actor_id,
            actor_name=approval.actor_name,
            player_id=None,
        )
        self._rolling.add(approval_id)
        try:
            result = await self._roll_collaborator.roll_characteristic(
                participant,
                approval.characteristic,
                self._roll_difficulty,
            )
        except Exception as exc:
            logger.exception("Montage roll failed for %s (%s)", approval.actor_name, approval.characteristic)
            raise RollFailedError(approval_id, str(exc)) from exc
        finally:
            self._rolling.discard(approval_id)

        if result is None:
            logger.warning("No roll result for %s (%s)", approval.actor_name, approval.characteristic)
            raise RollFailedError(approval_id, "no roll result")
        if self._state is not state:
            logger.warning("Montage ended while rolling approval %s", approval_id)
            return False
        tier = self._tier_extractor.extract_tier(result)
        if not engine.apply_roll_result(state, approval_id, tier):
            logger.warning("Approval %s left the queue while rolling", approval_id)
            return False
        logger.info(
            "%s rolled %s: tier %s (successes=%d, failures=%d)",
            approval.actor_name,
            approval.characteristic,
            tier,
            state.successes,
            state.failures,
        )
        self._commit()
        self._try_advance_round()
        return True

    def snapshot_for(self, role: str) -> dict[str, Any] | None:
        state = self._state
        if state is None:
            return None
        snapshot = serialize_state(state)
        if role != ROLE_HOST and state.config.visibility != "visible":
            snapshot["config"]["successLimit"] = None
            snapshot["config"]["failureLimit"] = None
        snapshot["canAdvance"] = engine.can_advance_round(state)
        snapshot["outcomeLabel"] = outcome_label(state.outcome)
        return snapshot

    def _finish_intent(self, participant_id: str, action_type: str, result: IntentResult) -> IntentResult:
        if not result.ok:
            logger.warning("Intent %s from %s refused: %s", action_type, participant_id, result.error)
            return result
        self._commit()
        if action_type == "abstain":
            self._try_advance_round()
        return result

    def _try_advance_round(self) -> None:
        state = self._state
        if state is None or not engine.can_advance_round(state):
            return
        if engine.advance_round(state):
            logger.info("Montage '%s' advanced to round %d", state.config.title, state.current_round)
            self._commit()
            return
        outcome = engine.finalize_outcome(state)
        self._commit()
        if outcome is not None:
            self._announce(state)

    def _announce(self, state: MontageState) -> None:
        if state.outcome is None or self._announced_test_id == state.config.id:
            return
        summary = build_summary(state)
        self._announced_test_id = state.config.id
        self._announcer.announce(summary)
        self._notify(CoordinatorEvent(kind=EVENT_OUTCOME, summary=summary))

    def _commit(self) -> None:
        self._persist()
        self._notify(CoordinatorEvent(kind=EVENT_STATE_CHANGED))

    def _persist(self) -> None:
        snapshot = serialize_state(self._state) if self._state is not None else None
        try:
            self._store.save(snapshot)
        except Exception:
            logger.exception("Montage state persist failed")

    def _notify(self, event: CoordinatorEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


def build_summary(state: MontageState) -> OutcomeSummary:
    outcome = state.outcome or "totalFailure"
    return OutcomeSummary(
        title=state.config.title,
        outcome=outcome,
        outcome_label=outcome_label(outcome),
        successes=state.successes,
        failures=state.failures,
        victories=get_victory_count(outcome, state.config.difficulty),
        reward_text=reward_text(outcome, state.config.difficulty),
    )
