"""Adapters over the host game platform: actors, users, rolls and announcements."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Protocol

import httpx

from montagetracker.backend.models import MontageError, OutcomeSummary, Participant

logger = logging.getLogger(__name__)

DRAW_STEEL_SYSTEM_ID = "draw-steel"
OWNER_LEVEL = "OWNER"


class RollError(MontageError):
    """Raised by a roll collaborator when no roll result could be produced."""


@dataclass(frozen=True)
class ItemRecord:
    item_type: str
    name: str
    dsid: str | None = None


@dataclass(frozen=True)
class ActorRecord:
    id: str
    name: str
    actor_type: str
    system_id: str = DRAW_STEEL_SYSTEM_ID
    items: tuple[ItemRecord, ...] = ()
    # user id -> permission level ("OWNER", "OBSERVER", ...)
    ownership: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UserRecord:
    id: str
    name: str
    is_gm: bool = False


def is_draw_steel_hero(actor: ActorRecord, system_id: str = DRAW_STEEL_SYSTEM_ID) -> bool:
    return actor.actor_type == "hero" and actor.system_id == system_id


def resolve_player_owner(actor: ActorRecord, users: list[UserRecord]) -> str | None:
    for user in users:
        if not user.is_gm and actor.ownership.get(user.id) == OWNER_LEVEL:
            return user.id
    return None


def has_human_determination_perk(actor: ActorRecord) -> bool:
    has_human_ancestry = any(
        item.item_type == "ancestry" and "human" in item.name.lower() for item in actor.items
    )
    if not has_human_ancestry:
        return False
    return any(item.dsid == "determination" or item.name.lower() == "determination" for item in actor.items)


class TierExtractor(Protocol):
    def extract_tier(self, result: Any) -> int | None:
        """Return the power-roll tier of an opaque roll result, or None."""


class PowerRollTierExtractor:
    """Reads the tier ("product") of the last power roll in a chat message payload."""

    def extract_tier(self, result: Any) -> int | None:
        if not isinstance(result, dict):
            return None

        rolls = result.get("rolls")
        if isinstance(rolls, list) and rolls:
            tier = self._product(rolls[-1])
            if tier is not None:
                return tier

        system = result.get("system")
        parts = system.get("parts") if isinstance(system, dict) else None
        if not isinstance(parts, list):
            return None
        test_part = next((p for p in parts if isinstance(p, dict) and p.get("type") == "test"), None)
        if test_part is None:
            return None
        part_rolls = test_part.get("rolls")
        if not isinstance(part_rolls, list) or not part_rolls:
            return None
        return self._product(part_rolls[-1])

    def _product(self, roll: Any) -> int | None:
        if isinstance(roll, str):
            try:
                roll = json.loads(roll)
            except ValueError:
                return None
        if not isinstance(roll, dict):
            return None
        product = roll.get("product")
        if isinstance(product, float) and product.is_integer():
            return int(product)
        if isinstance(product, bool) or not isinstance(product, int):
            return None
        return product


class RollCollaborator(Protocol):
    async def roll_characteristic(self, participant: Participant, characteristic: str, difficulty: str) -> Any:
        """Roll a characteristic test for the participant and return the raw result."""


@dataclass
class HttpRollCollaborator:
    """Asks the host platform to roll via an HTTP endpoint."""

    roll_url: str
    timeout_s: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None

    async def roll_characteristic(self, participant: Participant, characteristic: str, difficulty: str) -> Any:
        payload = {
            "actorId": participant.actor_id,
            "characteristic": characteristic,
            "difficulty": difficulty,
            "types": ["test"],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                response = await client.post(self.roll_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RollError(f"host roll request failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise RollError("host roll response is not JSON") from exc


class UnconfiguredRollCollaborator:
    async def roll_characteristic(self, participant: Participant, characteristic: str, difficulty: str) -> Any:
        raise RollError("no roll endpoint configured (set MONTAGE_ROLL_URL)")


class Announcer(Protocol):
    def announce(self, summary: OutcomeSummary) -> None:
        """Publish the concluded montage to the shared log."""


class LoggingAnnouncer:
    def announce(self, summary: OutcomeSummary) -> None:
        logger.info(
            "Montage '%s' concluded: %s (successes=%d, failures=%d, victories=%d)",
            summary.title,
            summary.outcome_label,
            summary.successes,
            summary.failures,
            summary.victories,
        )
