"""Persistence interfaces and implementations for the montage snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Protocol

STATE_SLOT = "montageState"


class MontageStore(Protocol):
    def load(self) -> dict[str, Any] | None:
        """Return the stored snapshot, or None when no test is active."""

    def save(self, snapshot: dict[str, Any] | None) -> None:
        """Replace the stored snapshot; None clears the slot."""


@dataclass
class InMemoryMontageStore:
    def __post_init__(self) -> None:
        self._slots: dict[str, str] = {}

    def load(self) -> dict[str, Any] | None:
        raw = self._slots.get(STATE_SLOT)
        if raw is None:
            return None
        return json.loads(raw)

    def save(self, snapshot: dict[str, Any] | None) -> None:
        if snapshot is None:
            self._slots.pop(STATE_SLOT, None)
            return
        # Stored as JSON text so callers never share mutable structure with the store.
        self._slots[STATE_SLOT] = json.dumps(snapshot)


@dataclass
class PostgresMontageStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def load(self) -> dict[str, Any] | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT state_json
                    FROM montage_settings
                    WHERE slot = %s
                    """,
                    (STATE_SLOT,),
                )
                row = cur.fetchone()

        if row is None or row[0] is None:
            return None
        state_json = row[0]
        return state_json if isinstance(state_json, dict) else json.loads(state_json)

    def save(self, snapshot: dict[str, Any] | None) -> None:
        now = datetime.now(timezone.utc)
        state_json = None if snapshot is None else json.dumps(snapshot)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO montage_settings (slot, state_json, updated_at)
                    VALUES (%s, %s::jsonb, %s)
                    ON CONFLICT (slot) DO UPDATE
                    SET state_json = EXCLUDED.state_json, updated_at = EXCLUDED.updated_at
                    """,
                    (STATE_SLOT, state_json, now),
                )
            conn.commit()


def create_store(database_url: str | None) -> MontageStore:
    if database_url:
        return PostgresMontageStore(database_url=database_url)
    return InMemoryMontageStore()
