"""Configuration helpers for backend runtime."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    server_salt: str
    database_url: str | None
    host: str
    port: int
    host_token: str | None
    player_token: str | None
    roll_url: str | None
    roll_difficulty: str
    max_rounds: int
    system_id: str
    log_level: str


def load_settings() -> BackendSettings:
    port_raw = os.getenv("MONTAGE_PORT", "8000")
    max_rounds_raw = os.getenv("MONTAGE_MAX_ROUNDS", "2")
    return BackendSettings(
        server_salt=os.getenv("MONTAGE_SERVER_SALT", "dev-salt"),
        database_url=os.getenv("MONTAGE_DATABASE_URL"),
        host=os.getenv("MONTAGE_HOST", "127.0.0.1"),
        port=int(port_raw),
        host_token=os.getenv("MONTAGE_HOST_TOKEN"),
        player_token=os.getenv("MONTAGE_PLAYER_TOKEN"),
        roll_url=os.getenv("MONTAGE_ROLL_URL"),
        roll_difficulty=os.getenv("MONTAGE_ROLL_DIFFICULTY", "medium"),
        max_rounds=int(max_rounds_raw),
        system_id=os.getenv("MONTAGE_SYSTEM_ID", "draw-steel"),
        log_level=os.getenv("MONTAGE_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
