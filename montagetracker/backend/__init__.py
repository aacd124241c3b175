"""Backend package for the montage tracker."""

from .config import BackendSettings, load_settings
from .coordinator import MontageCoordinator
from .models import IntentResult, MontageConfig, MontageState
from .rules import compute_limits, compute_outcome, get_victory_count
from .security import generate_token, hash_token, verify_token
from .state import restore_state, serialize_state
from .store import InMemoryMontageStore, MontageStore, PostgresMontageStore, create_store

__all__ = [
    "BackendSettings",
    "compute_limits",
    "compute_outcome",
    "create_store",
    "generate_token",
    "get_victory_count",
    "hash_token",
    "InMemoryMontageStore",
    "IntentResult",
    "load_settings",
    "MontageConfig",
    "MontageCoordinator",
    "MontageState",
    "MontageStore",
    "PostgresMontageStore",
    "restore_state",
    "serialize_state",
    "verify_token",
]
