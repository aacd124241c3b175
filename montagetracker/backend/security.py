"""Security helpers for host/player token handling."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import secrets


TOKEN_BYTES = 24

ROLE_HOST = "HOST"
ROLE_PLAYER = "PLAYER"


def generate_token() -> str:
    """Generate a URL-safe access token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str, server_salt: str) -> str:
    """Create deterministic token hash via sha256(token + server_salt)."""
    payload = f"{token}{server_salt}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def verify_token(raw_token: str, expected_hash: str, server_salt: str) -> bool:
    """Compare raw token against a stored hash."""
    return hmac.compare_digest(hash_token(raw_token, server_salt), expected_hash)


@dataclass
class AccessTokens:
    """Salted hashes of the host and player tokens for the running process."""

    server_salt: str
    host_hash: str
    player_hash: str

    @classmethod
    def from_raw(cls, host_token: str, player_token: str, server_salt: str) -> "AccessTokens":
        return cls(
            server_salt=server_salt,
            host_hash=hash_token(host_token, server_salt),
            player_hash=hash_token(player_token, server_salt),
        )

    def role_for(self, raw_token: str | None) -> str | None:
        if not raw_token:
            return None
        if verify_token(raw_token, self.host_hash, self.server_salt):
            return ROLE_HOST
        if verify_token(raw_token, self.player_hash, self.server_salt):
            return ROLE_PLAYER
        return None
