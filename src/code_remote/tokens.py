"""Human-typed session tokens: 8 characters over [A-Z0-9]."""

import re
import secrets
import string
from typing import Callable, Container, Optional

TOKEN_ALPHABET = string.ascii_uppercase + string.digits
TOKEN_LENGTH = 8
MAX_TOKEN_ATTEMPTS = 1000

_TOKEN_RE = re.compile(r"^[A-Z0-9]{8}$")

TokenGenerator = Callable[[], str]


class TokenGenerationError(Exception):
    """Raised when no unused token could be drawn."""


def generate_token() -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def normalize_token(value: Optional[str]) -> Optional[str]:
    """Return the canonical uppercase token, or None if `value` is not one."""
    if not isinstance(value, str):
        return None
    candidate = value.strip().upper()
    if not _TOKEN_RE.match(candidate):
        return None
    return candidate


def is_valid_token(value: Optional[str]) -> bool:
    return normalize_token(value) is not None


def generate_unique_token(
    live_tokens: Callable[[], Container[str]],
    *,
    generator: TokenGenerator = generate_token,
    max_attempts: int = MAX_TOKEN_ATTEMPTS,
) -> str:
    # Re-read the live directory on every attempt; another writer may have
    # claimed a token since the previous draw.
    for _ in range(max_attempts):
        token = normalize_token(generator())
        if token is None:
            continue
        if token not in live_tokens():
            return token
    raise TokenGenerationError(
        f"Could not generate an unused token after {max_attempts} attempts"
    )
