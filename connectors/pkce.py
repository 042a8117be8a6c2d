"""
OAuth2 state, nonce and PKCE (RFC 7636, ``S256`` only) generation.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Tuple

from utils.schemas import OAuth2State

CHALLENGE_METHOD = "S256"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier(num_bytes: int = 32) -> str:
    return _b64url(secrets.token_bytes(num_bytes))


def code_challenge_for(verifier: str) -> str:
    """base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair() -> Tuple[str, str]:
    """Return ``(code_verifier, code_challenge)``."""
    verifier = generate_code_verifier()
    return verifier, code_challenge_for(verifier)


def generate_state(with_pkce: bool = False) -> OAuth2State:
    state = OAuth2State(
        state=secrets.token_hex(32),
        nonce=secrets.token_hex(16),
    )
    if with_pkce:
        state.code_verifier, state.code_challenge = generate_pkce_pair()
    return state
