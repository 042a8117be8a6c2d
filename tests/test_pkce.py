"""
Tests for state / nonce / PKCE generation.
"""

import re

from connectors.pkce import (
    CHALLENGE_METHOD,
    code_challenge_for,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
)

_B64URL = re.compile(r"^[A-Za-z0-9_-]+$")


class TestCodeVerifier:
    def test_verifier_is_unpadded_base64url_of_32_bytes(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert _B64URL.match(verifier)
        assert "=" not in verifier

    def test_verifiers_are_unique(self):
        assert len({generate_code_verifier() for _ in range(50)}) == 50


class TestCodeChallenge:
    def test_known_vector(self):
        # RFC 7636, appendix B
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_short_verifier_vector(self):
        # base64url(SHA-256("abc123")), no padding
        assert code_challenge_for("abc123") == "bKE9UspwyIPg8LsQHkJaiehiTeUdstI5JZOvaoQRgJA"

    def test_pair_is_consistent(self):
        verifier, challenge = generate_pkce_pair()
        assert challenge == code_challenge_for(verifier)
        assert "=" not in challenge
        assert CHALLENGE_METHOD == "S256"


class TestState:
    def test_state_and_nonce_shape(self):
        state = generate_state()
        assert re.match(r"^[0-9a-f]{64}$", state.state)
        assert re.match(r"^[0-9a-f]{32}$", state.nonce)
        assert state.code_verifier is None
        assert state.code_challenge is None

    def test_with_pkce(self):
        state = generate_state(with_pkce=True)
        assert state.code_verifier
        assert state.code_challenge == code_challenge_for(state.code_verifier)

    def test_states_are_unique(self):
        assert generate_state().state != generate_state().state
