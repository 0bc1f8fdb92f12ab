import secrets
import string

import pytest

from auth.errors import SecureRandomUnavailableError
from auth.pkce import (
    generate_anti_csrf_token,
    generate_challenge_pair,
    generate_code_challenge,
    generate_code_verifier,
)

UNRESERVED = set(string.ascii_letters + string.digits + "-._~")


def test_code_verifier_length() -> None:
    assert len(generate_code_verifier()) == 128


def test_code_verifier_uses_unreserved_alphabet() -> None:
    verifier = generate_code_verifier()

    assert set(verifier) <= UNRESERVED


def test_code_verifier_rejects_out_of_range_length() -> None:
    with pytest.raises(ValueError):
        generate_code_verifier(42)
    with pytest.raises(ValueError):
        generate_code_verifier(129)


def test_code_verifiers_are_unique() -> None:
    assert len({generate_code_verifier() for _ in range(50)}) == 50


def test_code_challenge_is_s256() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

    assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_code_challenge_has_no_padding() -> None:
    challenge = generate_code_challenge(generate_code_verifier())

    assert len(challenge) == 43
    assert "=" not in challenge
    assert "+" not in challenge and "/" not in challenge


def test_challenge_pair_matches() -> None:
    verifier, challenge = generate_challenge_pair()

    assert generate_code_challenge(verifier) == challenge


def test_anti_csrf_token() -> None:
    token = generate_anti_csrf_token()

    assert len(token) == 16
    assert set(token) <= UNRESERVED
    assert token != generate_anti_csrf_token()


def test_missing_secure_random_source(monkeypatch) -> None:
    def unavailable(_seq):
        raise NotImplementedError

    monkeypatch.setattr(secrets, "choice", unavailable)

    with pytest.raises(SecureRandomUnavailableError):
        generate_code_verifier()
