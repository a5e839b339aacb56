"""Tests for bearer-token identification."""

import jwt
import pytest

from hmarket.auth import JwtAuthVerifier
from hmarket.errors import UnauthenticatedError
from hmarket.models import Role

SECRET = "test-secret"


@pytest.fixture
def verifier():
    return JwtAuthVerifier(SECRET)


class TestIdentify:
    def test_round_trip(self, verifier):
        actor = verifier.identify(f"Bearer {verifier.issue('cust-1', Role.CLIENT)}")
        assert actor.actor_id == "cust-1"
        assert actor.role is Role.CLIENT

    def test_missing_credential(self, verifier):
        with pytest.raises(UnauthenticatedError):
            verifier.identify(None)

    def test_wrong_secret(self, verifier):
        token = JwtAuthVerifier("other-secret").issue("cust-1", Role.CLIENT)
        with pytest.raises(UnauthenticatedError):
            verifier.identify(token)

    def test_garbage_token(self, verifier):
        with pytest.raises(UnauthenticatedError):
            verifier.identify("Bearer not-a-jwt")

    @pytest.mark.parametrize(
        "claims",
        [
            {"userId": "x", "role": "system"},
            {"userId": "x", "role": "superuser"},
            {"role": "client"},
        ],
    )
    def test_rejected_claims(self, verifier, claims):
        token = jwt.encode(claims, SECRET, algorithm="HS256")
        with pytest.raises(UnauthenticatedError):
            verifier.identify(token)
