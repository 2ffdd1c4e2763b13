"""
Shared fixtures.

Settings are read from the environment when passkey_server.config is first
imported, so the environment is prepared here before any test module
imports the package.
"""
import base64
import json
import os
import tempfile

os.environ["SECRET"] = base64.urlsafe_b64encode(b"k" * 32).decode("ascii").rstrip("=")
os.environ["RP_ID"] = "localhost"
os.environ["RP_NAME"] = "test-app"
os.environ["ORIGINS"] = '["http://localhost:8787"]'
os.environ["STORE_BACKEND"] = "memory"
os.environ["AUDIT_DIR"] = tempfile.mkdtemp(prefix="passkey-audit-")
os.environ["LOG_LEVEL"] = "WARNING"

import pytest

from passkey_server.ceremony import CeremonyService
from passkey_server.challenge import b64url_encode
from passkey_server.kv import MemoryKeyValueStore
from passkey_server.secret import load_secret_key
from passkey_server.storage import KVDataSource
from passkey_server.verifier import AuthenticationResult, RegistrationResult, VerifierError

ORIGIN = "http://localhost:8787"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVerifier:
    """
    Stands in for py_webauthn: options echo their inputs, verification
    returns whatever the test queued up.
    """

    def __init__(self):
        self.credential_id = b"credential-1"
        self.public_key = b"\xa5\x01\x02\x03\x26"
        self.sign_count = 0
        self.user_verified = True
        self.fail = False
        self.calls = []

    def registration_options(self, *, user_id, username, challenge, exclude_credentials=(), passkey=False, timeout_ms=120_000):
        self.calls.append(("registration_options", challenge))
        return {
            "challenge": b64url_encode(challenge),
            "user": {"id": b64url_encode(user_id), "name": username, "displayName": username},
            "excludeCredentials": [{"type": "public-key", "id": b64url_encode(c.credential_id)} for c in exclude_credentials],
            "authenticatorSelection": {"residentKey": "required" if passkey else "discouraged"},
            "timeout": timeout_ms,
        }

    def verify_registration(self, *, credential, challenge):
        self.calls.append(("verify_registration", challenge))
        if self.fail:
            raise VerifierError("attestation statement rejected")
        return RegistrationResult(
            credential_id=self.credential_id,
            public_key=self.public_key,
            sign_count=self.sign_count,
            user_verified=self.user_verified,
        )

    def authentication_options(self, *, challenge, allow_credentials=(), timeout_ms=120_000):
        self.calls.append(("authentication_options", challenge))
        return {
            "challenge": b64url_encode(challenge),
            "allowCredentials": [{"type": "public-key", "id": b64url_encode(c.credential_id)} for c in allow_credentials],
            "timeout": timeout_ms,
        }

    def verify_authentication(self, *, credential, challenge, public_key, sign_count):
        self.calls.append(("verify_authentication", challenge, public_key, sign_count))
        if self.fail:
            raise VerifierError("signature invalid")
        return AuthenticationResult(
            credential_id=self.credential_id,
            sign_count=self.sign_count,
            user_verified=self.user_verified,
        )


def _client_data(kind: str, challenge_b64: str) -> str:
    return b64url_encode(
        json.dumps({"type": kind, "challenge": challenge_b64, "origin": ORIGIN}).encode("utf-8")
    )


@pytest.fixture
def key():
    return load_secret_key(os.environ["SECRET"])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def data(kv):
    return KVDataSource(kv)


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def ceremony(data, verifier, key, clock):
    return CeremonyService(data, verifier, key, clock=clock)


@pytest.fixture
def registration_response():
    """Build an attestation PublicKeyCredential JSON around a challenge."""

    def build(challenge_b64: str, credential_id: bytes = b"credential-1") -> dict:
        return {
            "id": b64url_encode(credential_id),
            "rawId": b64url_encode(credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": _client_data("webauthn.create", challenge_b64),
                "attestationObject": "o2NmbXRkbm9uZQ",
            },
        }

    return build


@pytest.fixture
def authentication_response():
    """Build an assertion PublicKeyCredential JSON around a challenge."""

    def build(challenge_b64: str, credential_id: bytes = b"credential-1", user_handle: bytes | None = None) -> dict:
        inner = {
            "clientDataJSON": _client_data("webauthn.get", challenge_b64),
            "authenticatorData": "SZYN5YgOjGh0NBcPZHZgW4_krrmihjLHmVzzuoMdl2MFAAAAAQ",
            "signature": "MEUCIQ",
        }
        if user_handle is not None:
            inner["userHandle"] = b64url_encode(user_handle)
        return {
            "id": b64url_encode(credential_id),
            "rawId": b64url_encode(credential_id),
            "type": "public-key",
            "response": inner,
        }

    return build
