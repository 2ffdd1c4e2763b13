"""
passkey_server/secret.py

Deterministic secret derivations from the server key.

One symmetric key (SECRET, base64url in the environment) is imported once per
process and used as HMAC-SHA-256 key material for:
  - user ids:     HMAC(key, "username:" + username)[:12]
  - CSRF tokens:  base64url( HMAC(key, "csrf:" + session_id)[:12] )
  - challenge MACs (see challenge.py, "challenge:" context)

The context prefixes keep the three uses from ever producing each other's
outputs.
"""

from dataclasses import dataclass

from cryptography.hazmat.primitives import constant_time, hashes, hmac

from .challenge import b64url_decode, b64url_encode

DERIVED_ID_LEN = 12
MIN_SECRET_LEN = 16

# Process-wide key cache, loaded on first use.
_secret_key = None


@dataclass(frozen=True, repr=False)
class SecretKey:
    raw: bytes

    def mac(self, data: bytes) -> bytes:
        h = hmac.HMAC(self.raw, hashes.SHA256())
        h.update(data)
        return h.finalize()

    def verify(self, data: bytes, tag: bytes) -> None:
        """Constant-time MAC check; raises cryptography's InvalidSignature."""
        h = hmac.HMAC(self.raw, hashes.SHA256())
        h.update(data)
        h.verify(tag)

    def __repr__(self) -> str:
        return "SecretKey(<redacted>)"


def load_secret_key(secret_b64: str) -> SecretKey:
    """
    Import a base64url secret as HMAC key material.

    Raises ValueError for anything unusable; callers treat that as fatal at
    startup.
    """
    try:
        raw = b64url_decode(secret_b64)
    except ValueError:
        raise ValueError("SECRET must be base64url encoded")
    if len(raw) < MIN_SECRET_LEN:
        raise ValueError(f"SECRET must decode to at least {MIN_SECRET_LEN} bytes")
    return SecretKey(raw)


def get_secret_key() -> SecretKey:
    """
    Return the process-wide key, importing it on first use.

    No lock: two threads racing here derive identical keys and the last
    assignment wins.
    """
    global _secret_key
    if _secret_key is not None:
        return _secret_key

    from .config import settings

    _secret_key = load_secret_key(settings.SECRET)
    return _secret_key


def username_to_id(key: SecretKey, username: str) -> bytes:
    return key.mac(b"username:" + username.encode("utf-8"))[:DERIVED_ID_LEN]


def derive_csrf_token(key: SecretKey, session_id: str) -> str:
    return b64url_encode(key.mac(b"csrf:" + session_id.encode("utf-8"))[:DERIVED_ID_LEN])


def timing_safe_equal(a: bytes, b: bytes) -> bool:
    # bytes_eq returns False for unequal lengths; equal lengths are compared
    # without short-circuiting.
    return constant_time.bytes_eq(bytes(a), bytes(b))


def csrf_token_matches(key: SecretKey, session_id: str, presented: str) -> bool:
    expected = derive_csrf_token(key, session_id)
    return timing_safe_equal(expected.encode("utf-8"), presented.encode("utf-8"))
