# passkey_server/challenge.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *challenge layer* for WebAuthn ceremonies.
#
# Responsibilities:
#   - Seal a random nonce, an absolute expiry and a target user id into one
#     self-verifying challenge
#   - Parse and MAC-check a challenge echoed back inside clientDataJSON
#
# What this module is NOT:
#   - Not stateful: issued challenges are never stored, so any worker can
#     verify what any other worker issued
#   - Not a policy engine: expiry and identity binding are enforced by the
#     caller (ceremony.py), so one primitive serves every expiry policy
#
# Trade-off: an outstanding challenge cannot be revoked before it expires.
#
# Challenge wire format (big-endian, fixed field order):
#
#     random(16) || expiration_ms(8) || user_id_len(1) || user_id(n) || mac(32)
#
# Where:
#   - expiration_ms is an unsigned 64-bit epoch in milliseconds
#   - user_id is 0..255 bytes (empty for discoverable-credential sign-in)
#   - mac = HMAC-SHA-256(SECRET, "challenge:" || every preceding byte)
# -----------------------------------------------------------------------------

import base64
import binascii
import re
import struct
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature

from .errors import InvalidChallenge, MalformedChallenge

RANDOM_LEN = 16
MAC_LEN = 32
MAX_USER_ID_LEN = 255
_HEADER = struct.Struct(">16sQB")
MIN_CHALLENGE_LEN = _HEADER.size + MAC_LEN

_CONTEXT = b"challenge:"

_B64URL_RE = re.compile(r"[A-Za-z0-9_-]*={0,2}")


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """
    URL-safe Base64 encoding WITHOUT padding.

    This is the encoding WebAuthn uses for challenges, ids and
    clientDataJSON, and the one used for every byte field in the store.
    """
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Characters outside the URL-safe alphabet raise ValueError instead of
    being silently dropped.
    """
    s = str(s).strip()
    # b64decode would also take "+" and "/" next to the altchars
    if not _B64URL_RE.fullmatch(s):
        raise ValueError("invalid base64url: characters outside the URL-safe alphabet")
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64url: {e}") from e


@dataclass(frozen=True)
class ChallengeClaims:
    user_id: bytes
    expiration: int  # epoch millis


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------
def assemble_challenge(key, random: bytes, expiration: int, user_id: bytes) -> bytes:
    """
    Build the canonical byte layout and append its MAC.

    `key` is a secret.SecretKey. Field widths are fixed so two different
    claim sets can never serialize to the same bytes.
    """
    if len(random) != RANDOM_LEN:
        raise ValueError(f"random must be {RANDOM_LEN} bytes")
    if len(user_id) > MAX_USER_ID_LEN:
        raise ValueError(f"user_id must be at most {MAX_USER_ID_LEN} bytes")

    body = _HEADER.pack(bytes(random), int(expiration), len(user_id)) + bytes(user_id)
    return body + key.mac(_CONTEXT + body)


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def disassemble_and_verify_challenge(key, challenge: bytes) -> ChallengeClaims:
    """
    Parse a challenge and verify its MAC.

    Raises:
      - MalformedChallenge if the layout cannot be parsed
      - InvalidChallenge if the MAC does not match

    IMPORTANT:
      - This function does NOT check expiry.
      - Callers MUST compare `expiration` to the current time themselves.
    """
    challenge = bytes(challenge)
    if len(challenge) < MIN_CHALLENGE_LEN:
        raise MalformedChallenge()

    # MAC first: a flipped bit anywhere, length byte included, is tampering.
    body, tag = challenge[:-MAC_LEN], challenge[-MAC_LEN:]
    try:
        key.verify(_CONTEXT + body, tag)
    except InvalidSignature:
        raise InvalidChallenge()

    _random, expiration, user_id_len = _HEADER.unpack_from(body)
    if len(body) != _HEADER.size + user_id_len:
        raise MalformedChallenge()

    return ChallengeClaims(
        user_id=body[_HEADER.size:],
        expiration=expiration,
    )
