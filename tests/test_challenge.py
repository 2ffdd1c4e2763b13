import pytest

from passkey_server.challenge import (
    MIN_CHALLENGE_LEN,
    assemble_challenge,
    b64url_decode,
    b64url_encode,
    disassemble_and_verify_challenge,
)
from passkey_server.errors import InvalidChallenge, MalformedChallenge
from passkey_server.secret import load_secret_key

RANDOM = bytes(range(16))
USER_ID = b"\x01\x02\x03\x04\x05\x06\x07\x08\x09\x0a\x0b\x0c"
EXPIRATION = 1_700_000_060_000


def test_assemble_then_verify_returns_claims(key):
    token = assemble_challenge(key, RANDOM, EXPIRATION, USER_ID)
    claims = disassemble_and_verify_challenge(key, token)
    assert claims.user_id == USER_ID
    assert claims.expiration == EXPIRATION
    assert len(token) == MIN_CHALLENGE_LEN + len(USER_ID)


def test_empty_user_id_is_allowed(key):
    token = assemble_challenge(key, RANDOM, EXPIRATION, b"")
    assert disassemble_and_verify_challenge(key, token).user_id == b""


def test_expired_challenge_still_parses(key):
    # expiry is the caller's job
    token = assemble_challenge(key, RANDOM, 1, USER_ID)
    assert disassemble_and_verify_challenge(key, token).expiration == 1


def test_any_single_bit_flip_is_rejected(key):
    token = assemble_challenge(key, RANDOM, EXPIRATION, USER_ID)
    for i in range(len(token)):
        for bit in range(8):
            tampered = bytearray(token)
            tampered[i] ^= 1 << bit
            with pytest.raises(InvalidChallenge):
                disassemble_and_verify_challenge(key, bytes(tampered))


def test_challenge_from_another_key_is_rejected(key):
    token = assemble_challenge(load_secret_key("b" * 43), RANDOM, EXPIRATION, USER_ID)
    with pytest.raises(InvalidChallenge):
        disassemble_and_verify_challenge(key, token)


@pytest.mark.parametrize("length", [0, 1, MIN_CHALLENGE_LEN - 1])
def test_truncated_challenge_is_malformed(key, length):
    token = assemble_challenge(key, RANDOM, EXPIRATION, b"")
    with pytest.raises(MalformedChallenge):
        disassemble_and_verify_challenge(key, token[:length])


def test_assemble_rejects_bad_field_sizes(key):
    with pytest.raises(ValueError):
        assemble_challenge(key, b"short", EXPIRATION, USER_ID)
    with pytest.raises(ValueError):
        assemble_challenge(key, RANDOM, EXPIRATION, b"x" * 256)


def test_b64url_helpers():
    assert b64url_encode(b"\xfb\xff") == "-_8"
    assert b64url_decode("-_8") == b"\xfb\xff"
    assert b64url_decode("-_8=") == b"\xfb\xff"
    with pytest.raises(ValueError):
        b64url_decode("+/8")
    with pytest.raises(ValueError):
        b64url_decode("ab$d")


@pytest.mark.parametrize("encoded", ["+/8", "-/8", "+_8", "a+b=", "ab/c"])
def test_b64url_decode_rejects_standard_alphabet(encoded):
    with pytest.raises(ValueError):
        b64url_decode(encoded)


@pytest.mark.parametrize("encoded", ["YQ=", "YQ==", "YWI", ""])
def test_b64url_decode_accepts_optional_padding(encoded):
    assert b64url_decode(encoded) in (b"a", b"ab", b"")
