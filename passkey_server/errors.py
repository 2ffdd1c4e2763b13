"""
passkey_server/errors.py

Error taxonomy for ceremonies and the session gate.

Every CeremonyError is a client error (HTTP 400). `reason` is a stable
machine string for the audit trail; `message` is what the client sees.
Verification failures share one generic message so the verifier cannot be
used as an oracle.
"""


class CeremonyError(Exception):
    reason = "ceremony_error"
    message = "Bad request"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MissingInput(CeremonyError):
    reason = "missing_input"
    message = "Missing username"


class UnsupportedTransport(CeremonyError):
    reason = "unsupported_transport"
    message = "Unexpected transport"


class MalformedResponse(CeremonyError):
    reason = "malformed_response"
    message = "Malformed response"


class MalformedChallenge(CeremonyError):
    reason = "malformed_challenge"
    message = "Malformed challenge"


class InvalidChallenge(CeremonyError):
    reason = "invalid_challenge"
    message = "Invalid challenge"


class ChallengeExpired(CeremonyError):
    reason = "challenge_expired"
    message = "Challenge expired"


class IdentityMismatch(CeremonyError):
    reason = "identity_mismatch"
    message = "User ID did not match the challenge"


class AlreadyRegistered(CeremonyError):
    reason = "already_registered"
    message = "User already registered"


class VerificationFailed(CeremonyError):
    reason = "verification_failed"
    message = "verification failed"


class SignCountRegression(VerificationFailed):
    # Same client message as any other verification failure.
    reason = "sign_count_regression"


class MissingCSRF(CeremonyError):
    reason = "missing_csrf"
    message = "Missing CSRF"


class BadCSRF(CeremonyError):
    reason = "bad_csrf"
    message = "Bad CSRF"


class StoreUnavailable(Exception):
    """The key-value store could not be reached. Surfaces as HTTP 500."""
