"""
passkey_server/ceremony.py

Registration and authentication ceremonies.

Flow (both ceremonies):
  1) options: resolve who the ceremony is for, seal a challenge
     (random nonce + expiry + user id) and hand back WebAuthn options
  2) submit: pull the challenge back out of clientDataJSON, check MAC,
     expiry and identity binding, let the verifier do the WebAuthn
     cryptography, then commit to the store

Nothing is stored between the two steps; the challenge carries its own state.
Each challenge is good for one verification attempt whatever the outcome.

This module knows nothing about HTTP. Failures are raised as CeremonyError
subclasses (errors.py) and translated by main.py.
"""

import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from .challenge import (
    RANDOM_LEN,
    ChallengeClaims,
    assemble_challenge,
    b64url_decode,
    b64url_encode,
    disassemble_and_verify_challenge,
)
from .errors import (
    AlreadyRegistered,
    ChallengeExpired,
    IdentityMismatch,
    MalformedResponse,
    MissingInput,
    SignCountRegression,
    UnsupportedTransport,
    VerificationFailed,
)
from .secret import SecretKey, timing_safe_equal, username_to_id
from .storage import (
    AUTHENTICATOR_TRANSPORTS,
    Credential,
    DataSource,
    Session,
    User,
)
from .verifier import CredentialDescriptor, VerifierError

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 16


@dataclass
class RegistrationOutcome:
    user: User
    credential: Credential
    # set only when the caller had no session and must receive a cookie
    new_session: Optional[Session] = None


@dataclass
class AuthenticationOutcome:
    user: User
    credential: Credential
    session: Session


def _clean_username(username: Optional[str]) -> str:
    return (username or "").strip()


def _parse_response(response: Any) -> Tuple[dict, dict, bytes]:
    """
    Split a PublicKeyCredential JSON into (credential, response, challenge).

    `response` may be the JSON text or the already-decoded object.
    """
    if isinstance(response, str):
        try:
            response = json.loads(response)
        except ValueError:
            raise MalformedResponse()
    if not isinstance(response, dict) or not isinstance(response.get("response"), dict):
        raise MalformedResponse()

    inner = response["response"]
    client_data_b64 = inner.get("clientDataJSON")
    if not client_data_b64:
        raise MalformedResponse("Missing clientDataJSON")

    try:
        client_data = json.loads(b64url_decode(client_data_b64))
        challenge = b64url_decode(client_data["challenge"])
    except (ValueError, KeyError, TypeError):
        raise MalformedResponse("Malformed clientDataJSON")

    return response, inner, challenge


class CeremonyService:
    def __init__(
        self,
        data: DataSource,
        verifier,
        key: SecretKey,
        *,
        challenge_ttl_ms: int = 60_000,
        timeout_ms: int = 120_000,
        clock=time.time,
    ):
        self.data = data
        self.verifier = verifier
        self.key = key
        self.challenge_ttl_ms = challenge_ttl_ms
        self.timeout_ms = timeout_ms
        self.clock = clock

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _session_user(self, session_id: Optional[str]) -> Optional[User]:
        if not session_id:
            return None
        session = self.data.find_session(session_id)
        if session is None:
            return None
        return self.data.find_user_by_user_id(session.user_id)

    def _issue_challenge(self, user_id: bytes) -> Tuple[bytes, int]:
        expiration = self._now_ms() + self.challenge_ttl_ms
        random = secrets.token_bytes(RANDOM_LEN)
        return assemble_challenge(self.key, random, expiration, user_id), expiration

    def _check_challenge(self, challenge: bytes, expected_user_id: Optional[bytes]) -> ChallengeClaims:
        claims = disassemble_and_verify_challenge(self.key, challenge)
        if self._now_ms() > claims.expiration:
            raise ChallengeExpired()
        if expected_user_id is not None and not timing_safe_equal(claims.user_id, expected_user_id):
            raise IdentityMismatch()
        return claims

    def _mint_session(self, user_id: bytes) -> Session:
        session = Session(
            session_id=b64url_encode(secrets.token_bytes(SESSION_ID_BYTES)),
            user_id=user_id,
        )
        self.data.create_session(session)
        return session

    @staticmethod
    def _authenticating_data(challenge: bytes, expiration: int, user_id: bytes) -> dict:
        return {
            "challenge": b64url_encode(challenge),
            "expiration": expiration,
            "userId": b64url_encode(user_id),
        }

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    def registration_options(
        self,
        *,
        session_id: Optional[str] = None,
        username: Optional[str] = None,
        passkey: bool = False,
    ) -> dict:
        user = self._session_user(session_id)
        if user:
            username = user.username
            user_id = user.user_id
        else:
            username = _clean_username(username)
            if not username:
                raise MissingInput()
            user_id = username_to_id(self.key, username)

        challenge, expiration = self._issue_challenge(user_id)

        # the same authenticator must not be registered twice
        exclude: List[CredentialDescriptor] = []
        if user:
            exclude = [
                CredentialDescriptor(c.credential_id, c.transports)
                for c in self.data.find_credentials_for_user_id(user.user_id)
            ]

        options = self.verifier.registration_options(
            user_id=user_id,
            username=username,
            challenge=challenge,
            exclude_credentials=exclude,
            passkey=passkey,
            timeout_ms=self.timeout_ms,
        )
        return {
            "options": options,
            "authenticatingData": self._authenticating_data(challenge, expiration, user_id),
        }

    def register(
        self,
        *,
        session_id: Optional[str] = None,
        username: Optional[str] = None,
        response: Any,
        transports: Optional[List[str]] = None,
    ) -> RegistrationOutcome:
        for transport in transports or ():
            if transport not in AUTHENTICATOR_TRANSPORTS:
                raise UnsupportedTransport(f'Unexpected transport "{transport}"')

        user = self._session_user(session_id)
        had_session = user is not None
        username = _clean_username(username)
        if not user and not username:
            raise MissingInput()

        credential_json, inner, challenge = _parse_response(response)
        if not inner.get("attestationObject"):
            raise MalformedResponse("Missing attestationObject")

        expected_user_id = user.user_id if user else username_to_id(self.key, username)
        claims = self._check_challenge(challenge, expected_user_id)
        user_id = claims.user_id

        # Without a session, an existing user may not be re-registered:
        # that would hand a session for their account to whoever asks.
        if not user and self.data.find_user_by_user_id(user_id):
            raise AlreadyRegistered()

        try:
            result = self.verifier.verify_registration(credential=credential_json, challenge=challenge)
        except VerifierError as e:
            logger.warning("Registration verification failed for %s: %s", b64url_encode(user_id), e)
            raise VerificationFailed()

        # credential ids are globally unique
        if self.data.find_credential_by_id(result.credential_id):
            raise AlreadyRegistered("Credential is already registered")

        if not user:
            user = User(user_id=user_id, username=username)
            self.data.create_user(user)

        credential = Credential(
            credential_id=result.credential_id,
            public_key=result.public_key,
            sign_count=result.sign_count,
            user_verified=result.user_verified,
            user_id=user_id,
            transports=list(transports) if transports else None,
        )
        self.data.create_credential(credential)

        logger.info(
            "Registered credential %s for %s (userId %s, signCount %d, transports %s)",
            b64url_encode(credential.credential_id),
            user.username,
            b64url_encode(user_id),
            credential.sign_count,
            credential.transports,
        )

        new_session = None
        if not had_session:
            new_session = self._mint_session(user_id)

        return RegistrationOutcome(user=user, credential=credential, new_session=new_session)

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    def authentication_options(self, *, username: Optional[str] = None) -> dict:
        """
        With a username: bind its id and allow that user's credentials. An
        unknown username gets an empty allow list rather than an error.
        Without one: bind an empty id and let the authenticator pick a
        discoverable credential.
        """
        username = _clean_username(username)
        allow: List[CredentialDescriptor] = []
        if username:
            user = self.data.find_user_by_username(username)
            user_id = user.user_id if user else username_to_id(self.key, username)
            if user:
                allow = [
                    CredentialDescriptor(c.credential_id, c.transports)
                    for c in self.data.find_credentials_for_user_id(user.user_id)
                ]
        else:
            user_id = b""

        challenge, expiration = self._issue_challenge(user_id)
        options = self.verifier.authentication_options(
            challenge=challenge,
            allow_credentials=allow,
            timeout_ms=self.timeout_ms,
        )
        return {
            "options": options,
            "authenticatingData": self._authenticating_data(challenge, expiration, user_id),
        }

    def authenticate(
        self,
        *,
        session_id: Optional[str] = None,
        username: Optional[str] = None,
        response: Any,
    ) -> AuthenticationOutcome:
        credential_json, inner, challenge = _parse_response(response)
        if not inner.get("authenticatorData") or not inner.get("signature"):
            raise MalformedResponse("Missing authenticatorData or signature")
        try:
            raw_id = b64url_decode(credential_json.get("rawId") or credential_json.get("id") or "")
        except ValueError:
            raise MalformedResponse("Malformed credential id")
        if not raw_id:
            raise MalformedResponse("Missing credential id")

        claims = self._check_challenge(challenge, None)

        stored = self.data.find_credential_by_id(raw_id)
        if stored is None:
            raise VerificationFailed()

        # Every identity the request names must be the credential's owner.
        if claims.user_id and not timing_safe_equal(claims.user_id, stored.user_id):
            raise IdentityMismatch()
        username = _clean_username(username)
        if username and not timing_safe_equal(username_to_id(self.key, username), stored.user_id):
            raise IdentityMismatch()
        user_handle = inner.get("userHandle")
        if user_handle:
            try:
                handle = b64url_decode(user_handle)
            except ValueError:
                raise MalformedResponse("Malformed userHandle")
            if not timing_safe_equal(handle, stored.user_id):
                raise IdentityMismatch()

        user = self.data.find_user_by_user_id(stored.user_id)
        if user is None:
            raise VerificationFailed()

        try:
            result = self.verifier.verify_authentication(
                credential=credential_json,
                challenge=challenge,
                public_key=stored.public_key,
                sign_count=stored.sign_count,
            )
        except VerifierError as e:
            logger.warning("Authentication verification failed for %s: %s", user.username, e)
            raise VerificationFailed()

        # Counters that stop increasing suggest a cloned authenticator.
        # Authenticators without a counter always report 0.
        if (result.sign_count or stored.sign_count) and result.sign_count <= stored.sign_count:
            logger.warning(
                "Sign count regression for credential %s: stored %d, presented %d",
                b64url_encode(stored.credential_id),
                stored.sign_count,
                result.sign_count,
            )
            raise SignCountRegression()

        self.data.update_credential(
            stored.credential_id,
            sign_count=result.sign_count,
            user_verified=result.user_verified,
        )
        stored.sign_count = result.sign_count
        stored.user_verified = result.user_verified

        if session_id:
            self.data.delete_session(session_id)
        session = self._mint_session(user.user_id)

        logger.info("Signed in %s with credential %s", user.username, b64url_encode(stored.credential_id))
        return AuthenticationOutcome(user=user, credential=stored, session=session)
