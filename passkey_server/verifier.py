"""
passkey_server/verifier.py

WebAuthn verification, delegated to py_webauthn.

The ceremony layer treats this as a black box:
  - *_options(...)  -> JSON-ready dict for navigator.credentials.create/get
  - verify_*(...)   -> small result dataclass, or VerifierError

Attestation formats, COSE key parsing, signature algorithms, rpIdHash,
origin and flag checks all happen inside py_webauthn. The challenge passed
in is the exact byte string the client echoed back; its MAC/expiry/identity
checks were already done by the caller.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.EDDSA,  # -8
    COSEAlgorithmIdentifier.ECDSA_SHA_256,  # -7
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,  # -257
]

# Cache the verifier so it is built only once per process
_verifier = None


class VerifierError(Exception):
    """Any rejection or failure inside the WebAuthn library."""


@dataclass
class RegistrationResult:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    user_verified: bool


@dataclass
class AuthenticationResult:
    credential_id: bytes
    sign_count: int
    user_verified: bool


@dataclass
class CredentialDescriptor:
    credential_id: bytes
    transports: Optional[List[str]] = None


def _descriptors(creds: Sequence[CredentialDescriptor]) -> List[PublicKeyCredentialDescriptor]:
    out = []
    for c in creds:
        transports = [AuthenticatorTransport(t) for t in c.transports] if c.transports else None
        out.append(PublicKeyCredentialDescriptor(id=c.credential_id, transports=transports))
    return out


def _as_json(credential: Any) -> str:
    return credential if isinstance(credential, str) else json.dumps(credential)


class WebAuthnVerifier:
    def __init__(self, rp_id: str, rp_name: str, origins: List[str]):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origins = list(origins)

    def registration_options(
        self,
        *,
        user_id: bytes,
        username: str,
        challenge: bytes,
        exclude_credentials: Sequence[CredentialDescriptor] = (),
        passkey: bool = False,
        timeout_ms: int = 120_000,
    ) -> dict:
        selection = AuthenticatorSelectionCriteria(
            resident_key=ResidentKeyRequirement.REQUIRED if passkey else ResidentKeyRequirement.DISCOURAGED,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id,
            user_name=username,
            user_display_name=username,
            challenge=challenge,
            timeout=timeout_ms,
            authenticator_selection=selection,
            exclude_credentials=_descriptors(exclude_credentials),
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )
        return json.loads(options_to_json(options))

    def verify_registration(self, *, credential: Any, challenge: bytes) -> RegistrationResult:
        try:
            parsed = parse_registration_credential_json(_as_json(credential))
            verified = verify_registration_response(
                credential=parsed,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origins,
                supported_pub_key_algs=SUPPORTED_ALGORITHMS,
            )
        except Exception as e:
            raise VerifierError(str(e)) from e

        return RegistrationResult(
            credential_id=verified.credential_id,
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            user_verified=verified.user_verified,
        )

    def authentication_options(
        self,
        *,
        challenge: bytes,
        allow_credentials: Sequence[CredentialDescriptor] = (),
        timeout_ms: int = 120_000,
    ) -> dict:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=challenge,
            timeout=timeout_ms,
            allow_credentials=_descriptors(allow_credentials),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return json.loads(options_to_json(options))

    def verify_authentication(
        self,
        *,
        credential: Any,
        challenge: bytes,
        public_key: bytes,
        sign_count: int,
    ) -> AuthenticationResult:
        try:
            parsed = parse_authentication_credential_json(_as_json(credential))
            verified = verify_authentication_response(
                credential=parsed,
                expected_challenge=challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origins,
                credential_public_key=public_key,
                credential_current_sign_count=sign_count,
            )
        except Exception as e:
            raise VerifierError(str(e)) from e

        return AuthenticationResult(
            credential_id=verified.credential_id,
            sign_count=verified.new_sign_count,
            user_verified=verified.user_verified,
        )


def get_verifier() -> WebAuthnVerifier:
    global _verifier
    if _verifier is not None:
        return _verifier

    from .config import settings

    _verifier = WebAuthnVerifier(settings.RP_ID, settings.RP_NAME, settings.ORIGINS)
    return _verifier
