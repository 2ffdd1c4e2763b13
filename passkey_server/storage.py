# passkey_server/storage.py
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from .challenge import b64url_decode, b64url_encode
from .kv import KeyValueStore, create_kv_store

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400
CREDENTIAL_DIGEST_LEN = 16

AUTHENTICATOR_TRANSPORTS = frozenset({"ble", "hybrid", "internal", "nfc", "smart-card", "usb"})


@dataclass
class User:
    user_id: bytes
    username: str


@dataclass
class Credential:
    credential_id: bytes
    public_key: bytes  # COSE-encoded
    sign_count: int
    user_verified: bool
    user_id: bytes
    transports: Optional[List[str]] = None


@dataclass
class Session:
    session_id: str
    user_id: bytes


def credential_digest(credential_id: bytes) -> str:
    """
    Fixed-size storage name for a credential id.

    Authenticators may return long ids; the first 16 bytes of SHA-256 keep
    keys bounded and can be recomputed from the id alone.
    """
    digest = hashlib.sha256(bytes(credential_id)).digest()
    return b64url_encode(digest[:CREDENTIAL_DIGEST_LEN])


def _user_key(user_id: bytes) -> str:
    return f"/user/{b64url_encode(user_id)}"


def _username_key(username: str) -> str:
    return f"/username/{username}"


def _credential_key(credential_id: bytes) -> str:
    return f"/credential/{credential_digest(credential_id)}"


def _user_credentials_prefix(user_id: bytes) -> str:
    return f"/user/{b64url_encode(user_id)}/credential/"


def _session_key(session_id: str) -> str:
    return f"/session/{session_id}"


def _credential_to_json(credential: Credential) -> str:
    data = {
        "credentialId": b64url_encode(credential.credential_id),
        "publicKey": b64url_encode(credential.public_key),
        "signCount": credential.sign_count,
        "userVerified": credential.user_verified,
        "userId": b64url_encode(credential.user_id),
    }
    if credential.transports:
        data["transports"] = list(credential.transports)
    return json.dumps(data)


def _credential_from_json(raw: str) -> Credential:
    data = json.loads(raw)
    return Credential(
        credential_id=b64url_decode(data["credentialId"]),
        public_key=b64url_decode(data["publicKey"]),
        sign_count=int(data["signCount"]),
        user_verified=bool(data["userVerified"]),
        user_id=b64url_decode(data["userId"]),
        transports=data.get("transports"),
    )


def _user_from_json(raw: str) -> User:
    data = json.loads(raw)
    return User(user_id=b64url_decode(data["userId"]), username=data["username"])


class DataSource(ABC):
    """Persistence contract for users, credentials and sessions."""

    @abstractmethod
    def find_user_by_user_id(self, user_id: bytes) -> Optional[User]: ...

    @abstractmethod
    def find_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, user: User) -> None: ...

    @abstractmethod
    def create_credential(self, credential: Credential) -> None: ...

    @abstractmethod
    def find_credentials_for_user_id(self, user_id: bytes) -> List[Credential]: ...

    @abstractmethod
    def find_credential_by_id(self, credential_id: bytes) -> Optional[Credential]: ...

    @abstractmethod
    def update_credential(
        self,
        credential_id: bytes,
        sign_count: Optional[int] = None,
        user_verified: Optional[bool] = None,
    ) -> bool: ...

    @abstractmethod
    def delete_credential(self, credential_id: bytes) -> None: ...

    @abstractmethod
    def create_session(self, session: Session) -> None: ...

    @abstractmethod
    def delete_session(self, session_id: str) -> None: ...

    @abstractmethod
    def find_session(self, session_id: str) -> Optional[Session]: ...


class KVDataSource(DataSource):
    """
    DataSource over a KeyValueStore.

    Primary records and their secondary indexes are written as separate
    single-key puts. A crash between the two leaves an index without a
    primary (or the reverse); reads always resolve through the primary and
    treat a missing or unparsable one as "not found".
    """

    def __init__(self, kv: KeyValueStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.kv = kv
        self.ttl = ttl_seconds

    # -- users ---------------------------------------------------------------

    def find_user_by_user_id(self, user_id: bytes) -> Optional[User]:
        raw = self.kv.get(_user_key(user_id))
        return _user_from_json(raw) if raw else None

    def find_user_by_username(self, username: str) -> Optional[User]:
        encoded_id = self.kv.get(_username_key(username))
        if not encoded_id:
            return None
        raw = self.kv.get(f"/user/{encoded_id}")
        return _user_from_json(raw) if raw else None

    def create_user(self, user: User) -> None:
        encoded_id = b64url_encode(user.user_id)
        self.kv.put(
            _user_key(user.user_id),
            json.dumps({"userId": encoded_id, "username": user.username}),
            self.ttl,
        )
        self.kv.put(_username_key(user.username), encoded_id, self.ttl)

    # -- credentials ---------------------------------------------------------

    def create_credential(self, credential: Credential) -> None:
        digest = credential_digest(credential.credential_id)
        self.kv.put(f"/credential/{digest}", _credential_to_json(credential), self.ttl)
        # index the credential under its user
        self.kv.put(_user_credentials_prefix(credential.user_id) + digest, "", self.ttl)

    def find_credentials_for_user_id(self, user_id: bytes) -> List[Credential]:
        # One page only; a user with more credentials than a page sees a
        # truncated list.
        index_keys = self.kv.list(_user_credentials_prefix(user_id))
        primary_keys = ["/credential/" + k.rsplit("/", 1)[-1] for k in index_keys]

        credentials: List[Credential] = []
        for index_key, raw in zip(index_keys, self.kv.get_many(primary_keys)):
            if raw is None:
                # revoked or expired; the index entry is stale
                continue
            try:
                credentials.append(_credential_from_json(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("Could not parse credential for %s", index_key)
        return credentials

    def find_credential_by_id(self, credential_id: bytes) -> Optional[Credential]:
        raw = self.kv.get(_credential_key(credential_id))
        return _credential_from_json(raw) if raw else None

    def update_credential(
        self,
        credential_id: bytes,
        sign_count: Optional[int] = None,
        user_verified: Optional[bool] = None,
    ) -> bool:
        """
        Read-modify-write of the mutable counters.

        Writes (and so refreshes the TTL) only when a value changed; a
        no-op update leaves the record and its expiry untouched.
        """
        credential = self.find_credential_by_id(credential_id)
        if credential is None:
            return False

        dirty = False
        if sign_count is not None and sign_count != credential.sign_count:
            credential.sign_count = sign_count
            dirty = True
        if user_verified is not None and user_verified != credential.user_verified:
            credential.user_verified = user_verified
            dirty = True

        if dirty:
            self.kv.put(_credential_key(credential_id), _credential_to_json(credential), self.ttl)
        return dirty

    def delete_credential(self, credential_id: bytes) -> None:
        # The per-user index entry is left behind; listing skips it.
        self.kv.delete(_credential_key(credential_id))

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        self.kv.put(
            _session_key(session.session_id),
            json.dumps({"sessionId": session.session_id, "userId": b64url_encode(session.user_id)}),
            self.ttl,
        )

    def delete_session(self, session_id: str) -> None:
        self.kv.delete(_session_key(session_id))

    def find_session(self, session_id: str) -> Optional[Session]:
        raw = self.kv.get(_session_key(session_id))
        if not raw:
            return None
        data = json.loads(raw)
        return Session(session_id=data["sessionId"], user_id=b64url_decode(data["userId"]))


# Process-wide store handle, built on first use.
_data_source = None


def get_data_source() -> DataSource:
    global _data_source
    if _data_source is not None:
        return _data_source

    from .config import settings

    _data_source = KVDataSource(create_kv_store(settings), ttl_seconds=settings.DATA_TTL_SECONDS)
    return _data_source
