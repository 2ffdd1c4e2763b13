"""
passkey_server/audit.py

Tamper-evident ceremony audit trail.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each stored line carries `prev_hash` and `hash`; the last hash is kept in a
state file so appends don't re-read the log. Any edit, deletion or
reordering of lines breaks the chain (see verify_log_chain).

Events written by main.py:
  registration / authentication   result=approved|denied, reason=<error reason>
  sign_out / credential_revoked   result=approved|denied

Byte blobs (credential ids, user ids) are logged as base64url; request
metadata is truncated.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .challenge import b64url_encode

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
LOG_NAME = "ceremony_audit.jsonl"
STATE_NAME = "ceremony_audit.state"
LOCK_NAME = "ceremony_audit.lock"


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def _chain(prev_hash: str, event: Dict[str, Any]) -> str:
    return _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(event))


class AuditLog:
    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return self.directory / LOG_NAME

    @property
    def state_path(self) -> Path:
        return self.directory / STATE_NAME

    def _read_last_hash_unlocked(self) -> str:
        """Caller must hold the lock. A missing or corrupt state restarts at genesis."""
        try:
            s = self.state_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return GENESIS_HASH
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event and return its chain hash (None when disabled).

        Callers cannot inject chain fields; they are stripped first.
        """
        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)

        # a dedicated lock file works even before log/state exist
        with open(self.directory / LOCK_NAME, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)
                next_hash = _chain(prev_hash, e)

                stored = dict(e, prev_hash=prev_hash, hash=next_hash)
                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def verify_chain(self) -> bool:
        return verify_log_chain(self.log_path)


def build_common(
    *,
    event: str,
    result: str,
    reason: Optional[str] = None,
    username: Optional[str] = None,
    user_id: Optional[bytes] = None,
    credential_id: Optional[bytes] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the common audit fields. Keep this boring and stable."""
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "event": event,
        "result": result,
    }
    if reason:
        out["reason"] = reason
    if username:
        out["username"] = username[:200]
    if user_id is not None:
        out["user_id"] = b64url_encode(user_id)
    if credential_id is not None:
        out["credential_id"] = b64url_encode(credential_id)
        out["credential_sha3_256"] = _sha3_256_hex(credential_id)
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]
    return out


def verify_log_chain(path: Path) -> bool:
    """
    Re-walk an audit log from genesis.

    True for a missing/empty log; False on the first broken link or an
    unreadable line.
    """
    path = Path(path)
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for lineno, raw_line in enumerate(f, start=1):
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                logger.warning("Audit log %s:%d is not valid JSON", path, lineno)
                return False

            if not isinstance(obj, dict):
                logger.warning("Audit log %s:%d is not a JSON object", path, lineno)
                return False

            if obj.get("prev_hash") != prev:
                return False

            line_hash = obj.pop("hash", None)
            obj.pop("prev_hash", None)
            if _chain(prev, obj) != line_hash:
                logger.warning("Audit log %s:%d hash mismatch", path, lineno)
                return False
            prev = line_hash

    return True


# Process-wide audit log, built on first use.
_audit_log = None


def get_audit_log() -> AuditLog:
    global _audit_log
    if _audit_log is not None:
        return _audit_log

    from .config import settings

    _audit_log = AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)
    return _audit_log
