import json
from pathlib import Path
from typing import Annotated
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

from .secret import load_secret_key


def _normalize_origin(v: str) -> str:
    """
    An origin must be an absolute http(s) origin.

    Normalization:
      - strip whitespace and trailing slash
      - require http/https and a hostname
      - lowercase hostname, keep an explicit port
      - drop userinfo/path/query/fragment
    """
    v = (v or "").strip().rstrip("/")
    p = urlparse(v)

    if p.scheme not in ("http", "https"):
        raise ValueError(f"origin {v!r} must start with http:// or https://")

    if not p.hostname:
        raise ValueError(f"origin {v!r} must include a hostname")

    netloc = p.hostname.lower()
    if p.port:
        netloc = f"{netloc}:{p.port}"

    return urlunparse((p.scheme, netloc, "", "", "", ""))


class Settings(BaseSettings):
    # relying party
    RP_ID: str = "localhost"
    RP_NAME: str = "example-app"
    ORIGINS: Annotated[list[str], NoDecode] = ["http://localhost:8787"]

    # enforce origin↔rp_id relationship at config load time
    STRICT_RP_BINDING: bool = True

    # base64url symmetric secret; derives user ids, CSRF tokens and challenge MACs
    SECRET: str

    # key-value store
    STORE_BACKEND: str = "memory"
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    DATA_TTL_SECONDS: int = 86400

    # ceremony windows
    CHALLENGE_TTL_SECONDS: int = 60
    CEREMONY_TIMEOUT_MS: int = 120_000

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path(__file__).resolve().parent.parent / "audit"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        v = (v or "").strip()

        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if not v:
            raise ValueError("RP_ID cannot be empty")

        if "/" in v or ":" in v:
            # ":" would indicate a port; WebAuthn rpId must not include it
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("ORIGINS", mode="before")
    @classmethod
    def normalize_origins(cls, v):
        # accept a JSON array or ORIGINS="https://a.example,https://b.example"
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                v = json.loads(s)
            else:
                v = [p for p in s.split(",") if p.strip()]
        if not v:
            raise ValueError("ORIGINS cannot be empty")
        return [_normalize_origin(str(o)) for o in v]

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "example-app"

    @field_validator("SECRET")
    @classmethod
    def check_secret(cls, v: str) -> str:
        # Same decoder as secret.py; a bad secret is fatal at startup.
        v = (v or "").strip()
        load_secret_key(v)
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def check_store_backend(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError("STORE_BACKEND must be 'memory' or 'redis'")
        return v

    @property
    def secure_cookies(self) -> bool:
        # browsers refuse Secure cookies on plain-http localhost
        return self.RP_ID != "localhost"


settings = Settings()

# -----------------------------------------------------------------------------
# Cross-field validation (Origin ↔ RP binding)
# -----------------------------------------------------------------------------
# WebAuthn expectation: every origin host must equal rp_id or be a subdomain.
if settings.STRICT_RP_BINDING:
    for _origin in settings.ORIGINS:
        _host = urlparse(_origin).hostname or ""
        if not (_host == settings.RP_ID or _host.endswith("." + settings.RP_ID)):
            # Fail fast at import time to prevent issuing unverifiable ceremonies
            raise ValueError(
                f"origin host '{_host}' does not match RP_ID '{settings.RP_ID}'. "
                f"Set RP_ID to the origin hostname or a parent domain of it."
            )
