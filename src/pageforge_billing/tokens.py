"""Access-token issuers.

The HMAC issuer is the default. The Ed25519 issuer produces tokens that can be
checked with the public key alone. The legacy issuer reproduces the old
unsigned `base64("email:millis")` encoding: anyone can forge such a token for
any email, so it is never a security boundary and must be chosen explicitly.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .config import env_int, env_text
from .errors import ConfigurationError


logger = logging.getLogger(__name__)

TOKEN_VERSION = 1
HMAC_PREFIX = "PFACC"
ED25519_PREFIX = "PFENT"
DEFAULT_TTL_DAYS = 30
DEV_TOKEN_SECRET = "pageforge-dev-token-secret"

SCHEME_HMAC = "hmac"
SCHEME_ED25519 = "ed25519"
SCHEME_LEGACY = "legacy"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _from_iso(value: str) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    for candidate in (raw, raw.replace("Z", "+00:00")):
        try:
            return datetime.fromisoformat(candidate)
        except ValueError:
            continue
    return None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode((raw + padding).encode("ascii"))


def _clean_email(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


class TokenIssuer:
    scheme = ""
    secure = True

    def issue(self, email: str, *, plan: str = "", now: datetime | None = None) -> str:
        raise NotImplementedError

    def verify(self, token: str, *, now: datetime | None = None) -> dict[str, Any]:
        raise NotImplementedError


class _SignedTokenIssuer(TokenIssuer):
    """Shared `PREFIX.payload.signature` framing with an expiry claim."""

    prefix = ""

    def __init__(self, *, ttl_days: int = DEFAULT_TTL_DAYS):
        self.ttl_days = max(1, int(ttl_days))

    def _sign(self, payload_b64: str) -> bytes:
        raise NotImplementedError

    def _signature_ok(self, payload_b64: str, signature: bytes) -> bool:
        raise NotImplementedError

    def issue(self, email: str, *, plan: str = "", now: datetime | None = None) -> str:
        issued = (now or _now()).astimezone(timezone.utc)
        payload = {
            "v": TOKEN_VERSION,
            "email": _clean_email(email),
            "plan": str(plan or "").strip(),
            "issued_at": _iso(issued),
            "expires_at": _iso(issued + timedelta(days=self.ttl_days)),
        }
        payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return f"{self.prefix}.{payload_b64}.{_b64url_encode(self._sign(payload_b64))}"

    def verify(self, token: str, *, now: datetime | None = None) -> dict[str, Any]:
        raw = str(token or "").strip()
        if not raw:
            return {"valid": False, "error": "missing_token"}
        parts = raw.split(".")
        if len(parts) != 3:
            return {"valid": False, "error": "invalid_format"}
        if parts[0] != self.prefix:
            return {"valid": False, "error": "invalid_prefix"}

        payload_b64, signature_b64 = parts[1], parts[2]
        try:
            signature = _b64url_decode(signature_b64)
        except (binascii.Error, ValueError):
            return {"valid": False, "error": "invalid_signature_encoding"}
        if not self._signature_ok(payload_b64, signature):
            return {"valid": False, "error": "signature_mismatch"}

        try:
            payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
        except (binascii.Error, ValueError):
            return {"valid": False, "error": "invalid_payload"}
        if not isinstance(payload, dict) or payload.get("v") != TOKEN_VERSION:
            return {"valid": False, "error": "invalid_payload"}

        email = _clean_email(payload.get("email"))
        if not email:
            return {"valid": False, "error": "missing_email"}
        expires_at = _from_iso(str(payload.get("expires_at", "")))
        if expires_at is None:
            return {"valid": False, "error": "missing_expiry"}
        if expires_at.astimezone(timezone.utc) <= (now or _now()).astimezone(timezone.utc):
            return {"valid": False, "error": "expired", "email": email}
        return {
            "valid": True,
            "email": email,
            "plan": str(payload.get("plan", "")),
            "issued_at": str(payload.get("issued_at", "")),
            "expires_at": str(payload.get("expires_at", "")),
        }


class HmacTokenIssuer(_SignedTokenIssuer):
    scheme = SCHEME_HMAC
    prefix = HMAC_PREFIX

    def __init__(self, secret: str, *, ttl_days: int = DEFAULT_TTL_DAYS):
        super().__init__(ttl_days=ttl_days)
        if not str(secret or "").strip():
            raise ConfigurationError("token_secret_missing")
        self._key = str(secret).encode("utf-8")

    def _sign(self, payload_b64: str) -> bytes:
        return hmac.new(self._key, payload_b64.encode("utf-8"), hashlib.sha256).digest()

    def _signature_ok(self, payload_b64: str, signature: bytes) -> bool:
        return hmac.compare_digest(self._sign(payload_b64), signature)


class Ed25519TokenIssuer(_SignedTokenIssuer):
    scheme = SCHEME_ED25519
    prefix = ED25519_PREFIX

    def __init__(
        self,
        *,
        private_key: Ed25519PrivateKey | None = None,
        public_key: Ed25519PublicKey | None = None,
        ttl_days: int = DEFAULT_TTL_DAYS,
    ):
        super().__init__(ttl_days=ttl_days)
        if public_key is None and private_key is not None:
            public_key = private_key.public_key()
        if public_key is None:
            raise ConfigurationError("token_public_key_missing")
        self._private_key = private_key
        self._public_key = public_key

    def _sign(self, payload_b64: str) -> bytes:
        if self._private_key is None:
            raise ConfigurationError("token_private_key_missing")
        return self._private_key.sign(payload_b64.encode("utf-8"))

    def _signature_ok(self, payload_b64: str, signature: bytes) -> bool:
        try:
            self._public_key.verify(signature, payload_b64.encode("utf-8"))
        except InvalidSignature:
            return False
        return True


class LegacyTokenIssuer(TokenIssuer):
    """Unsigned `base64("email:millis")` tokens. Forgeable; compatibility only."""

    scheme = SCHEME_LEGACY
    secure = False

    def issue(self, email: str, *, plan: str = "", now: datetime | None = None) -> str:
        millis = int((now.timestamp() if now is not None else time.time()) * 1000)
        return base64.b64encode(f"{_clean_email(email)}:{millis}".encode("utf-8")).decode("ascii")

    def verify(self, token: str, *, now: datetime | None = None) -> dict[str, Any]:
        raw = str(token or "").strip()
        if not raw:
            return {"valid": False, "error": "missing_token"}
        try:
            decoded = base64.b64decode(raw).decode("utf-8")
        except (binascii.Error, ValueError):
            return {"valid": False, "error": "invalid_encoding"}
        email = _clean_email(decoded.split(":", 1)[0])
        if not email:
            return {"valid": False, "error": "missing_email"}
        return {"valid": True, "email": email}


def _parse_env_key_text(raw: str) -> str:
    text = str(raw or "").strip()
    if "-----BEGIN" in text and "\\n" in text:
        text = text.replace("\\n", "\n")
    return text


def load_ed25519_private_key(raw: str) -> Ed25519PrivateKey | None:
    text = _parse_env_key_text(raw)
    if not text:
        return None
    if "-----BEGIN" in text:
        try:
            key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
        except ValueError:
            return None
        return key if isinstance(key, Ed25519PrivateKey) else None
    try:
        key_bytes = _b64url_decode(text)
    except (binascii.Error, ValueError):
        return None
    if len(key_bytes) != 32:
        return None
    return Ed25519PrivateKey.from_private_bytes(key_bytes)


def load_ed25519_public_key(raw: str) -> Ed25519PublicKey | None:
    text = _parse_env_key_text(raw)
    if not text:
        return None
    if "-----BEGIN" in text:
        try:
            key = serialization.load_pem_public_key(text.encode("utf-8"))
        except ValueError:
            return None
        return key if isinstance(key, Ed25519PublicKey) else None
    try:
        key_bytes = _b64url_decode(text)
    except (binascii.Error, ValueError):
        return None
    if len(key_bytes) != 32:
        return None
    return Ed25519PublicKey.from_public_bytes(key_bytes)


def token_issuer_from_env() -> TokenIssuer:
    scheme = env_text("PAGEFORGE_TOKEN_SCHEME", SCHEME_HMAC).lower()
    ttl_days = env_int("PAGEFORGE_TOKEN_TTL_DAYS", DEFAULT_TTL_DAYS, minimum=1)

    if scheme == SCHEME_HMAC:
        secret = env_text("PAGEFORGE_TOKEN_SECRET")
        if not secret:
            logger.warning("PAGEFORGE_TOKEN_SECRET is not set; signing access tokens with the development secret")
            secret = DEV_TOKEN_SECRET
        return HmacTokenIssuer(secret, ttl_days=ttl_days)
    if scheme == SCHEME_ED25519:
        return Ed25519TokenIssuer(
            private_key=load_ed25519_private_key(env_text("PAGEFORGE_TOKEN_PRIVATE_KEY")),
            public_key=load_ed25519_public_key(env_text("PAGEFORGE_TOKEN_PUBLIC_KEY")),
            ttl_days=ttl_days,
        )
    if scheme == SCHEME_LEGACY:
        logger.warning("Using legacy unsigned access tokens; any client can forge access for any email")
        return LegacyTokenIssuer()
    raise ConfigurationError(f"unsupported_token_scheme:{scheme}")
