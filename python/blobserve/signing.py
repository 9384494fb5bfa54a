"""
Capability tokens ("presigned URLs").

A token is base64url(HMAC-SHA256(secret, payload) || payload), where payload
is the canonical JSON form of a SignedURL. Tokens are stateless: the server
keeps no record of issued tokens and there is no revocation. Anyone holding
a token can use it until it expires.

Decoding only checks integrity. Freshness is the caller's job, through
SignedURL.is_expired().
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .errors import TokenVerificationError


MAC_SIZE = hashlib.sha256().digest_size  # 32
URL_PREFIX = "/pre-signed/"

_TOKEN_RE = re.compile(rb"^[A-Za-z0-9_-]*={0,2}$")


class Permission(str, Enum):
    """Operation a token grants. A token without a permission grants both."""
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class SignedURL:
    """
    The claims carried by a capability token.

    Attributes:
        path: Object path, relative to the storage root
        expiry: Absolute expiry time (timezone-aware, UTC)
        permission: READ, WRITE, or None for both
    """
    path: str
    expiry: datetime
    permission: Optional[Permission] = None

    def __post_init__(self):
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "expiry", expiry.astimezone(timezone.utc))
        if self.permission is not None and not isinstance(self.permission, Permission):
            object.__setattr__(self, "permission", Permission(self.permission))

    @classmethod
    def create(
        cls,
        path: str,
        expires_in: timedelta,
        permission: Optional[Permission] = None,
        now: Optional[datetime] = None,
    ) -> "SignedURL":
        """Build claims expiring `expires_in` from now."""
        now = now or datetime.now(timezone.utc)
        return cls(path=path, expiry=now + expires_in, permission=permission)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """
        True unless expiry is strictly after `now`.

        No allowance is made for clock skew between the issuing and the
        verifying host.
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return not self.expiry > now

    def allows(self, permission: Permission) -> bool:
        return self.permission is None or self.permission == permission

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "expiry": self.expiry.isoformat(),
            "permission": self.permission.value if self.permission else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SignedURL":
        return cls(
            path=data["path"],
            expiry=datetime.fromisoformat(data["expiry"]),
            permission=data.get("permission"),
        )

    def to_payload(self) -> bytes:
        """Canonical byte form that gets signed."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


def _mac(secret: bytes, payload: bytes) -> bytes:
    return hmac.new(secret, payload, hashlib.sha256).digest()


def sign(secret: bytes, payload: bytes) -> str:
    """Prefix payload with its MAC and base64url-encode the result."""
    return base64.urlsafe_b64encode(_mac(secret, payload) + payload).decode("ascii")


def verify(secret: bytes, token: Union[str, bytes]) -> bytes:
    """
    Check a token's signature and return the signed payload.

    Raises:
        TokenVerificationError: malformed encoding, short or degenerate
            payload, or signature mismatch
    """
    if isinstance(token, str):
        try:
            token = token.encode("ascii")
        except UnicodeEncodeError as e:
            raise TokenVerificationError("invalid signature") from e

    if not _TOKEN_RE.match(token):
        raise TokenVerificationError("invalid signature")

    # Tolerate tokens whose "=" padding was stripped in transit
    token = token + b"=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(token)
    except (binascii.Error, ValueError) as e:
        raise TokenVerificationError("invalid signature") from e

    if len(raw) < MAC_SIZE:
        raise TokenVerificationError("invalid signature")

    signature = raw[:MAC_SIZE]
    payload = raw[MAC_SIZE:].rstrip(b"\x00")
    if len(payload) <= 1:
        raise TokenVerificationError("invalid signature")

    if not hmac.compare_digest(signature, _mac(secret, payload)):
        raise TokenVerificationError("invalid signature")
    return payload


def encode_token(secret: bytes, signed_url: SignedURL) -> str:
    """Sign claims into a token."""
    return sign(secret, signed_url.to_payload())


def decode_token(secret: bytes, token: Union[str, bytes]) -> SignedURL:
    """
    Verify a token and return its claims.

    Expired tokens decode successfully; check SignedURL.is_expired().

    Raises:
        TokenVerificationError: if the token is malformed or forged
    """
    payload = verify(secret, token)
    try:
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, dict) or not isinstance(data.get("path"), str):
            raise ValueError("payload is not a signed URL")
        return SignedURL.from_dict(data)
    except (ValueError, KeyError, TypeError) as e:
        raise TokenVerificationError("invalid signature") from e


def to_url(secret: bytes, signed_url: SignedURL, prefix: str = URL_PREFIX) -> str:
    """Route prefix plus token, as handed back to clients."""
    return prefix + encode_token(secret, signed_url)


def generate_id() -> str:
    """Random object id (UUID4, canonical hex form)."""
    return str(uuid.uuid4())


def generate_secret(size: int = 32) -> bytes:
    return os.urandom(size)


def load_secret(path: Union[str, Path]) -> bytes:
    """Read a signing secret from a file, dropping one trailing newline."""
    data = Path(path).read_bytes()
    if data.endswith(b"\r\n"):
        data = data[:-2]
    elif data.endswith(b"\n"):
        data = data[:-1]
    return data


_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
# Seconds per unit
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


def parse_duration(text: Union[str, int, float]) -> timedelta:
    """
    Parse a token lifetime.

    Accepts a number of seconds, or a duration string such as "300ms",
    "10s", "1h30m" or "2.5h".

    Raises:
        ValueError: unparseable or non-positive duration
    """
    if isinstance(text, bool):
        raise ValueError(f"invalid duration: {text!r}")
    if isinstance(text, (int, float)):
        result = _seconds(text, text)
    else:
        s = text.strip()
        try:
            seconds = float(s)
        except ValueError:
            result = _parse_duration_string(s)
        else:
            result = _seconds(seconds, text)
    if result <= timedelta(0):
        raise ValueError(f"duration must be positive: {text!r}")
    return result


def _seconds(value: float, original) -> timedelta:
    try:
        return timedelta(seconds=value)
    except (OverflowError, ValueError) as e:
        raise ValueError(f"invalid duration: {original!r}") from e


def _parse_duration_string(s: str) -> timedelta:
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(s):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(s):
        raise ValueError(f"invalid duration: {s!r}")
    return _seconds(total, s)
