import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from state.licenses import LicenseStore, is_valid_key_format
from state.models import License, LicenseStatus, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = timedelta(minutes=5)


class AuthReason(str, Enum):
    MISSING_IDENTITY = "MISSING_IDENTITY"
    INVALID_IDENTITY_FORMAT = "INVALID_IDENTITY_FORMAT"
    MISSING_TIMESTAMP = "MISSING_TIMESTAMP"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    IDENTITY_NOT_FOUND = "IDENTITY_NOT_FOUND"
    IDENTITY_REVOKED = "IDENTITY_REVOKED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class Accepted:
    identity: str
    license: Optional[License] = None  # None when the store was unreachable
    degraded: bool = False

    accepted = True


@dataclass(frozen=True)
class Rejected:
    reason: AuthReason

    accepted = False


AuthResult = Union[Accepted, Rejected]


def _as_bytes(body: Union[str, bytes, None]) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


def compute_signature(secret: str, timestamp: str, raw_body: Union[str, bytes, None]) -> str:
    """Hex HMAC-SHA256 over ``"<timestamp>:<body>"``.

    The body is signed as received; it is never decoded.
    """
    message = timestamp.encode("utf-8") + b":" + _as_bytes(raw_body)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, supplied: str) -> bool:
    # compare_digest is constant-time for equal-length inputs
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def parse_timestamp(value: str) -> Optional[datetime]:
    """Accept ISO-8601 (``Z`` suffix allowed) or epoch milliseconds."""
    value = value.strip()
    if value.isdigit():
        try:
            return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def key_hash(identity: Optional[str]) -> Optional[str]:
    """Short SHA-256 prefix used in logs instead of the raw key."""
    if not identity:
        return None
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:8]


class Authenticator:
    """Validates identity, freshness and optional signature of inbound requests.

    Checks run in order and stop at the first failure. A store outage during
    the existence check fails open. Activation status other than ``revoked``
    is left to the caller.
    """

    def __init__(
        self,
        licenses: LicenseStore,
        signing_secret: Optional[str] = None,
        tolerance: timedelta = DEFAULT_TOLERANCE,
    ) -> None:
        self._licenses = licenses
        self._secret = signing_secret or None
        self._tolerance = tolerance

    async def authenticate(
        self,
        identity: Optional[str],
        timestamp: Optional[str],
        signature: Optional[str] = None,
        raw_body: Union[str, bytes, None] = None,
        now: Optional[datetime] = None,
    ) -> AuthResult:
        if not identity:
            return Rejected(AuthReason.MISSING_IDENTITY)
        if not is_valid_key_format(identity):
            return Rejected(AuthReason.INVALID_IDENTITY_FORMAT)

        if not timestamp:
            return Rejected(AuthReason.MISSING_TIMESTAMP)
        sent_at = parse_timestamp(timestamp)
        if sent_at is None or abs((now or utcnow()) - sent_at) > self._tolerance:
            return Rejected(AuthReason.REQUEST_EXPIRED)

        license: Optional[License] = None
        degraded = False
        try:
            license = await self._licenses.get(identity)
        except Exception as e:
            logger.warning("License lookup failed; accepting request: %s", e)
            degraded = True
        else:
            if license is None:
                return Rejected(AuthReason.IDENTITY_NOT_FOUND)
            if license.status == LicenseStatus.REVOKED:
                return Rejected(AuthReason.IDENTITY_REVOKED)

        if signature and self._secret:
            expected = compute_signature(self._secret, timestamp, raw_body)
            if not signatures_match(expected, signature):
                return Rejected(AuthReason.INVALID_SIGNATURE)

        return Accepted(identity=identity, license=license, degraded=degraded)


_STATE_PURPOSE = "notion-oauth"


def sign_state(identity: str, secret: str) -> str:
    """OAuth ``state`` value binding the callback to the identity that started it."""
    mac = hmac.new(secret.encode("utf-8"), f"{_STATE_PURPOSE}:{identity}".encode("utf-8"), hashlib.sha256)
    return f"{identity}.{mac.hexdigest()}"


def verify_state(state: Optional[str], secret: str) -> Optional[str]:
    if not state or "." not in state:
        return None
    identity, _, supplied = state.rpartition(".")
    if not is_valid_key_format(identity):
        return None
    expected = sign_state(identity, secret).rpartition(".")[2]
    if not signatures_match(expected, supplied):
        return None
    return identity
