"""
Outbound delivery signing - HMAC-SHA256 over "message_id.timestamp.body".

Headers produced:
- webhook-id:        unique message id (the attempt log id)
- webhook-timestamp: unix seconds
- webhook-signature: "v1,<base64 digest>" per active secret, space separated

Several secrets may be valid at once (primary + grace-period secrets during
rotation); receivers accept the message if any listed signature matches.
"""
import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Optional, Union

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300

HEADER_ID = "webhook-id"
HEADER_TIMESTAMP = "webhook-timestamp"
HEADER_SIGNATURE = "webhook-signature"


def generate_secret() -> str:
    """New signing secret: prefix + base64 of 32 random bytes."""
    return SECRET_PREFIX + base64.b64encode(secrets.token_bytes(32)).decode()


def _secret_key(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(SECRET_PREFIX):], validate=True)
        except (ValueError, TypeError):
            logger.warning("Signing secret has prefix but invalid base64 - using raw bytes")
    return secret.encode()


def _as_bytes(body: Union[str, bytes]) -> bytes:
    return body if isinstance(body, bytes) else body.encode()


def compute_signature(secret: str, message_id: str, timestamp: int, body: Union[str, bytes]) -> str:
    """Single "v1,<b64>" signature for one secret."""
    signed = f"{message_id}.{timestamp}.".encode() + _as_bytes(body)
    digest = hmac.new(_secret_key(secret), signed, hashlib.sha256).digest()
    return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode()}"


def sign_headers(
    secrets_list: list[str],
    message_id: str,
    body: Union[str, bytes],
    timestamp: Optional[int] = None,
) -> dict[str, str]:
    """Build the three signing headers for every configured secret."""
    active = [s for s in secrets_list if s]
    if not active:
        return {}
    ts = int(timestamp if timestamp is not None else time.time())
    signature = " ".join(compute_signature(s, message_id, ts, body) for s in active)
    return {
        HEADER_ID: message_id,
        HEADER_TIMESTAMP: str(ts),
        HEADER_SIGNATURE: signature,
    }


def verify_signature(
    secret: str,
    headers: dict,
    body: Union[str, bytes],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Receiver-side check. Rejects messages outside the tolerance window and
    compares every listed v1 signature in constant time.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    message_id = lowered.get(HEADER_ID)
    timestamp = lowered.get(HEADER_TIMESTAMP)
    signature_header = lowered.get(HEADER_SIGNATURE)
    if not message_id or not timestamp or not signature_header:
        logger.warning("Signature verification failed: missing headers")
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        return False

    current = now if now is not None else time.time()
    if abs(current - ts) > tolerance_seconds:
        logger.warning("Signature verification failed: timestamp outside tolerance")
        return False

    expected = compute_signature(secret, message_id, ts, body)
    for candidate in signature_header.split(" "):
        if candidate.startswith(SIGNATURE_VERSION + ",") and hmac.compare_digest(candidate, expected):
            return True
    return False
