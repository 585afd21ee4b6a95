"""
Outbound authentication - one handler per auth variant.

OAuth2 client_credentials tokens are cached in Redis per rule and refreshed
5 minutes before expiry; the cache entry is dropped when the target answers
401/403 so the next attempt fetches a fresh token.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Optional
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

import httpx

from eventrelay.schemas.rules import (
    ApiKeyAuth,
    BasicAuth,
    BearerAuth,
    CustomHeadersAuth,
    NoAuth,
    OAuth1Auth,
    OAuth2Auth,
)
from eventrelay.utils.encryption import decrypt_value

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 3600

# Header names never written to attempt logs in clear text
ALWAYS_REDACTED = {"authorization", "proxy-authorization", "cookie", "x-api-key"}


class AuthError(Exception):
    """Credentials could not be applied. retryable=False means FAILED (AUTH)."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def _secret(value: str) -> str:
    try:
        return decrypt_value(value) or ""
    except ValueError as e:
        raise AuthError(str(e)) from e


def _token_cache_key(rule_id) -> str:
    return f"eventrelay:oauth:{rule_id}"


# ---------------------------------------------------------------------------
# OAuth 1.0a (HMAC signature)
# ---------------------------------------------------------------------------


def _pct(value) -> str:
    return quote(str(value), safe="~-._")


def oauth1_header(
    auth: OAuth1Auth,
    method: str,
    url: str,
    extra_params: Optional[dict] = None,
    nonce: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> str:
    """Authorization header value for a request signed per RFC 5849."""
    parts = urlsplit(url)
    base_url = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", "", ""))

    oauth_params = {
        "oauth_consumer_key": auth.consumer_key,
        "oauth_nonce": nonce or secrets.token_hex(16),
        "oauth_signature_method": auth.signature_method,
        "oauth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "oauth_version": "1.0",
    }
    if auth.token:
        oauth_params["oauth_token"] = auth.token

    all_params = list(parse_qsl(parts.query, keep_blank_values=True))
    all_params.extend((extra_params or {}).items())
    all_params.extend(oauth_params.items())
    normalized = "&".join(
        f"{k}={v}" for k, v in sorted((_pct(k), _pct(v)) for k, v in all_params)
    )
    base_string = "&".join([method.upper(), _pct(base_url), _pct(normalized)])

    key = f"{_pct(_secret(auth.consumer_secret))}&{_pct(_secret(auth.token_secret))}"
    digest = hashlib.sha256 if auth.signature_method == "HMAC-SHA256" else hashlib.sha1
    signature = base64.b64encode(hmac.new(key.encode(), base_string.encode(), digest).digest()).decode()
    oauth_params["oauth_signature"] = signature

    fields = []
    if auth.realm:
        fields.append(f'realm="{_pct(auth.realm)}"')
    fields.extend(f'{_pct(k)}="{_pct(v)}"' for k, v in sorted(oauth_params.items()))
    return "OAuth " + ", ".join(fields)


# ---------------------------------------------------------------------------
# OAuth 2.0 client credentials
# ---------------------------------------------------------------------------


async def _cached_token(rule_id) -> Optional[str]:
    try:
        from eventrelay.utils.dedup import get_redis
        redis = await get_redis()
        raw = await redis.get(_token_cache_key(rule_id))
    except Exception as e:
        logger.warning("OAuth token cache read failed: %s", str(e))
        return None
    if not raw:
        return None
    try:
        cached = json.loads(raw)
    except ValueError:
        return None
    if cached.get("expires_at", 0) - TOKEN_REFRESH_MARGIN_SECONDS <= time.time():
        return None
    return cached.get("access_token")


async def _store_token(rule_id, token: str, expires_in: int) -> None:
    try:
        from eventrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            _token_cache_key(rule_id),
            json.dumps({"access_token": token, "expires_at": time.time() + expires_in}),
            ex=max(expires_in, 1),
        )
    except Exception as e:
        logger.warning("OAuth token cache write failed: %s", str(e))


async def clear_cached_token(rule_id) -> None:
    try:
        from eventrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.delete(_token_cache_key(rule_id))
        logger.info("Cleared cached OAuth token for rule %s", str(rule_id)[:8])
    except Exception as e:
        logger.warning("OAuth token cache clear failed: %s", str(e))


async def get_oauth2_token(rule_id, auth: OAuth2Auth, client: httpx.AsyncClient) -> str:
    """Cached access token, fetching a new one when missing or near expiry."""
    token = await _cached_token(rule_id)
    if token:
        return token

    client_secret = _secret(auth.client_secret)
    data = {"grant_type": "client_credentials"}
    if auth.scope:
        data["scope"] = auth.scope
    if auth.audience:
        data["audience"] = auth.audience
    headers = {"Accept": "application/json"}
    if auth.credentials_in == "header":
        raw = f"{auth.client_id}:{client_secret}".encode()
        headers["Authorization"] = "Basic " + base64.b64encode(raw).decode()
    else:
        data["client_id"] = auth.client_id
        data["client_secret"] = client_secret

    try:
        response = await client.post(auth.token_url, data=data, headers=headers)
    except httpx.HTTPError as e:
        raise AuthError(f"OAuth2 token request failed: {type(e).__name__}: {e}", retryable=True) from e

    if response.status_code >= 500 or response.status_code == 429:
        raise AuthError(f"OAuth2 token endpoint returned {response.status_code}", retryable=True)
    if response.status_code >= 400:
        raise AuthError(f"OAuth2 token endpoint rejected credentials ({response.status_code})")

    try:
        body = response.json()
    except ValueError as e:
        raise AuthError("OAuth2 token endpoint returned non-JSON response") from e
    token = body.get("access_token") if isinstance(body, dict) else None
    if not token:
        raise AuthError("OAuth2 token response has no access_token")

    try:
        expires_in = int(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
    except (TypeError, ValueError):
        expires_in = DEFAULT_TOKEN_TTL_SECONDS
    await _store_token(rule_id, token, expires_in)
    logger.info("Fetched OAuth2 token for rule %s (expires_in=%d)", str(rule_id)[:8], expires_in)
    return token


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def build_auth(
    rule_id,
    auth,
    method: str,
    url: str,
    client: httpx.AsyncClient,
    form_params: Optional[dict] = None,
) -> tuple[dict, dict]:
    """
    Credentials for one request.
    Returns (headers, query_params) to merge into the outbound request.
    """
    if isinstance(auth, NoAuth):
        return {}, {}
    if isinstance(auth, ApiKeyAuth):
        key = _secret(auth.api_key)
        if auth.location == "query":
            return {}, {auth.query_param: key}
        return {auth.header_name: key}, {}
    if isinstance(auth, BasicAuth):
        raw = f"{auth.username}:{_secret(auth.password)}".encode()
        return {"Authorization": "Basic " + base64.b64encode(raw).decode()}, {}
    if isinstance(auth, BearerAuth):
        return {"Authorization": f"Bearer {_secret(auth.token)}"}, {}
    if isinstance(auth, OAuth1Auth):
        return {"Authorization": oauth1_header(auth, method, url, form_params)}, {}
    if isinstance(auth, OAuth2Auth):
        token = await get_oauth2_token(rule_id, auth, client)
        return {"Authorization": f"Bearer {token}"}, {}
    if isinstance(auth, CustomHeadersAuth):
        return {name: _secret(value) for name, value in auth.headers.items()}, {}
    raise AuthError(f"Unsupported auth type: {type(auth).__name__}")


def redact_headers(headers: dict, auth=None) -> dict:
    """Copy of headers safe to store on the attempt log."""
    sensitive = set(ALWAYS_REDACTED)
    if isinstance(auth, ApiKeyAuth):
        sensitive.add(auth.header_name.lower())
    elif isinstance(auth, CustomHeadersAuth):
        sensitive.update(name.lower() for name in auth.headers)
    return {k: ("[REDACTED]" if k.lower() in sensitive else v) for k, v in headers.items()}
