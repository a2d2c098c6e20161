"""building_safety_shared.auth — Cognito ID-token authentication for building-safety Lambdas.

A request is authenticated by either:

* a Cognito *ID* token, taken from the ``building_safety_id_token`` cookie
  (Cookie header or the API Gateway v2 ``cookies`` array) or an
  ``Authorization: Bearer`` header, verified as RS256 against the user pool
  JWKS; or
* the internal service key in ``X-Building-Safety-Internal-Key``, for
  automation and smoke tests.

Requires environment variables:
    COGNITO_USER_POOL_ID: e.g. us-west-2_AbCdEf123
    COGNITO_CLIENT_ID: app client id of the web frontend

Optional:
    BUILDING_SAFETY_INTERNAL_API_KEY: active internal key
    BUILDING_SAFETY_INTERNAL_API_KEY_PREVIOUS: rollover key accepted during rotation
    BUILDING_SAFETY_INTERNAL_API_KEYS: comma-separated allowlist
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import time
import urllib.request
from typing import Any, Callable, Dict, Iterator, Optional, Tuple
from urllib.parse import unquote

import jwt
from jwt.algorithms import RSAAlgorithm

from building_safety_shared.http_utils import _header

logger = logging.getLogger(__name__)

TOKEN_COOKIE_NAME = "building_safety_id_token"
INTERNAL_KEY_HEADER = "x-building-safety-internal-key"
INTERNAL_KEY_CLAIMS = {"auth_mode": "internal-key", "sub": "internal-key"}


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Split comma-separated key sources into an ordered, de-duplicated tuple."""
    keys: Dict[str, None] = {}
    for raw in raw_values:
        for part in str(raw or "").split(","):
            if part.strip():
                keys.setdefault(part.strip())
    return tuple(keys)


COGNITO_USER_POOL_ID: str = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID: str = os.environ.get("COGNITO_CLIENT_ID", "")
INTERNAL_API_KEY: str = os.environ.get("BUILDING_SAFETY_INTERNAL_API_KEY", "")
INTERNAL_API_KEY_PREVIOUS: str = os.environ.get("BUILDING_SAFETY_INTERNAL_API_KEY_PREVIOUS", "")
INTERNAL_API_KEYS: tuple[str, ...] = _normalize_api_keys(
    os.environ.get("BUILDING_SAFETY_INTERNAL_API_KEYS", ""),
    INTERNAL_API_KEY,
    INTERNAL_API_KEY_PREVIOUS,
)

ErrorFn = Callable[[int, str], Dict[str, Any]]


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


class _JwksCache:
    """User pool signing keys by ``kid``, refreshed hourly or on an unknown kid."""

    ttl_seconds = 3600.0
    # Unknown kids trigger at most one refetch per interval.
    min_refresh_seconds = 60.0

    def __init__(self) -> None:
        self._keys: Dict[str, Any] = {}
        self._fetched_at = 0.0

    def _url(self) -> str:
        if not COGNITO_USER_POOL_ID:
            raise ValueError("COGNITO_USER_POOL_ID not set")
        region = COGNITO_USER_POOL_ID.split("_", 1)[0]
        return f"https://cognito-idp.{region}.amazonaws.com/{COGNITO_USER_POOL_ID}/.well-known/jwks.json"

    def _refresh(self) -> None:
        with urllib.request.urlopen(self._url(), timeout=5) as resp:
            data = json.loads(resp.read())
        self._keys = {
            jwk["kid"]: RSAAlgorithm.from_jwk(json.dumps(jwk))
            for jwk in data.get("keys", [])
            if jwk.get("kid")
        }
        self._fetched_at = time.time()
        logger.info("jwks refreshed: %d keys", len(self._keys))

    def get(self, kid: Optional[str]) -> Any:
        age = time.time() - self._fetched_at
        if not self._keys or age >= self.ttl_seconds:
            self._refresh()
        elif kid not in self._keys and age >= self.min_refresh_seconds:
            self._refresh()
        return self._keys.get(kid)


_jwks = _JwksCache()


def _get_jwks_key(kid: Optional[str]) -> Any:
    return _jwks.get(kid)


# ---------------------------------------------------------------------------
# Request credentials
# ---------------------------------------------------------------------------


def _cookie_pairs(event: Dict[str, Any]) -> Iterator[str]:
    for part in _header(event, "cookie").split(";"):
        if part.strip():
            yield part.strip()
    # HTTP API payload v2 moves cookies out of the headers.
    cookies = event.get("cookies") or []
    if isinstance(cookies, str):
        cookies = [cookies]
    for part in cookies:
        if isinstance(part, str) and part.strip():
            yield part.strip()


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """ID token from the auth cookie, else from a bearer Authorization header."""
    prefix = f"{TOKEN_COOKIE_NAME}="
    for pair in _cookie_pairs(event):
        if pair.startswith(prefix):
            return unquote(pair[len(prefix):]) or None

    scheme, _, credentials = _header(event, "authorization").strip().partition(" ")
    if scheme.lower() == "bearer":
        return credentials.strip() or None
    return None


def _internal_key_matches(candidate: str) -> bool:
    if not candidate:
        return False
    return any(hmac.compare_digest(candidate, key) for key in INTERNAL_API_KEYS)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def _verify_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito ID token and return its claims. Raises ValueError."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc
    if header.get("alg", "RS256") != "RS256":
        raise ValueError(f"Unexpected token algorithm: {header.get('alg')}")

    key = _get_jwks_key(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Token has expired. Please sign in again.") from exc
    except jwt.InvalidAudienceError as exc:
        raise ValueError("Token audience mismatch.") from exc
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc

    # Access tokens carry no email/role claims; only ID tokens are accepted.
    if claims.get("token_use", "id") != "id":
        raise ValueError("An ID token is required.")
    return claims


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn: Optional[ErrorFn] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Return ``(claims, None)`` on success or ``(None, error_response)``.

    ``error_fn(status_code, message)`` builds the error response; defaults to
    a bare JSON response without CORS headers.
    """
    error_fn = error_fn or _default_error

    if _internal_key_matches(_header(event, INTERNAL_KEY_HEADER)):
        return dict(INTERNAL_KEY_CLAIMS), None

    token = _extract_token(event)
    if not token:
        return None, error_fn(401, "Authentication required. Please sign in.")

    try:
        return _verify_token(token), None
    except ValueError as exc:
        logger.warning("auth failed: %s", exc)
        return None, error_fn(401, str(exc))


def _default_error(status_code: int, message: str) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"success": False, "error": message}),
    }
