import logging
import time
from dataclasses import dataclass
from typing import Optional

import jwt  # PyJWT
import requests
from fastapi import Depends, Header, HTTPException, status

from app.core import config

logger = logging.getLogger(__name__)

# Cache for JWKS (Public Keys)
JWKS_CACHE = None
JWKS_CACHE_TIMESTAMP = None
JWKS_CACHE_TTL = 3600  # Cache for 1 hour
JWKS_STALE_LIMIT = 86400  # Stale cache is still usable for a day if Supabase is unreachable
JWKS_MIN_REFRESH_INTERVAL = 60  # Forced refreshes (unknown kid) at most once a minute

ASYMMETRIC_ALGORITHMS = ("ES256", "RS256")


def _jwks_url(supabase_url: str) -> str:
    return f"{supabase_url.rstrip('/')}/auth/v1/.well-known/jwks.json"


def get_jwks(supabase_url: str, force_refresh: bool = False):
    """
    Fetch JWKS from Supabase with caching and retry logic.
    Only successful fetches are cached so failures get retried on the next request.
    """
    global JWKS_CACHE, JWKS_CACHE_TIMESTAMP

    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP:
        cache_age = time.time() - JWKS_CACHE_TIMESTAMP
        min_age = JWKS_MIN_REFRESH_INTERVAL if force_refresh else JWKS_CACHE_TTL
        if cache_age < min_age:
            return JWKS_CACHE

    max_retries = 3
    last_error = None

    for attempt in range(max_retries):
        try:
            r = requests.get(_jwks_url(supabase_url), timeout=10)
            r.raise_for_status()
            JWKS_CACHE = r.json()
            JWKS_CACHE_TIMESTAMP = time.time()
            logger.info("Fetched JWKS with %d keys", len(JWKS_CACHE.get("keys", [])))
            return JWKS_CACHE
        except requests.exceptions.RequestException as e:
            last_error = e
            logger.warning("JWKS fetch failed (attempt %d/%d): %s", attempt + 1, max_retries, e)
            if attempt < max_retries - 1:
                time.sleep(1)

    logger.error("Failed to fetch JWKS after %d attempts: %s", max_retries, last_error)

    # Fall back to a stale cache rather than locking every user out
    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP:
        cache_age = time.time() - JWKS_CACHE_TIMESTAMP
        if cache_age < JWKS_STALE_LIMIT:
            logger.warning("Using stale JWKS cache (age: %.0fs)", cache_age)
            return JWKS_CACHE
    return None


def _find_signing_key(jwks: dict, kid: Optional[str]):
    key_set = jwt.PyJWKSet.from_dict(jwks)
    return next((key for key in key_set.keys if kid is None or key.key_id == kid), None)


def _decode_asymmetric(token: str, algo: str) -> dict:
    supabase_url = config.SUPABASE_URL
    if not supabase_url:
        logger.error("SUPABASE_URL is missing for %s verification", algo)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: SUPABASE_URL not set"
        )

    jwks = get_jwks(supabase_url)
    if not jwks:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service temporarily unavailable. Please try again in a moment."
        )

    try:
        kid = jwt.get_unverified_header(token).get("kid")
        signing_key = _find_signing_key(jwks, kid)
        if signing_key is None:
            # Keys may have rotated since the cache was filled
            logger.info("No JWKS key for kid %s; refreshing", kid)
            refreshed = get_jwks(supabase_url, force_refresh=True)
            if refreshed:
                signing_key = _find_signing_key(refreshed, kid)
        if signing_key is None:
            raise jwt.InvalidTokenError(f"No signing key found for kid {kid}")
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=[algo],
            audience="authenticated",
        )
    except jwt.PyJWTError as e:
        logger.warning("%s verification failed: %s", algo, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token signature"
        )


def _decode_hs256(token: str) -> dict:
    secret = config.SUPABASE_JWT_SECRET
    if not secret:
        logger.error("SUPABASE_JWT_SECRET is missing")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: SUPABASE_JWT_SECRET not set"
        )

    try:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience="authenticated",
        )
    except jwt.PyJWTError as e:
        logger.warning("HS256 verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token signature"
        )


def verify_supabase_token(authorization: Optional[str] = Header(None)) -> dict:
    """
    Verifies the Supabase JWT token.
    Supports both HS256 (shared secret) and ES256/RS256 (JWKS public keys).
    Returns the verified payload.
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header"
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid header format. Expected 'Bearer <token>'"
        )

    token = authorization[len("Bearer "):].strip()

    # Frontends sometimes send the literal string of an unset variable
    if not token or token.lower() in ("null", "undefined", "none"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing token"
        )

    if len(token.split(".")) != 3:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format. Token must have header.payload.signature structure."
        )

    try:
        algo = jwt.get_unverified_header(token).get("alg")
    except jwt.DecodeError as e:
        logger.warning("Failed to decode token header: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token header"
        )

    if algo == "HS256":
        return _decode_hs256(token)
    if algo in ASYMMETRIC_ALGORITHMS:
        return _decode_asymmetric(token, algo)

    logger.warning("Unsupported token algorithm: %s", algo)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=f"Unsupported token algorithm: {algo}"
    )


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies the Supabase token. There is no local
    users table: subscriptions and usage rows are keyed by the `sub` claim.
    """
    payload = verify_supabase_token(authorization)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing user ID claim"
        )
    return AuthenticatedUser(id=str(user_id), email=payload.get("email"))


def get_current_user_id(user: AuthenticatedUser = Depends(get_current_user)) -> str:
    return user.id


def get_optional_user_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """
    Like get_current_user_id, but an unauthenticated request resolves to None
    so the route can answer in its own response format. Server-side auth
    failures (misconfiguration, JWKS outage) still raise.
    """
    try:
        return get_current_user(authorization).id
    except HTTPException as e:
        if e.status_code != status.HTTP_401_UNAUTHORIZED:
            raise
        return None
