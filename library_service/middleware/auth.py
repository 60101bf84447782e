"""JWT validation and capability checks.

Tokens are verified with the shared secret when ``jwt_secret_key`` is set,
otherwise against the Keycloak JWKS endpoint.
"""
import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from library_service.config import settings
from library_service.security import Capability, Principal

_bearer = HTTPBearer()
_jwks_cache: dict | None = None


async def _get_jwks() -> dict:
    global _jwks_cache
    if _jwks_cache is None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(settings.keycloak_jwks_uri)
            resp.raise_for_status()
            _jwks_cache = resp.json()
    return _jwks_cache


async def _decode(token: str) -> dict:
    if settings.jwt_secret_key:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    jwks = await _get_jwks()
    return jwt.decode(
        token,
        jwks,
        algorithms=["RS256"],
        options={"verify_aud": False},
        issuer=settings.keycloak_issuer_uri,
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def principal_from_claims(payload: dict) -> Principal:
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise _unauthorized("Token subject is not a user id")
    roles = payload.get("roles") or payload.get("realm_access", {}).get("roles", [])
    return Principal.from_roles(user_id, roles)


async def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(_bearer),
) -> Principal:
    token = creds.credentials
    try:
        payload = await _decode(token)
    except JWTError as exc:
        raise _unauthorized(f"Invalid or expired token: {exc}")
    return principal_from_claims(payload)


def require_capability(capability: Capability):
    """Dependency factory. Raises 403 if none of the caller's roles grants ``capability``."""
    async def _check(user: Principal = Depends(get_current_user)) -> Principal:
        if not user.can(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Capability '{capability.value}' required",
            )
        return user
    return _check
