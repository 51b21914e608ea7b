import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import jwt
from fastapi import HTTPException, Request, status
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError

ROLE_ADMIN = "Admin"
ROLE_COO = "COO"

_GROUP_CLAIMS = ("cognito:groups", "groups")
_OWNER_CLAIMS = ("custom:owner_id", "owner_id")


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


@lru_cache(maxsize=8)
def _jwk_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url)


def _issuer_settings() -> Tuple[str, str, str]:
    issuer = os.environ.get("COGNITO_ISSUER")
    audience = os.environ.get("COGNITO_AUDIENCE")
    if not issuer or not audience:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth misconfigured: missing COGNITO_ISSUER/COGNITO_AUDIENCE",
        )
    jwks_url = os.environ.get("COGNITO_JWKS_URL") or f"{issuer.rstrip('/')}/.well-known/jwks.json"
    return issuer, audience, jwks_url


def _decode_unverified(token: str) -> Dict[str, Any]:
    # Local runs and tests only.
    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_aud": False, "verify_exp": False})
    except InvalidTokenError as exc:
        raise _unauthorized("Invalid token") from exc


def _decode_verified(token: str) -> Dict[str, Any]:
    issuer, audience, jwks_url = _issuer_settings()
    try:
        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=issuer,
            options={"require": ["exp", "iat", "sub"], "verify_aud": False},
        )
    except InvalidTokenError as exc:
        raise _unauthorized("Invalid token") from exc
    except Exception as exc:
        raise _unauthorized("Unable to validate token") from exc

    # Cognito access tokens carry client_id instead of aud.
    if (claims.get("aud") or claims.get("client_id")) != audience:
        raise _unauthorized("Invalid token audience")
    return claims


def _decode_jwt(token: str) -> Dict[str, Any]:
    if _as_bool(os.environ.get("JWT_VERIFY_SIGNATURE"), default=True):
        return _decode_verified(token)
    return _decode_unverified(token)


def get_bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = (request.headers.get("authorization") or "").strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        return None
    return token


def _gateway_claims(request: Request) -> Optional[Dict[str, Any]]:
    """Claims already validated by the API Gateway JWT authorizer, when running behind it."""
    event = request.scope.get("aws.event")
    if not isinstance(event, dict):
        return None
    claims = event.get("requestContext", {}).get("authorizer", {}).get("jwt", {}).get("claims")
    return claims if isinstance(claims, dict) and claims else None


def _split_groups(raw_groups: Any) -> List[str]:
    if isinstance(raw_groups, str):
        value = raw_groups.strip()
        # API Gateway flattens list claims to "[Admin COO]" or a JSON string.
        if value.startswith("[") and value.endswith("]"):
            try:
                raw_groups = json.loads(value)
            except json.JSONDecodeError:
                raw_groups = value[1:-1].replace(" ", ",").split(",")
        else:
            raw_groups = value.split(",")
    if not isinstance(raw_groups, list):
        return []
    return [str(group).strip() for group in raw_groups if str(group).strip()]


def _first_claim(claims: Dict[str, Any], names) -> Any:
    for name in names:
        if claims.get(name):
            return claims[name]
    return None


def _claims_to_user(claims: Dict[str, Any]) -> Dict[str, Any]:
    sub = claims.get("sub") or claims.get("username")
    if not sub:
        raise _unauthorized("Missing sub claim")

    owner_id = _first_claim(claims, _OWNER_CLAIMS)
    return {
        "sub": sub,
        "username": claims.get("cognito:username") or claims.get("username"),
        "email": claims.get("email"),
        "name": claims.get("name"),
        "groups": _split_groups(_first_claim(claims, _GROUP_CLAIMS)),
        "owner_id": owner_id if owner_id and owner_id != sub else None,
        "claims": claims,
    }


async def get_current_user(request: Request) -> Dict[str, Any]:
    claims = _gateway_claims(request)
    if claims is None:
        token = get_bearer_token(request)
        if not token:
            raise _unauthorized("Missing Authorization header")
        claims = _decode_jwt(token)
    return _claims_to_user(claims)


def normalized_role_set(roles: List[str]) -> set[str]:
    return {role.strip().lower() for role in roles if isinstance(role, str) and role.strip()}
