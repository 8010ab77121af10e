"""
Dashboard owner resolution.

Site management routes identify the owner from an `Authorization: Bearer`
JWT (HS256) signed with the secret stored in SSM at
/{ENV}/{APP_NAME}/secrets/jwt_secret. Without a token, and with
AUTH_REQUIRED off, requests act as DEFAULT_OWNER_ID.
"""

import logging
from typing import Dict, Mapping, Optional

import boto3
import jwt

from .config import Settings
from .errors import AuthError

logger = logging.getLogger(__name__)

# Cached clients and secrets (container reuse)
_ssm_client = None
_jwt_secret = None


def _get_ssm_client():
    global _ssm_client
    if _ssm_client is None:
        _ssm_client = boto3.client("ssm")
    return _ssm_client


def _get_jwt_secret(settings: Settings) -> str:
    global _jwt_secret
    if _jwt_secret is None:
        client = _get_ssm_client()
        parameter_name = f"/{settings.env}/{settings.app_name}/secrets/jwt_secret"
        response = client.get_parameter(Name=parameter_name, WithDecryption=True)
        _jwt_secret = response["Parameter"]["Value"]
    return _jwt_secret


def _verify_token(token: str, secret: str) -> Dict:
    """Verify and decode a JWT token."""
    return jwt.decode(token, secret, algorithms=["HS256"])


def _bearer_token(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    for name, value in (headers or {}).items():
        if name.lower() == "authorization" and value:
            scheme, _, token = value.partition(" ")
            if scheme.lower() == "bearer" and token.strip():
                return token.strip()
            raise AuthError("Malformed Authorization header")
    return None


def resolve_owner(headers: Optional[Mapping[str, str]], settings: Settings) -> str:
    """Owner id for a dashboard request. Raises AuthError for a bad, expired or missing token."""
    token = _bearer_token(headers)
    if token is None:
        if settings.auth_required:
            raise AuthError("Missing authorization token")
        return settings.default_owner_id

    try:
        claims = _verify_token(token, _get_jwt_secret(settings))
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected dashboard token: {e}")
        raise AuthError("Invalid token")

    owner = claims.get("sub") or claims.get("email")
    if not owner:
        raise AuthError("Token has no subject")
    return str(owner)
