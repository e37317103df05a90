"""Bearer credential validation and credential generation.

Signed tokens (HS256 JWTs) are tried first; when verification fails for any
reason the raw token is looked up in the static organization -> key table.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping, Optional

import jwt

from core.errors import Expired, MalformedCredential, Unauthorized
from core.models import CredentialKind, Identity

LOGGER = logging.getLogger(__name__)

TOKEN_ISSUER = "beacon"
JWT_ALGORITHM = "HS256"
STATIC_KEY_PERMISSIONS = frozenset({"notify"})


def extract_bearer_token(credential: Optional[str]) -> str:
    """Return the token part of ``Bearer <token>`` or raise MalformedCredential."""

    if not credential:
        raise MalformedCredential("no authorization header")
    parts = credential.split(" ", 1)
    if len(parts) != 2 or parts[0] != "Bearer":
        raise MalformedCredential()
    token = parts[1].strip()
    if not token:
        raise MalformedCredential()
    return token


def parse_api_keys(raw: str) -> dict[str, str]:
    """Parse ``ORG:KEY,ORG2:KEY2`` into an organization -> key table.

    Entries without a separator or with an empty side are skipped.
    """

    table: dict[str, str] = {}
    for entry in raw.split(","):
        org, sep, key = entry.partition(":")
        org, key = org.strip(), key.strip()
        if not sep or not org or not key:
            continue
        table[org] = key
    return table


class TokenValidator:
    """Authenticates callers from an ``Authorization`` header value."""

    def __init__(
        self,
        jwt_secret: Optional[str],
        api_keys: Mapping[str, str],
        algorithm: str = JWT_ALGORITHM,
    ) -> None:
        self._jwt_secret = jwt_secret or None
        self._api_keys = dict(api_keys)
        self._algorithm = algorithm

    def validate(self, credential: Optional[str]) -> Identity:
        token = extract_bearer_token(credential)

        expired = False
        if self._jwt_secret:
            try:
                return self._verify_signed(token)
            except jwt.ExpiredSignatureError:
                expired = True
            except jwt.InvalidTokenError as exc:
                LOGGER.debug("Signed token rejected: %s", exc)

        identity = self._lookup_static(token)
        if identity is not None:
            return identity

        if expired:
            LOGGER.warning("Token validation failed: signed token expired")
            raise Expired()
        LOGGER.warning("Token validation failed: no signed or static match")
        raise Unauthorized()

    def _verify_signed(self, token: str) -> Identity:
        claims = jwt.decode(token, self._jwt_secret, algorithms=[self._algorithm])
        org = claims.get("org")
        if not org:
            raise jwt.InvalidTokenError("token has no org claim")
        user_id = claims.get("sub") or claims.get("userId") or ""
        expires_at = None
        if claims.get("exp") is not None:
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        return Identity(
            organization_id=str(org),
            user_id=str(user_id),
            permissions=frozenset(claims.get("permissions") or ()),
            credential_kind=CredentialKind.SIGNED,
            expires_at=expires_at,
        )

    def _lookup_static(self, token: str) -> Optional[Identity]:
        # Check every entry so the lookup time does not depend on where a match sits.
        match = None
        for org, key in self._api_keys.items():
            if hmac.compare_digest(key.encode("utf-8"), token.encode("utf-8")):
                match = org
        if match is None:
            return None
        return Identity(
            organization_id=match,
            user_id=f"apikey-{match}",
            permissions=STATIC_KEY_PERMISSIONS,
            credential_kind=CredentialKind.STATIC,
        )


def generate_token(
    secret: str,
    org: str,
    user_id: str,
    permissions: Iterable[str] = ("notify",),
    expires_in: timedelta = timedelta(days=30),
) -> str:
    """Create a signed token for an organization (used by CLI tools and tests)."""

    if not secret:
        raise ValueError("a signing secret is required to generate tokens")
    now = datetime.now(timezone.utc)
    payload = {
        "org": org,
        "sub": user_id,
        "permissions": list(permissions),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
        "iss": TOKEN_ISSUER,
    }
    token = jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)
    LOGGER.info("Token generated for org=%s user=%s", org, user_id)
    return token


def generate_api_key(org: str) -> dict[str, str]:
    """Create a random static key and the ``ORG:KEY`` form for ``API_KEYS``."""

    api_key = secrets.token_hex(32)
    LOGGER.info("API key generated for org=%s", org)
    return {"org": org, "api_key": api_key, "env_format": f"{org}:{api_key}"}
