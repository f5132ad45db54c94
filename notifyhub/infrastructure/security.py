"""Verification of identity assertions minted by the identity provider."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from notifyhub.config import Settings
from notifyhub.domain.entities import Principal
from notifyhub.domain.errors import UnauthorizedConnection
from notifyhub.domain.validation import IDENTIFIER_PATTERN

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ("sub", "organizationId", "roles", "exp")


class IdentityVerifier:
    """Decode JWT assertions into a :class:`Principal`.

    This service never issues credentials; it only checks the signature,
    expiry and shape of assertions produced elsewhere.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        issuer: str | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._issuer = issuer

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityVerifier":
        return cls(
            settings.identity_secret_key,
            algorithm=settings.identity_algorithm,
            issuer=settings.identity_issuer,
        )

    def verify(self, token: str | None) -> Principal:
        if not token:
            raise UnauthorizedConnection("Missing identity assertion")

        options = {"require_exp": True, "require_sub": True, "verify_aud": False}
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options=options,
            )
        except ExpiredSignatureError as exc:
            raise UnauthorizedConnection("Identity assertion expired") from exc
        except JWTError as exc:
            raise UnauthorizedConnection("Could not validate identity assertion") from exc

        return self._principal_from_claims(claims)

    @staticmethod
    def _principal_from_claims(claims: dict[str, Any]) -> Principal:
        missing = [claim for claim in REQUIRED_CLAIMS if claims.get(claim) in (None, "")]
        if missing:
            raise UnauthorizedConnection(f"Identity assertion lacks claims: {', '.join(missing)}")

        user_id = str(claims["sub"])
        organization_id = str(claims["organizationId"])
        if not IDENTIFIER_PATTERN.match(user_id) or not IDENTIFIER_PATTERN.match(organization_id):
            raise UnauthorizedConnection("Identity assertion carries malformed identifiers")

        roles = claims["roles"]
        if isinstance(roles, str):
            roles = [roles]
        if not isinstance(roles, (list, tuple)):
            raise UnauthorizedConnection("Identity assertion roles must be a list")

        try:
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as exc:
            raise UnauthorizedConnection("Identity assertion expiry is malformed") from exc

        return Principal(
            user_id=user_id,
            organization_id=organization_id,
            roles=frozenset(str(role) for role in roles),
            expires_at=expires_at,
        )


__all__ = ["IdentityVerifier", "REQUIRED_CLAIMS"]
