"""
JWT verification against the provider's rotating key set.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from jose import jwt
from jose.exceptions import JWTError

from shared.errors import FederationException, Unauthorized, ValidationFailed
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..jwks.client import KeySetCache
from .email import is_valid_email


ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "ES512")


@dataclass(frozen=True)
class VerifiedClaims:
    """Claims of a bearer token whose signature, expiry and email checked out."""
    sub: Optional[str]
    email: str
    email_verified: Optional[bool] = None
    name: Optional[str] = None
    preferred_username: Optional[str] = None
    iss: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VerifiedClaims":
        return cls(
            sub=payload.get("sub"),
            email=payload["email"],
            email_verified=payload.get("email_verified"),
            name=payload.get("name"),
            preferred_username=payload.get("preferred_username"),
            iss=payload.get("iss"),
            aud=payload.get("aud"),
            exp=payload.get("exp"),
            iat=payload.get("iat"),
            raw=dict(payload),
        )


class JWTVerifier:
    """Verifies inbound bearer tokens.

    Audience is deliberately not checked: several client applications share
    one issuer and all of their tokens are accepted.
    """

    def __init__(self, key_set_cache: KeySetCache,
                 algorithms: Sequence[str] = ASYMMETRIC_ALGORITHMS,
                 metrics: Optional[MetricsCollector] = None):
        self.key_set_cache = key_set_cache
        self.algorithms = tuple(algorithms)
        self.metrics = metrics
        self.logger = get_logger("federation.validator")

    async def verify(self, token: str) -> Optional[VerifiedClaims]:
        """Return the verified claims, or ``None`` for any invalid token."""
        try:
            claims = await self.verify_or_raise(token)
        except FederationException as e:
            self.logger.warning("Token verification failed", code=e.code, error=e.message)
            self._count("invalid")
            return None

        self._count("valid")
        return claims

    async def verify_or_raise(self, token: str) -> VerifiedClaims:
        if token and token.startswith("Bearer "):
            token = token[7:].strip()
        if not token:
            raise Unauthorized("Empty bearer token")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise Unauthorized("Malformed token", details={"error": str(e)}) from e

        algorithm = header.get("alg")
        if algorithm not in self.algorithms:
            raise Unauthorized("Unsupported token algorithm", details={"alg": algorithm})

        key = await self._resolve_key(header.get("kid"))

        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                options={"verify_aud": False, "verify_exp": True, "require_exp": True},
            )
        except JWTError as e:
            raise Unauthorized("Token validation failed", details={"error": str(e)}) from e

        email = payload.get("email")
        if not isinstance(email, str) or not email.strip():
            raise ValidationFailed("Token missing email claim")
        if not is_valid_email(email):
            raise ValidationFailed("Token email claim is not a valid address")

        return VerifiedClaims.from_payload(payload)

    async def _resolve_key(self, kid: Optional[str]) -> Dict[str, Any]:
        # Raises RemoteUnavailable/NotConfigured when no key set was ever fetched.
        try:
            if kid:
                key = await self.key_set_cache.get_key(kid)
            else:
                key_set = await self.key_set_cache.get_verification_keys()
                key = key_set.keys[0] if len(key_set) == 1 else None
        except FederationException as e:
            raise Unauthorized("Verification keys unavailable", details={"error": e.message}) from e

        if key is None:
            raise Unauthorized("Signing key not found for token", details={"kid": kid})
        return key

    def _count(self, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_verifications_total", status=status)
