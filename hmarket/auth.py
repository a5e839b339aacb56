"""Bearer-token identification. Token issuance lives in the user service."""
from typing import Protocol

import jwt

from hmarket.errors import UnauthenticatedError
from hmarket.models import Actor, Role

# Roles a credential may carry. SYSTEM is internal only.
_TOKEN_ROLES = {Role.CLIENT, Role.LIVREUR, Role.ADMIN, Role.VENDEUR}


class AuthVerifier(Protocol):
    def identify(self, credential: str | None) -> Actor: ...


class JwtAuthVerifier:
    """HS256 tokens with `userId` and `role` claims."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    def identify(self, credential: str | None) -> Actor:
        if not credential:
            raise UnauthenticatedError("authentication token required")
        token = credential.removeprefix("Bearer ").strip()
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.PyJWTError as e:
            raise UnauthenticatedError(f"invalid token: {e}") from e
        user_id = claims.get("userId")
        try:
            role = Role(claims.get("role"))
        except ValueError:
            raise UnauthenticatedError("token carries an unknown role")
        if not user_id or role not in _TOKEN_ROLES:
            raise UnauthenticatedError("token is missing userId or role")
        return Actor(actor_id=str(user_id), role=role)

    def issue(self, actor_id: str, role: Role) -> str:
        """Mint a token (tests and local tooling)."""
        return jwt.encode({"userId": actor_id, "role": role.value}, self._secret, algorithm=self._algorithm)
