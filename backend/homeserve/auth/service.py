"""Bearer token verification shared with the REST API.

Tokens are HS256 JWTs carrying ``userId``, ``email`` and ``userType``
claims plus ``exp``. The relay only verifies them; ``create_access_token``
mirrors the REST issuer for tests and local tooling.
"""
import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from jose import JWTError, jwt

from homeserve.chat.errors import AuthInvalid
from homeserve.config import JWTSecrets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Verified caller identity."""
    user_id: str
    email: Optional[str] = None
    user_type: Optional[str] = None


class TokenService:
    """Signs and verifies access tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expire_minutes: int = 60 * 24,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    @classmethod
    def from_secrets(cls, secrets: JWTSecrets) -> "TokenService":
        return cls(
            secret_key=secrets.secret_key,
            algorithm=secrets.algorithm,
            expire_minutes=secrets.access_token_expire_minutes,
        )

    def create_access_token(
        self,
        user_id: str,
        email: Optional[str] = None,
        user_type: Optional[str] = None,
        expires_delta: Optional[datetime.timedelta] = None,
    ) -> str:
        expire = datetime.datetime.now(datetime.timezone.utc) + (
            expires_delta or datetime.timedelta(minutes=self._expire_minutes)
        )
        claims = {"userId": user_id, "email": email, "userType": user_type, "exp": expire}
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> Identity:
        """Check signature and expiry and return the caller identity.

        Raises:
            AuthInvalid: The token is malformed, expired, badly signed or
                carries no ``userId``.
        """
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.info("[Auth] Token rejected: %s", exc)
            raise AuthInvalid("Invalid token") from exc

        user_id = claims.get("userId")
        if not user_id or not isinstance(user_id, str):
            raise AuthInvalid("Invalid token")
        return Identity(
            user_id=user_id,
            email=claims.get("email"),
            user_type=claims.get("userType"),
        )
