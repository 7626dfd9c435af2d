"""
Bearer token verification

Tokens are issued elsewhere; this module only verifies them and resolves the
user they name. Both REST requests and live-channel handshakes use it.
"""

import logging
from typing import Optional

from jose import JWTError, jwt

from beacon.core.errors import AuthError
from beacon.models.emergency import UserPresence
from beacon.services.emergency.geo_index import GeoIndex


class TokenVerifier:
    """Verifies JWTs and resolves them to known users"""

    def __init__(self, secret_key: str, geo_index: GeoIndex, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.geo_index = geo_index
        self.logger = logging.getLogger(__name__)

    def decode(self, token: Optional[str]) -> str:
        """
        Decode a token and return the user id it carries

        Raises:
            AuthError: If the token is missing, malformed, expired or has no subject
        """
        if not token:
            raise AuthError("Token not provided")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            self.logger.debug(f"Rejected token: {e}")
            raise AuthError("Invalid token")

        user_id = payload.get("id") or payload.get("sub")
        if not user_id:
            raise AuthError("Invalid token")
        return str(user_id)

    def authenticate(self, token: Optional[str]) -> UserPresence:
        """
        Resolve a token to an existing user

        Raises:
            AuthError: If verification fails or the user no longer exists
        """
        user = self.geo_index.get_user(self.decode(token))
        if user is None:
            raise AuthError("User not found")
        return user


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value"""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
