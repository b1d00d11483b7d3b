"""
Security utilities for Mems.

This module provides:
- JWT bearer token validation for requests from the managed auth provider
- JWT token generation (used by tooling and tests)
- Extraction of the authenticated user id from token claims
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt

from .config import settings


class TokenError(Exception):
    """Raised when a bearer token is missing, malformed or invalid."""
    pass


class JWTManager:
    """JWT token generation and validation."""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        """Initialize JWT manager."""
        self.secret = secret or settings.security.jwt_secret_key.get_secret_value()
        self.algorithm = algorithm or settings.security.jwt_algorithm

    def create_token(self, payload: Dict[str, Any],
                     expires_in: Optional[int] = None) -> str:
        """
        Create JWT token.

        Args:
            payload: Token payload data
            expires_in: Expiration time in seconds

        Returns:
            JWT token string
        """
        now = datetime.now(timezone.utc)
        token_payload = {
            'iat': now,
            'jti': str(uuid.uuid4()),
            **payload
        }

        if expires_in:
            token_payload['exp'] = now + timedelta(seconds=expires_in)

        return jwt.encode(token_payload, self.secret, algorithm=self.algorithm)

    def decode_token(self, token: str, verify_exp: bool = True) -> Dict[str, Any]:
        """
        Decode and validate JWT token.

        Args:
            token: JWT token string
            verify_exp: Whether to verify expiration

        Returns:
            Decoded payload

        Raises:
            TokenError: If the signature, expiry or format is invalid
        """
        options = {"verify_exp": verify_exp}
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm], options=options)
        except jwt.PyJWTError as e:
            raise TokenError(str(e)) from e

    def get_user_id(self, token: str) -> str:
        """Return the user id carried by `sub` (or `user_id`) in a valid token."""
        payload = self.decode_token(token)
        user_id = payload.get("sub") or payload.get("user_id")
        if not user_id:
            raise TokenError("Token carries no user id")
        return str(user_id)


# Global instance
jwt_manager = JWTManager()


def create_jwt_token(payload: Dict[str, Any], expires_in: Optional[int] = None) -> str:
    """Create JWT token."""
    return jwt_manager.create_token(payload, expires_in)


def create_user_token(user_id: str, expires_in: Optional[int] = None) -> str:
    """Create a bearer token for a user id."""
    if expires_in is None:
        expires_in = settings.security.jwt_expiration_hours * 3600
    return create_jwt_token({"sub": user_id}, expires_in)
