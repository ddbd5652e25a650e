#!/usr/bin/env python3
"""
Authentication Module

Derives the caller's user id from a signed Supabase JWT. Client-supplied user
ids are never trusted; every debt account and connection query is scoped to
the id returned here.
"""

import logging
import jwt
from typing import Optional
from fastapi import HTTPException, Header
from decouple import config

logger = logging.getLogger(__name__)


class AuthenticationService:
    """Token verification helpers."""

    @staticmethod
    def get_user_id_from_auth_token(auth_token: str) -> Optional[str]:
        """
        Verify a Supabase access token and return its subject.

        Args:
            auth_token: The JWT, without the "Bearer " prefix

        Returns:
            User ID if token is valid, None otherwise
        """
        supabase_jwt_secret = config("SUPABASE_JWT_SECRET", default=None)

        if not auth_token:
            logger.warning("No auth token provided")
            return None

        if not supabase_jwt_secret:
            logger.error("SUPABASE_JWT_SECRET not configured")
            return None

        try:
            payload = jwt.decode(
                auth_token,
                supabase_jwt_secret,
                algorithms=["HS256"],
                audience="authenticated"
            )
            user_id = payload.get("sub")
            if not user_id:
                logger.warning("Token valid but missing 'sub' (user ID)")
                return None
            return user_id
        except jwt.ExpiredSignatureError:
            logger.warning("Token has expired")
            return None
        except jwt.InvalidAudienceError:
            logger.warning("Invalid token audience")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            return None


def get_authenticated_user_id(
    api_key: str = Header(None, alias="X-API-Key"),
    auth_token: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """
    FastAPI dependency returning the authenticated user id.

    The API key gates service access; the user identity comes only from the
    bearer JWT.

    Raises:
        HTTPException: 401 if the API key or token is missing or invalid
    """
    expected_api_key = config("BACKEND_API_KEY", default=None)
    if not api_key or not expected_api_key or api_key != expected_api_key:
        logger.warning("Authentication failed - missing or invalid API key")
        raise HTTPException(
            status_code=401,
            detail="Authentication required - invalid API key"
        )

    if auth_token:
        if auth_token.startswith("Bearer "):
            auth_token = auth_token[7:]

        user_id = AuthenticationService.get_user_id_from_auth_token(auth_token)
        if user_id:
            return user_id

    logger.warning("Authentication failed - no valid JWT token provided")
    raise HTTPException(
        status_code=401,
        detail="Authentication required - valid JWT token required"
    )
