#!/usr/bin/env python3
"""
Supabase client utility.

Creates the service-role client used by the liability storage gateway and
looks up the profile details aggregators ask for when a user first connects.
"""

import os
from typing import Dict, Any, Optional
import logging
from dotenv import load_dotenv
from supabase import create_client, Client

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

supabase_url = os.getenv("SUPABASE_URL")
supabase_service_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

if not supabase_url or not supabase_service_key:
    logger.error("Supabase URL or service role key not found in environment variables")

_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Return the shared Supabase client using the service role key.

    Returns:
        Client: Initialized Supabase client
    """
    global _client
    if _client is None:
        try:
            _client = create_client(supabase_url, supabase_service_key)
        except Exception as e:
            logger.error(f"Failed to create Supabase client: {e}")
            raise
    return _client


def get_user_profile(user_id: str) -> Dict[str, Any]:
    """
    Retrieve name, email and phone for a user from Supabase Auth.

    Missing users or lookup errors yield an empty profile; callers fall back
    to placeholder values.
    """
    if not user_id:
        logger.warning("Empty user_id provided to get_user_profile")
        return {}

    try:
        response = get_supabase_client().auth.admin.get_user_by_id(user_id)
        user = getattr(response, 'user', None)
        if user is None:
            return {}
        metadata = user.user_metadata or {}
        return {
            'email': user.email,
            'phone': user.phone or metadata.get('phone'),
            'first_name': metadata.get('first_name'),
            'last_name': metadata.get('last_name'),
        }
    except Exception as e:
        logger.error(f"Error fetching profile for user {user_id}: {e}")
        return {}
