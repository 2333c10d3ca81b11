import os
import logging
from supabase import create_client, Client
from dotenv import load_dotenv
from jose import jwt, JWTError
from typing import Optional

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("NEXT_PUBLIC_SUPABASE_ANON_KEY")


def _create_client() -> Optional[Client]:
    if not SUPABASE_URL:
        logger.warning("SUPABASE_URL not set. Assessment storage is disabled.")
        return None

    # Use service role key if available (full access), otherwise anon key
    key_to_use = SUPABASE_KEY or SUPABASE_ANON_KEY
    if not key_to_use:
        logger.warning("No Supabase key found. Assessment storage is disabled.")
        return None

    try:
        return create_client(SUPABASE_URL, key_to_use)
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        return None


supabase: Optional[Client] = _create_client()


def get_supabase() -> Optional[Client]:
    """Get the Supabase client instance."""
    return supabase


def verify_supabase_token(token: str) -> Optional[dict]:
    """
    Decode a Supabase JWT and return the user data.
    Returns None if the token is missing or malformed.
    """
    if not token:
        return None

    try:
        decoded = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.warning(f"[Auth] JWT decode error: {e}")
        return None

    user_id = decoded.get("sub")
    if not user_id:
        logger.warning("[Auth] No user_id (sub) in decoded token")
        return None

    return {
        "id": user_id,
        "email": decoded.get("email"),
        "role": decoded.get("role", "authenticated"),
    }


def get_user_profile(user_id: str) -> Optional[dict]:
    """Get user profile (including organization_id) from Supabase."""
    if not supabase:
        return None

    try:
        response = supabase.table("profiles").select("*").eq("id", user_id).single().execute()
        return response.data
    except Exception as e:
        logger.warning(f"Error fetching profile for {user_id}: {e}")
        return None
