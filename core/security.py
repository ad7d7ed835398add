"""
Session handling for already-authenticated users.

Credential checks happen upstream; this module only issues and resolves the
session tokens that map a request to a user id.
"""

import secrets
import json
import os
import logging
from datetime import datetime, timedelta
from typing import Optional
from core.redis_client import get_redis_client

logger = logging.getLogger(__name__)

# Fallback in-memory session storage (only used if Redis is unavailable)
user_sessions = {}

# Session expiration
SESSION_EXPIRE_DAYS = int(os.getenv('SESSION_EXPIRE_DAYS', '7'))


def create_session(user_id: str) -> str:
    """Create user session and return session token."""
    session_token = secrets.token_urlsafe(32)
    now = datetime.utcnow()
    session_data = {
        'user_id': user_id,
        'created_at': now.isoformat(),
        'expires_at': (now + timedelta(days=SESSION_EXPIRE_DAYS)).isoformat(),
    }

    # Try to store in Redis first
    redis_client = get_redis_client()
    if redis_client:
        try:
            # Store in Redis with automatic expiration
            redis_client.setex(
                f'session:{session_token}',
                timedelta(days=SESSION_EXPIRE_DAYS),
                json.dumps(session_data)
            )
            return session_token
        except Exception as e:
            logger.warning(f"Redis session storage failed: {e}, falling back to in-memory")

    # Fallback to in-memory storage
    user_sessions[session_token] = {
        'user_id': user_id,
        'created_at': now,
        'expires_at': now + timedelta(days=SESSION_EXPIRE_DAYS),
    }
    return session_token


def get_session(session_token: str) -> Optional[dict]:
    """Get session data from token."""
    if not session_token:
        return None

    # Try Redis first
    redis_client = get_redis_client()
    if redis_client:
        try:
            session_data = redis_client.get(f'session:{session_token}')
            if session_data:
                return json.loads(session_data)
            return None
        except Exception as e:
            logger.warning(f"Redis session retrieval failed: {e}, checking in-memory")

    # Fallback to in-memory storage
    session_data = user_sessions.get(session_token)
    if not session_data:
        return None

    if session_data['expires_at'] < datetime.utcnow():
        del user_sessions[session_token]
        return None

    return session_data


def delete_session(session_token: str) -> None:
    """Delete a session."""
    if not session_token:
        return

    # Try Redis first
    redis_client = get_redis_client()
    if redis_client:
        try:
            redis_client.delete(f'session:{session_token}')
            return
        except Exception as e:
            logger.warning(f"Redis session deletion failed: {e}, checking in-memory")

    # Fallback to in-memory storage
    user_sessions.pop(session_token, None)
