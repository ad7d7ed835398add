"""
Shared dependencies for FastAPI routes.
"""

from typing import Optional
from fastapi import Request, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db, UserDB
from core.identity import CallerIdentity
from core.security import get_session


def _session_token(request: Request) -> Optional[str]:
    return request.cookies.get('session_token') or request.headers.get('X-Session-Token')


def get_current_user(request: Request, db: Session = Depends(get_db)) -> Optional[UserDB]:
    """Get current user from session."""
    session_token = _session_token(request)
    if not session_token:
        return None

    session_data = get_session(session_token)
    if not session_data:
        return None

    return db.query(UserDB).filter(UserDB.id == session_data['user_id']).first()


def get_current_identity(request: Request, db: Session = Depends(get_db)) -> CallerIdentity:
    """Caller identity for the service layer; 401 when there is no valid session."""
    user = get_current_user(request, db)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return CallerIdentity.from_user(user)


async def read_json(request: Request) -> dict:
    """Parsed JSON object body; 400 for anything else."""
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return data
