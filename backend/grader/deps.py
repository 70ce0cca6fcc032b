"""
FastAPI dependencies - current user, role guards, grading engine.
"""

from fastapi import Request, HTTPException, Depends
from datetime import datetime, timezone
from functools import lru_cache

from .database import db
from .models.user import User
from .services.execution import ExecutionService
from .services.grading import GradingEngine
from .services.judge import GeminiJudge
from .services.store import SubmissionStore


async def get_current_user(request: Request) -> User:
    """Get current user from the session token (cookie or Bearer header)"""
    session_token = request.cookies.get("session_token")

    if not session_token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            session_token = auth_header.split(" ")[1]

    if not session_token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    session = await db.user_sessions.find_one(
        {"session_token": session_token},
        {"_id": 0}
    )

    if not session:
        raise HTTPException(status_code=401, detail="Invalid session")

    expires_at = session.get("expires_at")
    if isinstance(expires_at, str):
        expires_at = datetime.fromisoformat(expires_at)
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < datetime.now(timezone.utc):
            raise HTTPException(status_code=401, detail="Session expired")

    user = await db.users.find_one(
        {"user_id": session["user_id"]},
        {"_id": 0}
    )

    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return User(**user)


async def get_teacher_user(user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure the caller is a teacher"""
    if user.role != "teacher":
        raise HTTPException(status_code=403, detail="Only teachers can do this")
    return user


async def get_student_user(user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure the caller is a student"""
    if user.role != "student":
        raise HTTPException(status_code=403, detail="Only students can do this")
    return user


@lru_cache(maxsize=1)
def get_grading_engine() -> GradingEngine:
    """Process-wide engine wired to MongoDB, Gemini and Piston"""
    return GradingEngine(
        store=SubmissionStore(db),
        judge=GeminiJudge(),
        executor=ExecutionService(),
    )
