"""Bearer-token helpers.

Tokens are issued by the surrounding school platform; this service only
verifies them. Claims: ``sub`` (user id), ``role`` ("student" or "teacher")
and, for students, ``student_id``.
"""

import jwt
from datetime import datetime, timedelta, timezone
from fastapi import HTTPException, Request
from placement.config import settings

JWT_SECRET = settings.jwt_secret
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 72

ROLES = ("student", "teacher")


def create_token(user_id: str, role: str = "student", student_id: str | None = None) -> str:
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": datetime.now(timezone.utc),
    }
    if student_id is not None:
        payload["student_id"] = str(student_id)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(request: Request) -> dict:
    """Extract and validate the current user from the JWT token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Empty token")

    payload = decode_token(token)
    role = payload.get("role") or "student"
    if role not in ROLES:
        raise HTTPException(status_code=403, detail="Unknown role")

    student_id = payload.get("student_id")
    if role == "student" and not student_id:
        raise HTTPException(status_code=401, detail="Token carries no student id")

    return {
        "id": payload["sub"],
        "role": role,
        "student_id": student_id,
    }


def require_role(*allowed_roles: str):
    """Return a dependency that checks the user has one of the allowed roles.

    Usage in a route:
        user = await require_role("teacher")(request)
    """
    async def _check(request: Request) -> dict:
        user = await get_current_user(request)
        if user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required role: {', '.join(allowed_roles)}",
            )
        return user
    return _check


def acting_student(user: dict) -> str | None:
    """Student id ownership is checked against; teachers act on any assessment."""
    return user["student_id"] if user["role"] == "student" else None
