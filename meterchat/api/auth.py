"""
Account API routes.

- POST /api/auth/register: Create an account on the FREE plan
- POST /api/auth/login: Exchange email + password for a session token
"""
from typing import Optional
from fastapi import APIRouter
from pydantic import BaseModel, Field

from meterchat.core.auth import issue_access_token
from meterchat.features.usage.service import usage_snapshot
from meterchat.features.users.service import authenticate_user, register_user
from meterchat.models.user import User


router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=200)
    name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=200)


class AccountView(BaseModel):
    id: int
    email: str
    name: Optional[str]
    plan: str
    messages_used: int
    messages_limit: int
    subscription_status: Optional[str]


class SessionResponse(BaseModel):
    token: str
    user: AccountView


def _session_for(user: User) -> dict:
    usage = usage_snapshot(user)
    return {
        "token": issue_access_token(user.email),
        "user": {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "plan": user.plan,
            "messages_used": usage.used,
            "messages_limit": usage.limit,
            "subscription_status": user.subscription_status,
        },
    }


@router.post("/register", response_model=SessionResponse, status_code=201)
def register(request: RegisterRequest):
    """
    Create an account.

    Errors:
        400: Invalid email or password too short
        409: Email already registered
    """
    user = register_user(request.email, request.password, request.name)
    return _session_for(user)


@router.post("/login", response_model=SessionResponse)
def login(request: LoginRequest):
    """
    Log in.

    Errors:
        401: Unknown email or wrong password (same message for both)
    """
    user = authenticate_user(request.email, request.password)
    return _session_for(user)
