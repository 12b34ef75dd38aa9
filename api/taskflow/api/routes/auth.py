from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.api.deps import get_current_user, get_db
from taskflow.core.config import settings
from taskflow.core.security import issue_access_token
from taskflow.models.user import User
from taskflow.schema.user import AccessToken, UserCreate, UserLogin, UserRead
from taskflow.services import user_service

router = APIRouter()

ACCESS_COOKIE_NAME = "access_token"


def set_auth_cookie(response: Response, access_token: str) -> None:
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        access_token,
        max_age=settings.access_token_expires_minutes * 60,
        httponly=True,
        samesite="lax",
        secure=settings.environment.lower() == "production",
        path="/",
    )


def _token_response(response: Response, user: User) -> AccessToken:
    token = AccessToken(access_token=issue_access_token(user.id), user=UserRead.model_validate(user))
    set_auth_cookie(response, token.access_token)
    return token


@router.post("/register", response_model=AccessToken)
async def register(payload: UserCreate, response: Response, session: AsyncSession = Depends(get_db)) -> AccessToken:
    user = await user_service.create_user(
        session, email=payload.email, password=payload.password, display_name=payload.display_name
    )
    return _token_response(response, user)


@router.post("/login", response_model=AccessToken)
async def login(payload: UserLogin, response: Response, session: AsyncSession = Depends(get_db)) -> AccessToken:
    user = await user_service.authenticate_user(session, payload.email, payload.password)
    return _token_response(response, user)


@router.get("/me", response_model=UserRead)
async def read_current_user(current_user: User = Depends(get_current_user)) -> User:
    """Return the current authenticated user."""
    return current_user
