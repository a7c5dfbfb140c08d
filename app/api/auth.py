from fastapi import APIRouter

from app.schemas.auth import SessionUser
from app.utils.auth import CurrentUser

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.get("/session", response_model=SessionUser)
async def get_session(current_user: CurrentUser) -> SessionUser:
    return SessionUser.model_validate(current_user)
