from fastapi import APIRouter, Depends
from app.services.auth_service import CurrentUser, get_current_user, require_admin

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.get("/me")
def read_current_user(current_user: CurrentUser = Depends(get_current_user)):
    return {
        "username": current_user.username,
        "is_admin": current_user.is_admin,
        "role": current_user.role,
    }


__all__ = ["router", "get_current_user", "require_admin", "CurrentUser"]
