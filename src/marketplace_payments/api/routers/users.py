from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from ...access.policy import Principal
from ...models.api_models import RegisterUserRequest
from ...models.user import UserRole
from ...errors import AuthorizationError
from ..container import Container
from ..dependencies import get_container, get_principal, ok


router = APIRouter(prefix="/users", tags=["users"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterUserRequest,
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    # Admin accounts are provisioned out of band
    if payload.role == UserRole.ADMIN:
        raise AuthorizationError("Cannot self-register as admin")
    user = await container.users.register_user(payload.name, payload.email, payload.role)
    return ok(user)


@router.get("/me")
async def get_me(
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return ok(await container.users.get_user(principal.user_id))
