from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..access.policy import Principal
from ..errors import AuthenticationError, MarketplaceError
from ..models.api_models import ApiResponse
from .container import Container


def get_container(request: Request) -> Container:
    return request.app.state.container


async def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
) -> Principal:
    """
    Caller identity from the `X-User-Id` header.

    Token verification happens upstream; the role is always taken from the
    stored user record.
    """
    if not x_user_id:
        raise AuthenticationError("Not authorized to access this route")
    user = await container.db.get_user(x_user_id)
    if user is None:
        raise AuthenticationError("Not authorized to access this route")
    return Principal(user_id=user.id, role=user.role)  # type: ignore[arg-type]


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"success": False, "error": exc.message, **exc.details}),
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)  # type: ignore[arg-type]


def ok(data: Any = None, count: Optional[int] = None) -> Dict[str, Any]:
    body = ApiResponse(data=data, count=count).model_dump(mode="json")
    if count is None:
        body.pop("count")
    return body
