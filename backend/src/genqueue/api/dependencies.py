"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Settings, UnitOfWork factory and generation provider from app state
- Admin console authentication
"""

import hmac
from typing import Annotated, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from genqueue.core.config import Settings
from genqueue.services.generation.provider import GenerationProvider
from genqueue.uow import UnitOfWork


def get_settings(request: Request) -> Settings:
    """Get the settings instance created at startup.

    Returns:
        Settings stored on app.state by the lifespan (or by tests)
    """
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.queue_items.get_by_id(item_id)
    """
    return request.app.state.uow_factory


def get_provider(request: Request) -> GenerationProvider:
    """Get the generation provider used to run admitted jobs."""
    return request.app.state.provider


async def require_admin(
    x_admin_token: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject admin requests without the shared admin token.

    Uses constant-time comparison. An unset ADMIN_API_TOKEN rejects everything.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or wrong
    """
    if not x_admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Admin-Token header"
        )

    expected = settings.admin_api_token
    if not expected or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
