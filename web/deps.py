"""Dependencies for FastAPI route handlers.

Provides the database session, settings and store via FastAPI dependency
injection.

Transaction boundaries are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, HTTPException, Request
from fastapi import status as http_status
from sqlalchemy.orm import Session, sessionmaker

from hubris_imagegen.config import Settings, get_settings
from hubris_imagegen.errors import HermeticBuildError
from hubris_imagegen.store import Store


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings(request: Request) -> Settings:
    """Settings stored on the app, falling back to the environment."""
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = get_settings()
    return settings  # type: ignore[no-any-return]


def get_store(
    request: Request,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> Store:
    """Store stored on the app, created from settings on first use."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        store = Store(settings.store_dir, session_factory)
        request.app.state.store = store
    return store  # type: ignore[no-any-return]


def configuration_error(error: HermeticBuildError) -> HTTPException:
    """Map a pipeline error to an HTTP error with a {code, message} body."""
    status_code = (
        http_status.HTTP_422_UNPROCESSABLE_ENTITY
        if error.is_configuration_error
        else http_status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return HTTPException(
        status_code=status_code,
        detail={"code": error.code, "message": str(error)},
    )
