"""
FastAPI dependencies.

Process-wide collaborators are built once in the application lifespan and
stored on app.state; routes reach them through these accessors so tests can
swap app.state attributes without patching modules.

Identity comes from headers set by the upstream auth gateway:

    X-User-Id       user id (required for any upload)
    X-User-Role     admin | super_admin | ...
    X-User-Courses  comma-separated course ids the admin manages
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from tutor_ingest.llm.key_pool import KeyPool
from tutor_ingest.services.authz import CurrentUser
from tutor_ingest.services.ingestion import IngestionCoordinator


def get_current_user(
    x_user_id:      Annotated[Optional[str], Header()] = None,
    x_user_role:    Annotated[Optional[str], Header()] = None,
    x_user_courses: Annotated[Optional[str], Header()] = None,
) -> CurrentUser | None:
    if not x_user_id:
        return None
    courses = frozenset(c.strip() for c in (x_user_courses or "").split(",") if c.strip())
    return CurrentUser(id=x_user_id, role=(x_user_role or "").strip().lower(), course_ids=courses)


def get_coordinator(request: Request) -> IngestionCoordinator:
    return request.app.state.coordinator


def get_key_pool(request: Request) -> KeyPool:
    return request.app.state.key_pool


def require_super_admin(
    user: Annotated[CurrentUser | None, Depends(get_current_user)],
) -> CurrentUser:
    if user is None or not user.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error_code": "FORBIDDEN", "message": "Super admin access required"},
        )
    return user
