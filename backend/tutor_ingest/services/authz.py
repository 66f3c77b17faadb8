"""
Upload authorization.

Identity is established upstream (API gateway / auth service) and arrives as
trusted headers; this module only decides whether that identity may ingest
into the requested course.

  role          may upload   course required   must own course
  ───────────   ──────────   ───────────────   ───────────────
  super_admin   yes          no                no
  admin         yes          yes               yes
  anything else no
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from tutor_ingest.core.errors import CourseRequiredError, ForbiddenError

UPLOAD_ROLES = frozenset({"admin", "super_admin"})


@dataclass(frozen=True)
class CurrentUser:
    id:         str
    role:       str
    course_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"


class Authorizer(Protocol):
    def ensure_can_upload(self, user: CurrentUser | None) -> CurrentUser: ...

    def ensure_course_access(self, user: CurrentUser, course_id: str | None) -> None: ...


class RoleAuthorizer:
    def ensure_can_upload(self, user: CurrentUser | None) -> CurrentUser:
        if user is None or user.role not in UPLOAD_ROLES:
            raise ForbiddenError()
        return user

    def ensure_course_access(self, user: CurrentUser, course_id: str | None) -> None:
        if user.is_super_admin:
            return
        if not course_id:
            raise CourseRequiredError()
        if course_id not in user.course_ids:
            raise ForbiddenError("No access to this course")
