"""
Enrollment Service - access grants and the cached access check.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import Cache, NullCache
from app.config import settings
from app.fsm.states import EnrollmentStatus
from app.models.enrollment import Enrollment

logger = logging.getLogger(__name__)


def enrollment_cache_key(user_id: str, course_id: str) -> str:
    return f"enrollment:{user_id}:{course_id}"


class EnrollmentService:
    """Service for course enrollments."""

    def __init__(self, db: AsyncSession, cache: Optional[Cache] = None, ttl: Optional[int] = None):
        self.db = db
        self.cache = cache or NullCache()
        self.ttl = ttl or settings.enrollment_cache_ttl_seconds

    async def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        result = await self.db.execute(
            select(Enrollment).where(
                Enrollment.user_id == user_id,
                Enrollment.course_id == course_id,
            )
        )
        return result.scalar_one_or_none()

    async def is_enrolled(self, user_id: str, course_id: str) -> bool:
        """Active enrollment check, memoized through the injected cache."""
        key = enrollment_cache_key(user_id, course_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return bool(cached)

        enrollment = await self.get_enrollment(user_id, course_id)
        enrolled = enrollment is not None and enrollment.status == EnrollmentStatus.ACTIVE.value

        await self.cache.set(key, enrolled, self.ttl)
        return enrolled

    async def ensure_enrollment(self, user_id: str, course_id: str) -> Tuple[Enrollment, bool]:
        """
        Return the (user, course) enrollment, creating it if missing.
        The second element is True when a row was created.
        """
        existing = await self.get_enrollment(user_id, course_id)
        if existing is not None:
            return existing, False

        enrollment = Enrollment(
            user_id=user_id,
            course_id=course_id,
            status=EnrollmentStatus.ACTIVE.value,
        )
        self.db.add(enrollment)
        await self.db.flush()

        logger.info(f"Enrolled user {user_id} in course {course_id}")
        return enrollment, True

    async def invalidate(self, user_id: str, course_id: str) -> None:
        """Drop the cached access check. Call after the enrolling commit."""
        await self.cache.delete(enrollment_cache_key(user_id, course_id))
