"""
Enrollment Endpoints.
Course access check used by lesson pages before serving content.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_cache, get_current_user
from app.api.responses import ApiError, ApiErrors, success_response
from app.cache import Cache
from app.database import get_db
from app.services.enrollment_service import EnrollmentService
from app.services.identity import AuthenticatedUser

router = APIRouter()
logger = logging.getLogger(__name__)

NOT_ENROLLED = "يجب التسجيل في الدورة للوصول إلى هذا المحتوى"


@router.get("/{course_id}")
async def get_enrollment_status(
    course_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    enrolled = await EnrollmentService(db, cache).is_enrolled(user.id, course_id)
    return success_response({"courseId": course_id, "enrolled": enrolled})


@router.get("/{course_id}/access")
async def require_course_access(
    course_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """403 unless the caller holds an active enrollment. Admins always pass."""
    if not user.is_admin and not await EnrollmentService(db, cache).is_enrolled(user.id, course_id):
        logger.info(f"Denied course {course_id} to user {user.id}: not enrolled")
        raise ApiError.from_code(ApiErrors.FORBIDDEN, NOT_ENROLLED)

    return success_response({"courseId": course_id, "enrolled": True})
