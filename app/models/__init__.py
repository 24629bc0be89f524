"""Models package for database models."""

from app.models.course import Course
from app.models.coupon import Coupon
from app.models.payment import Payment
from app.models.enrollment import Enrollment
from app.models.wallet import WalletTransaction

__all__ = [
    "Course",
    "Coupon",
    "Payment",
    "Enrollment",
    "WalletTransaction",
]
