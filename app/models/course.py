"""Course model - read side of the course catalog (price and cashback policy)."""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import CashbackType


class Course(Base):
    """
    Catalog row owned by the course CRUD service.
    Only the columns checkout and cashback need are mapped here.
    """

    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)

    professor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    cashback_type: Mapped[str] = mapped_column(
        String(20),
        default=CashbackType.NONE.value,
        nullable=False,
    )

    cashback_value: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0"),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Course {self.id} {self.title}>"
