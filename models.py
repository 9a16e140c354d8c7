from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class Month(str, Enum):
    january = "January"
    february = "February"
    march = "March"
    april = "April"
    may = "May"
    june = "June"
    july = "July"
    august = "August"
    september = "September"
    october = "October"
    november = "November"
    december = "December"

    @property
    def ordinal(self) -> int:
        return MONTH_ORDINALS[self]

    @classmethod
    def from_ordinal(cls, ordinal: int) -> "Month":
        return MONTHS_BY_ORDINAL[ordinal]


MONTH_ORDINALS: dict[Month, int] = {
    month: index for index, month in enumerate(Month, start=1)
}
MONTHS_BY_ORDINAL: dict[int, Month] = {
    index: month for month, index in MONTH_ORDINALS.items()
}

MONTH_ENUM = SAEnum(
    Month,
    name="month",
    native_enum=False,
    length=9,
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    records: Mapped[list["FinancialRecord"]] = relationship(
        "FinancialRecord", back_populates="user"
    )


class FinancialRecord(Base, TimestampMixin):
    __tablename__ = "financial_records"

    record_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.user_id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[Month] = mapped_column(MONTH_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="records")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "year", "month", name="uq_financial_record_user_year_month"
        ),
        Index("ix_financial_records_user_year", "user_id", "year"),
        CheckConstraint(
            "year BETWEEN 1000 AND 9999", name="ck_financial_records_year_four_digit"
        ),
    )

    @property
    def amount(self) -> float:
        return self.amount_cents / 100
