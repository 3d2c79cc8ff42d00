"""SQLAlchemy table for the plan catalog."""

from decimal import Decimal

from sqlalchemy import Boolean, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from broadbandx.db import Base, TimestampMixin


class PlanEntity(Base, TimestampMixin):
    """Broadband plan row. Prices and features are flattened into columns."""

    __tablename__ = "broadband_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="residential")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Pricing
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    yearly_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    setup_fee: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Features
    download_speed: Mapped[int] = mapped_column(Integer, nullable=False)
    upload_speed: Mapped[int] = mapped_column(Integer, nullable=False)
    speed_unit: Mapped[str] = mapped_column(String(10), nullable=False, default="Mbps")
    data_limit_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    data_limit_unit: Mapped[str] = mapped_column(String(5), nullable=False, default="GB")
    unlimited_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_broadband_plans_status", "status"),
        Index("ix_broadband_plans_category", "category"),
        Index("ix_broadband_plans_monthly_price", "monthly_price"),
    )
