"""SQLAlchemy tables for subscriptions and their append-only logs."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from broadbandx.db import Base, TimestampMixin


class SubscriptionEntity(Base, TimestampMixin):
    """Customer subscription row.

    ``version`` is the optimistic-lock counter: every UPDATE checks and bumps it.
    """

    __tablename__ = "broadband_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # Current period
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Pricing snapshot
    base_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    final_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    discount_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Cancellation
    cancellation_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_effective_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    refund_eligible: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)

    # Installation
    installation_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    installation_scheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    installation_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    installation_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Usage (GB)
    current_month_usage: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=0
    )
    usage_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    service_history: Mapped[list["ServiceHistoryEntity"]] = relationship(
        back_populates="subscription",
        order_by="ServiceHistoryEntity.id",
        lazy="selectin",
    )
    payments: Mapped[list["PaymentEntity"]] = relationship(
        back_populates="subscription",
        order_by="PaymentEntity.id",
        lazy="selectin",
    )
    usage_history: Mapped[list["UsageHistoryEntity"]] = relationship(
        back_populates="subscription",
        order_by="UsageHistoryEntity.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_broadband_subscriptions_user_plan_status", "user_id", "plan_id", "status"),
        Index("ix_broadband_subscriptions_status_end", "status", "end_date"),
        # One active subscription per user and plan, enforced by the store as well
        Index(
            "uq_broadband_subscriptions_active_user_plan",
            "user_id",
            "plan_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class ServiceHistoryEntity(Base):
    """One service history entry."""

    __tablename__ = "broadband_service_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_pk: Mapped[int] = mapped_column(
        ForeignKey("broadband_subscriptions.id"), nullable=False, index=True
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    subscription: Mapped[SubscriptionEntity] = relationship(back_populates="service_history")


class PaymentEntity(Base):
    """One payment log entry."""

    __tablename__ = "broadband_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_pk: Mapped[int] = mapped_column(
        ForeignKey("broadband_subscriptions.id"), nullable=False, index=True
    )
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    subscription: Mapped[SubscriptionEntity] = relationship(back_populates="payments")


class UsageHistoryEntity(Base):
    """Data used in a past month, one row per month."""

    __tablename__ = "broadband_usage_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_pk: Mapped[int] = mapped_column(
        ForeignKey("broadband_subscriptions.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    data_used: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    subscription: Mapped[SubscriptionEntity] = relationship(back_populates="usage_history")

    __table_args__ = (
        UniqueConstraint("subscription_pk", "month", "year", name="uq_usage_history_month"),
    )
