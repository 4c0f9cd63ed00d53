"""Core SQLAlchemy models (2.x style) for the record-management schema.

Ingestion entities (agents, customers, accounts, categories, carriers,
policies) plus the scheduled message queue.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class UserType(str, Enum):
    ACTIVE_CLIENT = "Active Client"
    PROSPECT = "Prospect"
    INACTIVE = "Inactive"


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


class AccountType(str, Enum):
    COMMERCIAL = "Commercial"
    PERSONAL = "Personal"
    BUSINESS = "Business"


class PolicyType(str, Enum):
    SINGLE = "Single"
    MULTIPLE = "Multiple"
    GROUP = "Group"
    UNKNOWN = "Unknown"


class PolicyMode(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUAL = "Semi-Annual"
    ANNUAL = "Annual"
    UNKNOWN = "Unknown"


class ScheduledMessageStatus(str, Enum):
    """Delivery state machine: pending -> processing -> sent | failed."""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ScheduledMessageStatus, frozenset[ScheduledMessageStatus]] = {
    ScheduledMessageStatus.PENDING: frozenset({ScheduledMessageStatus.PROCESSING}),
    ScheduledMessageStatus.PROCESSING: frozenset({ScheduledMessageStatus.SENT, ScheduledMessageStatus.FAILED}),
    ScheduledMessageStatus.SENT: frozenset(),
    ScheduledMessageStatus.FAILED: frozenset(),
}


class Agent(TimestampMixin, Base):
    """Agents table."""
    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    customers: Mapped[list[Customer]] = relationship("Customer", back_populates="agent")
    policies: Mapped[list[Policy]] = relationship("Policy", back_populates="agent")


class Customer(TimestampMixin, Base):
    """Customers (policy holders) table."""
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    last_name: Mapped[str | None] = mapped_column(String(50))
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(50))
    gender: Mapped[str] = mapped_column(String(20), nullable=False, default=Gender.OTHER.value)
    date_of_birth: Mapped[date | None] = mapped_column(Date)
    address: Mapped[str | None] = mapped_column(String(200))
    state: Mapped[str | None] = mapped_column(String(50))
    zip_code: Mapped[str | None] = mapped_column(String(20))
    user_type: Mapped[str] = mapped_column(String(20), nullable=False, default=UserType.ACTIVE_CLIENT.value, index=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    agent: Mapped[Agent] = relationship("Agent", back_populates="customers")
    accounts: Mapped[list[Account]] = relationship("Account", back_populates="customer")
    policies: Mapped[list[Policy]] = relationship("Policy", back_populates="customer")


class Account(TimestampMixin, Base):
    """Customer accounts table."""
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountType.PERSONAL.value)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    customer: Mapped[Customer] = relationship("Customer", back_populates="accounts")


class PolicyCategory(TimestampMixin, Base):
    """Policy categories (line of business)."""
    __tablename__ = "policy_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)

    policies: Mapped[list[Policy]] = relationship("Policy", back_populates="category")


class Carrier(TimestampMixin, Base):
    """Insurance carriers table."""
    __tablename__ = "carriers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    code: Mapped[str | None] = mapped_column(String(20), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    policies: Mapped[list[Policy]] = relationship("Policy", back_populates="carrier")


class Policy(TimestampMixin, Base):
    """Policies table."""
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    policy_type: Mapped[str] = mapped_column(String(20), nullable=False, default=PolicyType.UNKNOWN.value)
    policy_mode: Mapped[str] = mapped_column(String(20), nullable=False, default=PolicyMode.UNKNOWN.value)
    premium_amount_written: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    premium_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    policy_start_date: Mapped[date | None] = mapped_column(Date)
    policy_end_date: Mapped[date | None] = mapped_column(Date)
    producer: Mapped[str | None] = mapped_column(String(100))
    csr: Mapped[str | None] = mapped_column(String(100))
    has_active_client_policy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("policy_categories.id"), nullable=False, index=True)
    carrier_id: Mapped[int] = mapped_column(ForeignKey("carriers.id"), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    customer: Mapped[Customer] = relationship("Customer", back_populates="policies")
    agent: Mapped[Agent] = relationship("Agent", back_populates="policies")
    category: Mapped[PolicyCategory] = relationship("PolicyCategory", back_populates="policies")
    carrier: Mapped[Carrier] = relationship("Carrier", back_populates="policies")

    __table_args__ = (
        CheckConstraint(
            "policy_start_date IS NULL OR policy_end_date IS NULL OR policy_end_date > policy_start_date",
            name="ck_policies_end_after_start",
        ),
        Index("ix_policies_dates", "policy_start_date", "policy_end_date"),
    )


class ScheduledMessage(TimestampMixin, Base):
    """Messages queued for delivery at a future instant."""
    __tablename__ = "scheduled_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    day: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(255))
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ScheduledMessageStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_scheduled_messages_status_due", "status", "scheduled_at"),
    )
