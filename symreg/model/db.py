from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    Index,
    text,
)


Base = declarative_base()

# Registration statuses
REG_PENDING = "pending"
REG_CONFIRMED = "confirmed"
REG_CANCELLED = "cancelled"
ACTIVE_STATUSES = (REG_PENDING, REG_CONFIRMED)

# Registration.payment_status
PAY_NONE = "none"
PAY_PENDING = "pending"
PAY_PAID = "paid"
PAY_FAILED = "failed"

# PaymentIntent.status
INTENT_CREATED = "created"
INTENT_PAID = "paid"
INTENT_FAILED = "failed"

# PaymentIntent.kind
KIND_ENTRY_FEE = "entry_fee"
KIND_OTHER = "other"

_ACTIVE_WHERE = text("status IN ('pending', 'confirmed')")


# ----------------------------
# ORM models
# ----------------------------
class Account(Base):
    __tablename__ = "accounts"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    # super_admin | department_admin | user
    role = Column(String, nullable=False, default="user")
    api_key_prefix = Column(String, nullable=True, index=True)
    api_key_hash = Column(String, nullable=True)
    api_key_last_used_at = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class LedgerEntry(Base):
    # row present <=> email has paid the entry fee (insert-only)
    __tablename__ = "entry_fee_ledger"
    email = Column(String, primary_key=True)
    paid_at = Column(Float, nullable=False)
    payment_intent_id = Column(String, nullable=True)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    id = Column(String, primary_key=True)
    payer_account_id = Column(String, nullable=False, index=True)
    registration_id = Column(String, ForeignKey("registrations.id"),
                             nullable=True, index=True)
    kind = Column(String, nullable=False, default=KIND_ENTRY_FEE)
    covered_emails = Column(JSON, nullable=False, default=list)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False)

    gateway_order_id = Column(String, nullable=False, unique=True)
    gateway_payment_id = Column(String, nullable=True)

    # created | paid | failed
    status = Column(String, nullable=False, default=INTENT_CREATED)
    pricing = Column(JSON, nullable=True)
    raw = Column(JSON, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    # declared so the unit of work inserts the registration first
    registration = relationship("Registration")


class Registration(Base):
    __tablename__ = "registrations"
    id = Column(String, primary_key=True)
    event_ref = Column(String, nullable=False, index=True)
    owner_account_id = Column(String, nullable=False, index=True)
    owner_email = Column(String, nullable=False)
    event_name = Column(String, nullable=True)

    # individual | team
    kind = Column(String, nullable=False)
    team_name = Column(String, nullable=True)
    team_members = Column(JSON, nullable=False, default=list)
    notes = Column(String, nullable=True)

    # pending | confirmed | cancelled
    status = Column(String, nullable=False, default=REG_PENDING)

    # payment summary
    payment_method = Column(String, nullable=False, default="gateway")
    payment_amount = Column(Integer, nullable=False, default=0)
    payment_currency = Column(String, nullable=False)
    payment_status = Column(String, nullable=False, default=PAY_NONE)
    gateway_order_id = Column(String, nullable=True)
    gateway_payment_id = Column(String, nullable=True)
    verified_at = Column(Float, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        # one active registration per (event, owner)
        Index(
            "uq_registrations_active_owner",
            "event_ref", "owner_account_id",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
    )


class RegistrationHistory(Base):
    # append-only audit trail
    __tablename__ = "registration_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(String, ForeignKey("registrations.id"),
                             nullable=False, index=True)
    kind = Column(String, nullable=False)
    at = Column(Float, nullable=False)
    data = Column(JSON, nullable=True)

    registration = relationship("Registration")


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
