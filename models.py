# models.py - Flask-SQLAlchemy models for the accrual engine
from decimal import Decimal
import enum
from sqlalchemy import UniqueConstraint, Index, CheckConstraint, text
from flask_login import UserMixin
from extensions import db, login_manager

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class EntryKind(enum.Enum):
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    INVESTMENT = "Investment"
    RETURN = "Return"
    REFERRAL = "Referral"
    EARLY_WITHDRAWAL = "EarlyWithdrawal"


class EntryStatus(enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    FAILED = "Failed"


class PositionStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class PositionOrigin(enum.Enum):
    PLAN = "plan"
    LEGACY_PRODUCT = "legacy_product"


class PayoutKind(enum.Enum):
    DAILY = "daily"
    COMPLETION = "completion"
    WITHDRAWAL = "withdrawal"


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime, default=db.func.now())
    updated_at = db.Column(db.DateTime,
                           default=db.func.now(),
                           onupdate=db.func.now())


def _money(value):
    return Decimal(str(value if value is not None else "0"))


# ===========================================================
# USER
# ===========================================================

class User(db.Model, BaseMixin, UserMixin):
    """Platform user. Registration and login live outside this service."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="user", index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)

    account = db.relationship('LedgerAccount', uselist=False, back_populates='user',
                              cascade="all,delete-orphan")
    positions = db.relationship('InvestmentPosition', back_populates='user', lazy='dynamic')
    referrer = db.relationship('User', remote_side=[id])

    @property
    def is_admin(self):
        return self.role == "admin"

    def __repr__(self):
        return f'<User {self.id} {self.email}>'


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


# ===========================================================
# LEDGER
# ===========================================================

class LedgerAccount(db.Model, BaseMixin):
    """Per-user financial state. Mutated only through accrual.ledger."""
    __tablename__ = 'ledger_accounts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'),
                        nullable=False, unique=True, index=True)
    spendable_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    locked_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    cumulative_invested = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    cumulative_returned = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    referral_pending_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    lifetime_referral_earnings = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    referral_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    currency = db.Column(db.String(10), default='USD')

    user = db.relationship('User', back_populates='account')

    __table_args__ = (
        CheckConstraint('spendable_balance >= 0', name='chk_spendable_non_negative'),
        CheckConstraint('locked_balance >= 0', name='chk_locked_non_negative'),
        CheckConstraint('referral_pending_balance >= 0', name='chk_referral_pending_non_negative'),
    )

    def to_dict(self):
        return {
            "userId": self.user_id,
            "spendableBalance": float(_money(self.spendable_balance)),
            "lockedBalance": float(_money(self.locked_balance)),
            "cumulativeInvested": float(_money(self.cumulative_invested)),
            "cumulativeReturned": float(_money(self.cumulative_returned)),
            "referralPendingBalance": float(_money(self.referral_pending_balance)),
            "lifetimeReferralEarnings": float(_money(self.lifetime_referral_earnings)),
            "referralCount": self.referral_count or 0,
            "currency": self.currency,
        }


class LedgerEntry(db.Model):
    """Append-only signed monetary movement. Only a Pending status may change."""
    __tablename__ = 'ledger_entries'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    kind = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=EntryStatus.PENDING.value)
    reference = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255))
    position_id = db.Column(db.Integer, db.ForeignKey('investment_positions.id'), nullable=True, index=True)
    unlock_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('reference', name='uq_ledger_entries_reference'),
        Index('idx_ledger_user_created', 'user_id', 'created_at'),
        Index('idx_ledger_kind_status_unlock', 'kind', 'status', 'unlock_date'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "amount": float(_money(self.amount)),
            "status": self.status,
            "reference": self.reference,
            "description": self.description,
            "positionId": self.position_id,
            "unlockDate": self.unlock_date.isoformat() if self.unlock_date else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
# PLAN CATALOG
# ===========================================================

class InvestmentPlan(db.Model, BaseMixin):
    __tablename__ = 'investment_plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)
    min_amount = db.Column(db.Numeric(18, 2), nullable=False)
    max_amount = db.Column(db.Numeric(18, 2), nullable=False)
    # If true, daily_payout is a percentage of the amount, otherwise a fixed amount
    is_percentage = db.Column(db.Boolean, nullable=False, default=True)
    daily_payout = db.Column(db.Numeric(12, 4), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='active')

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "minAmount": float(_money(self.min_amount)),
            "maxAmount": float(_money(self.max_amount)),
            "isPercentage": self.is_percentage,
            "dailyPayout": float(_money(self.daily_payout)),
            "durationDays": self.duration_days,
            "status": self.status,
        }


class Product(db.Model, BaseMixin):
    """Legacy catalog entry, priced by annual ROI instead of a daily rate."""
    __tablename__ = 'products'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    roi_percent = db.Column(db.Numeric(7, 3), nullable=False, default=12)
    duration_days = db.Column(db.Integer, nullable=True)
    min_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    max_amount = db.Column(db.Numeric(18, 2), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='active')


# ===========================================================
# POSITIONS & PAYOUTS
# ===========================================================

class InvestmentPosition(db.Model, BaseMixin):
    """A user's commitment of funds, carrying a frozen snapshot of the terms."""
    __tablename__ = 'investment_positions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    origin = db.Column(db.String(20), nullable=False, default=PositionOrigin.PLAN.value)
    plan_id = db.Column(db.Integer, db.ForeignKey('investment_plans.id', ondelete='SET NULL'), nullable=True)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id', ondelete='SET NULL'), nullable=True)
    plan_name = db.Column(db.String(100))

    amount = db.Column(db.Numeric(18, 2), nullable=False)
    daily_payout_amount = db.Column(db.Numeric(18, 2), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    next_payout_date = db.Column(db.DateTime, nullable=False)
    total_payout_received = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    payout_count = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default=PositionStatus.ACTIVE.value)
    terminated_at = db.Column(db.DateTime, nullable=True)
    termination_reason = db.Column(db.String(255), nullable=True)
    penalty_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    user = db.relationship('User', back_populates='positions')
    plan = db.relationship('InvestmentPlan')
    product = db.relationship('Product')
    payouts = db.relationship('PayoutRecord', back_populates='position', lazy='dynamic')

    __table_args__ = (
        CheckConstraint('amount > 0', name='chk_position_amount_positive'),
        Index('idx_position_user_status', 'user_id', 'status'),
        Index('idx_position_status_next_payout', 'status', 'next_payout_date'),
        Index('idx_position_end_date', 'end_date'),
    )

    @property
    def is_active(self):
        return self.status == PositionStatus.ACTIVE.value

    def to_dict(self):
        return {
            "id": self.id,
            "origin": self.origin,
            "planId": self.plan_id,
            "productId": self.product_id,
            "planName": self.plan_name,
            "amount": float(_money(self.amount)),
            "dailyPayoutAmount": float(_money(self.daily_payout_amount)),
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "nextPayoutDate": self.next_payout_date.isoformat() if self.next_payout_date else None,
            "totalPayoutReceived": float(_money(self.total_payout_received)),
            "payoutCount": self.payout_count or 0,
            "status": self.status,
            "terminatedAt": self.terminated_at.isoformat() if self.terminated_at else None,
            "terminationReason": self.termination_reason,
            "penaltyAmount": float(_money(self.penalty_amount)),
        }

    def __repr__(self):
        return f'<InvestmentPosition {self.id} {self.status} next={self.next_payout_date}>'


class PayoutRecord(db.Model):
    """Audit trail of payouts; never updated once written."""
    __tablename__ = 'payout_records'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    position_id = db.Column(db.Integer, db.ForeignKey('investment_positions.id', ondelete='CASCADE'),
                            nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    kind = db.Column(db.String(20), nullable=False)
    notes = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=db.func.now(), nullable=False)

    position = db.relationship('InvestmentPosition', back_populates='payouts')

    __table_args__ = (
        Index('idx_payout_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "positionId": self.position_id,
            "planName": self.position.plan_name if self.position else None,
            "amount": float(_money(self.amount)),
            "kind": self.kind,
            "notes": self.notes,
            "date": self.created_at.isoformat() if self.created_at else None,
        }


# ===========================================================
#   ------------BATCH RUN LOCK
# ===========================================================

class RunLock(db.Model):
    """Named lease guarding a full-batch run across processes."""
    __tablename__ = 'run_locks'

    name = db.Column(db.String(64), primary_key=True)
    holder = db.Column(db.String(64), nullable=True)
    acquired_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
