"""
Shared fixtures: an application on in-memory SQLite, a recording notifier,
and small factories for users, plans and funded accounts.
"""
from datetime import datetime
from decimal import Decimal

import pytest
from flask import g

from app import create_app
from config import TestConfig
from extensions import db as _db
from models import User, InvestmentPlan, Product, LedgerAccount
from accrual.config import AccrualConfig
from accrual.ledger import credit_deposit, LedgerManager
from accrual.notifications import RecordingNotifier
from accrual.positions import create_position

NOW = datetime(2025, 1, 1, 12, 0, 0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(notifier):
    app = create_app(TestConfig, notifier=notifier)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def config():
    return AccrualConfig()


class Factory:
    def __init__(self, notifier):
        self.notifier = notifier
        self._seq = 0

    def user(self, role="user", verified=True, referred_by=None, balance=None, name=None):
        self._seq += 1
        user = User(
            email=f"user{self._seq}@example.com",
            name=name or f"User {self._seq}",
            role=role,
            is_verified=verified,
            referred_by=referred_by.id if referred_by is not None else None,
        )
        _db.session.add(user)
        _db.session.flush()
        _db.session.add(LedgerAccount(user_id=user.id))
        _db.session.commit()
        if balance:
            self.deposit(user, balance)
        return user

    def deposit(self, user, amount, reference=None):
        self._seq += 1
        reference = reference or f"DEP-{user.id}-{self._seq}"
        return credit_deposit(user.id, amount, reference, now=NOW, notifier=self.notifier)

    def plan(self, name=None, daily_payout="2", is_percentage=True, duration_days=30,
             min_amount="10", max_amount="100000", status="active"):
        self._seq += 1
        plan = InvestmentPlan(
            name=name or f"Plan {self._seq}",
            min_amount=Decimal(min_amount),
            max_amount=Decimal(max_amount),
            is_percentage=is_percentage,
            daily_payout=Decimal(daily_payout),
            duration_days=duration_days,
            status=status,
        )
        _db.session.add(plan)
        _db.session.commit()
        return plan

    def product(self, name=None, roi_percent="12", duration_days=None, min_amount="0", max_amount=None):
        self._seq += 1
        product = Product(
            name=name or f"Product {self._seq}",
            roi_percent=Decimal(roi_percent),
            duration_days=duration_days,
            min_amount=Decimal(min_amount),
            max_amount=Decimal(max_amount) if max_amount is not None else None,
            status="active",
        )
        _db.session.add(product)
        _db.session.commit()
        return product

    def position(self, user, plan, amount, config=None, now=NOW):
        return create_position(user.id, amount, config or AccrualConfig(), plan_id=plan.id,
                               now=now, notifier=self.notifier)

    @staticmethod
    def account(user):
        account = LedgerManager.get_account(user.id)
        _db.session.refresh(account)
        return account


@pytest.fixture
def factory(app, notifier):
    return Factory(notifier)


def login(client, user):
    # Requests share the fixture's app context, so drop the user cached on g
    g.pop("_login_user", None)
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user.id)
        sess["_fresh"] = True
