"""
Shared pytest fixtures and helpers for TravelMate tests.

This module provides:
- An in-memory database, rebuilt for every test
- A Flask test client with CSRF disabled
- Factories for users, trips, itinerary items and expenses
- A sign-in helper that goes through the real /auth form
"""
import os
import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

# ─────────────────────────── ENVIRONMENT ───────────────────────────

TEST_ROOT = Path(__file__).resolve().parent

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WTF_CSRF_ENABLED"] = "0"
os.environ["SECRET_KEY"] = "test-secret"
os.environ.setdefault("LOG_LEVEL", "WARNING")

sys.path.insert(0, str(TEST_ROOT.parent))

from app import (  # noqa: E402
    app, db, User, Profile, Trip, TripMember, ItineraryItem, Expense, ExpenseParticipant,
    ROLE_OWNER, ROLE_MEMBER,
)

PASSWORD = "Passw0rd!"

# ─────────────────────────── FIXTURES ───────────────────────────


@pytest.fixture
def client():
    """Test client backed by a fresh schema."""
    app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app.test_client()
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def alice(client):
    return create_user("alice@example.com", "alice", "Alice Adams")


@pytest.fixture
def bob(client):
    return create_user("bob@example.com", "bob", "Bob Brown")


@pytest.fixture
def carol(client):
    return create_user("carol@example.com", "carol", "Carol Chen")


@pytest.fixture
def trip(alice, bob):
    """A May trip owned by Alice with Bob as a member."""
    return create_trip(alice, "Lisbon Weekend", start_date=date(2026, 5, 1),
                       end_date=date(2026, 5, 5), members=[bob])


# ─────────────────────────── FACTORIES ───────────────────────────


def create_user(email, username, full_name, password=PASSWORD):
    """Create a user with a profile and return the user id."""
    with app.app_context():
        user = User(email=email)
        user.set_password(password)
        user.profile = Profile(username=username, full_name=full_name, email=email)
        db.session.add(user)
        db.session.commit()
        return user.id


def create_trip(owner_id, title, start_date=None, end_date=None, members=(), created_at=None):
    """Create a trip owned by owner_id with optional extra members; return its id."""
    with app.app_context():
        trip = Trip(title=title, start_date=start_date, end_date=end_date, created_by=owner_id)
        if created_at is not None:
            trip.created_at = created_at
        trip.generate_share_token()
        db.session.add(trip)
        db.session.flush()
        db.session.add(TripMember(trip_id=trip.id, user_id=owner_id, role=ROLE_OWNER))
        for user_id in members:
            db.session.add(TripMember(trip_id=trip.id, user_id=user_id, role=ROLE_MEMBER))
        db.session.commit()
        return trip.id


def create_item(trip_id, created_by, title, activity_date, start=None, end=None):
    with app.app_context():
        item = ItineraryItem(trip_id=trip_id, created_by=created_by, title=title,
                             activity_date=activity_date, start_time=start, end_time=end)
        db.session.add(item)
        db.session.commit()
        return item.id


def create_expense(trip_id, paid_by, amount, shares, currency="USD", title="Dinner", itinerary_item_id=None):
    """Create an expense with explicit (user_id, share) pairs; return its id."""
    with app.app_context():
        expense = Expense(trip_id=trip_id, paid_by=paid_by, amount=Decimal(amount), currency=currency,
                          title=title, expense_date=date(2026, 5, 2), itinerary_item_id=itinerary_item_id)
        for user_id, share in shares:
            expense.participants.append(ExpenseParticipant(
                user_id=user_id, share_amount=None if share is None else Decimal(share)))
        db.session.add(expense)
        db.session.commit()
        return expense.id


# ─────────────────────────── HELPERS ───────────────────────────


def sign_in(client, email, password=PASSWORD, next_page=None):
    url = "/auth" if next_page is None else f"/auth?next={next_page}"
    return client.post(url, data={
        "signin-email": email,
        "signin-password": password,
        "signin-submit": "Sign In",
    })


def t(value):
    """Parse HH:MM into a time."""
    return datetime.strptime(value, "%H:%M").time()


