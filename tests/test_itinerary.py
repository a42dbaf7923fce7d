"""
Tests for itinerary items and time conflict detection.
"""
from datetime import date
from types import SimpleNamespace

from app import find_conflicts, items_conflict
from conftest import app, db, ItineraryItem, Expense, create_item, create_expense, sign_in, t


def item(title, day=date(2026, 5, 2), start=None, end=None):
    return SimpleNamespace(id=title, title=title, activity_date=day,
                           start_time=t(start) if start else None,
                           end_time=t(end) if end else None)


# ─────────────────────────── CONFLICTS ───────────────────────────


def test_overlapping_ranges_conflict():
    assert items_conflict(item("a", start="09:00", end="11:00"), item("b", start="10:30", end="12:00"))


def test_adjacent_ranges_do_not_conflict():
    assert not items_conflict(item("a", start="09:00", end="10:00"), item("b", start="10:00", end="11:00"))


def test_different_days_do_not_conflict():
    assert not items_conflict(item("a", start="09:00", end="11:00"),
                              item("b", day=date(2026, 5, 3), start="09:00", end="11:00"))


def test_instant_inside_range_conflicts():
    assert items_conflict(item("a", start="09:00", end="11:00"), item("b", start="10:00"))
    assert not items_conflict(item("a", start="09:00", end="11:00"), item("b", start="11:00"))


def test_same_start_instants_conflict():
    assert items_conflict(item("a", start="09:00"), item("b", start="09:00"))


def test_untimed_items_never_conflict():
    assert not items_conflict(item("a"), item("b", start="09:00", end="18:00"))


def test_find_conflicts_returns_pairs_in_time_order():
    items = [
        item("dinner", start="19:00", end="21:00"),
        item("museum", start="10:00", end="12:00"),
        item("lunch", start="11:30", end="13:00"),
        item("walk"),
        item("show", start="20:30"),
    ]
    pairs = [(a.title, b.title) for a, b in find_conflicts(items)]
    assert pairs == [("museum", "lunch"), ("dinner", "show")]


# ─────────────────────────── ROUTES ───────────────────────────


def test_member_adds_itinerary_item(client, trip, bob):
    sign_in(client, "bob@example.com")
    resp = client.post(f"/trips/{trip}/itinerary/new", data={
        "title": "Belem Tower",
        "activity_date": "2026-05-02",
        "start_time": "10:00",
        "end_time": "12:00",
        "location": "Belem",
        "estimated_cost": "8.50",
    })
    assert resp.status_code == 302
    with app.app_context():
        saved = ItineraryItem.query.one()
        assert saved.created_by == bob
        assert saved.start_time == t("10:00")
        assert saved.end_time == t("12:00")
        assert str(saved.estimated_cost) == "8.50"


def test_item_date_must_be_inside_trip(client, trip):
    sign_in(client, "alice@example.com")
    resp = client.post(f"/trips/{trip}/itinerary/new", data={
        "title": "Too late",
        "activity_date": "2026-06-01",
    })
    assert resp.status_code == 200
    assert b"cannot be after the trip" in resp.data
    with app.app_context():
        assert ItineraryItem.query.count() == 0


def test_item_end_time_after_start(client, trip):
    sign_in(client, "alice@example.com")
    resp = client.post(f"/trips/{trip}/itinerary/new", data={
        "title": "Backwards",
        "activity_date": "2026-05-02",
        "start_time": "12:00",
        "end_time": "10:00",
    })
    assert resp.status_code == 200
    assert b"End time cannot be before the start time." in resp.data


def test_item_rejects_negative_cost(client, trip):
    sign_in(client, "alice@example.com")
    resp = client.post(f"/trips/{trip}/itinerary/new", data={
        "title": "Refund?",
        "activity_date": "2026-05-02",
        "estimated_cost": "-5",
    })
    assert resp.status_code == 200
    assert b"Cost cannot be negative." in resp.data


def test_conflicting_item_is_saved_with_warning(client, trip, alice):
    create_item(trip, alice, "Lunch", date(2026, 5, 2), t("12:00"), t("13:30"))
    sign_in(client, "alice@example.com")
    resp = client.post(f"/trips/{trip}/itinerary/new", data={
        "title": "Museum",
        "activity_date": "2026-05-02",
        "start_time": "13:00",
        "end_time": "15:00",
    }, follow_redirects=True)
    assert resp.status_code == 200
    assert b"overlaps with" in resp.data
    with app.app_context():
        assert ItineraryItem.query.count() == 2


def test_non_member_cannot_add_item(client, trip, carol):
    sign_in(client, "carol@example.com")
    resp = client.post(f"/trips/{trip}/itinerary/new", data={
        "title": "Crash the party",
        "activity_date": "2026-05-02",
    })
    assert resp.status_code == 403


def test_edit_item_by_creator_or_owner_only(client, trip, alice, bob):
    item_id = create_item(trip, alice, "Fado night", date(2026, 5, 3), t("21:00"))

    sign_in(client, "bob@example.com")
    assert client.get(f"/itinerary/{item_id}/edit").status_code == 403
    client.post("/auth/signout")

    sign_in(client, "alice@example.com")
    page = client.get(f"/itinerary/{item_id}/edit")
    assert page.status_code == 200
    assert b"21:00" in page.data
    resp = client.post(f"/itinerary/{item_id}/edit", data={
        "title": "Fado night",
        "activity_date": "2026-05-04",
        "start_time": "21:30",
        "end_time": "",
    })
    assert resp.status_code == 302
    with app.app_context():
        saved = db.session.get(ItineraryItem, item_id)
        assert saved.activity_date == date(2026, 5, 4)
        assert saved.start_time == t("21:30")


def test_delete_item_unlinks_expenses(client, trip, alice, bob):
    item_id = create_item(trip, alice, "Boat tour", date(2026, 5, 2))
    expense_id = create_expense(trip, alice, "40.00", [(alice, "20.00"), (bob, "20.00")],
                                itinerary_item_id=item_id)
    sign_in(client, "alice@example.com")
    resp = client.post(f"/itinerary/{item_id}/delete")
    assert resp.status_code == 302
    with app.app_context():
        assert db.session.get(ItineraryItem, item_id) is None
        assert db.session.get(Expense, expense_id).itinerary_item_id is None


def test_removed_member_cannot_change_their_items(client, trip, alice, bob):
    item_id = create_item(trip, bob, "Surf lesson", date(2026, 5, 3), t("08:00"), t("10:00"))
    sign_in(client, "alice@example.com")
    client.post(f"/trips/{trip}/members/{bob}/remove")
    client.post("/auth/signout")

    sign_in(client, "bob@example.com")
    assert client.get(f"/itinerary/{item_id}/edit").status_code == 403
    assert client.post(f"/itinerary/{item_id}/edit", data={
        "title": "Surf lesson",
        "activity_date": "2026-05-03",
    }).status_code == 403
    assert client.post(f"/itinerary/{item_id}/delete").status_code == 403
    with app.app_context():
        assert db.session.get(ItineraryItem, item_id) is not None
