"""
Unit tests for expense splitting, balances and settlements.
"""
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app import (
    split_equally, compute_balances, compute_settlements, expense_shares, is_equal_split, parse_custom_shares,
    to_money,
)

D = Decimal


def expense(paid_by, amount, shares, currency="USD"):
    return SimpleNamespace(
        paid_by=paid_by,
        amount=D(amount),
        currency=currency,
        participants=[SimpleNamespace(user_id=u, share_amount=None if s is None else D(s)) for u, s in shares],
    )


def apply(settlements, balances):
    remaining = dict(balances)
    for s in settlements:
        remaining[s["from"]] += s["amount"]
        remaining[s["to"]] -= s["amount"]
    return remaining


# ─────────────────────────── SPLITTING ───────────────────────────


def test_to_money_rounds_half_up():
    assert to_money("10.005") == D("10.01")
    assert to_money(2.675) == D("2.68")
    with pytest.raises(ValueError):
        to_money("ten")


def test_split_equally_exact():
    assert split_equally(D("30.00"), ["a", "b", "c"]) == [("a", D("10.00")), ("b", D("10.00")), ("c", D("10.00"))]


def test_split_equally_puts_remainder_on_last():
    shares = split_equally(D("10.00"), ["a", "b", "c"])
    assert shares == [("a", D("3.33")), ("b", D("3.33")), ("c", D("3.34"))]
    assert sum(s for _, s in shares) == D("10.00")


def test_split_equally_needs_someone():
    with pytest.raises(ValueError):
        split_equally(D("10.00"), [])


def test_custom_shares_must_add_up():
    form = {"share-a": "7.50", "share-b": "2.50"}
    assert parse_custom_shares(form, ["a", "b"], "10") == [("a", D("7.50")), ("b", D("2.50"))]

    with pytest.raises(ValueError, match="add up"):
        parse_custom_shares({"share-a": "7.50", "share-b": "2.00"}, ["a", "b"], "10")
    with pytest.raises(ValueError, match="every participant"):
        parse_custom_shares({"share-a": "10"}, ["a", "b"], "10")
    with pytest.raises(ValueError, match="negative"):
        parse_custom_shares({"share-a": "12", "share-b": "-2"}, ["a", "b"], "10")


def test_null_shares_split_the_remainder():
    e = expense("a", "30.00", [("a", "10.00"), ("b", None), ("c", None)])
    assert expense_shares(e) == [("a", D("10.00")), ("b", D("10.00")), ("c", D("10.00"))]


def test_equal_split_detected_whoever_holds_the_remainder():
    assert is_equal_split(expense("a", "25.01", [("a", "12.51"), ("b", "12.50")]))
    assert is_equal_split(expense("a", "25.01", [("a", "12.50"), ("b", "12.51")]))
    assert not is_equal_split(expense("a", "25.01", [("a", "10.00"), ("b", "15.01")]))


# ─────────────────────────── BALANCES ───────────────────────────


def test_balances_credit_payer_and_debit_participants():
    balances = compute_balances([
        expense("a", "30.00", [("a", "10.00"), ("b", "10.00"), ("c", "10.00")]),
        expense("b", "12.00", [("a", "6.00"), ("b", "6.00")]),
    ])
    assert balances == {"USD": {"a": D("14.00"), "b": D("-4.00"), "c": D("-10.00")}}


def test_balances_sum_to_zero_per_currency():
    balances = compute_balances([
        expense("a", "10.00", list(zip("abc", ["3.33", "3.33", "3.34"]))),
        expense("b", "99.99", [("a", "33.33"), ("c", "66.66")], currency="EUR"),
        expense("c", "1.00", [("a", None), ("b", None), ("c", None)]),
    ])
    assert set(balances) == {"USD", "EUR"}
    for bucket in balances.values():
        assert sum(bucket.values()) == D("0.00")


def test_expense_without_participants_is_borne_by_payer():
    balances = compute_balances([expense("a", "50.00", [])])
    assert balances == {"USD": {"a": D("0.00")}}


# ─────────────────────────── SETTLEMENTS ───────────────────────────


def test_settlements_greedy_largest_first():
    balances = {"a": D("14.00"), "b": D("-4.00"), "c": D("-10.00")}
    settlements = compute_settlements(balances)
    assert settlements == [
        {"from": "c", "to": "a", "amount": D("10.00")},
        {"from": "b", "to": "a", "amount": D("4.00")},
    ]


def test_settlements_zero_every_balance():
    balances = {"a": D("25.50"), "b": D("-10.25"), "c": D("4.75"), "d": D("-20.00")}
    settlements = compute_settlements(balances)
    assert all(s["amount"] > 0 for s in settlements)
    assert all(v == 0 for v in apply(settlements, balances).values())
    assert len(settlements) <= len(balances) - 1


def test_settled_balances_need_no_transfers():
    assert compute_settlements({"a": D("0.00"), "b": D("0.00")}) == []
