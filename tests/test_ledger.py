from datetime import timedelta

import pytest
from sqlalchemy import text

from conftest import NOW
from giveaway_system.database import SchemaCapabilities
from giveaway_system.ledger import (
    ERROR_BUYER_NOT_FOUND,
    ERROR_LIMIT_REACHED,
    ERROR_NEED_PAYWALL,
    ERROR_OFFER_NOT_FOUND,
    ERROR_SELF,
    IntroLedger,
)
from giveaway_system.repository import as_datetime


@pytest.fixture()
def ledger(engine):
    return IntroLedger(engine)


@pytest.fixture()
def market(seed):
    """A seller with a workspace and a few offers"""
    seller = seed.user(username="seller")
    workspace = seed.workspace(seller)
    return {
        "seller": seller,
        "workspace": workspace,
        "offers": [seed.offer(workspace, seller, title=f"Offer {i}") for i in range(5)],
    }


def row(engine, statement, **params):
    with engine.connect() as conn:
        return conn.execute(text(statement), params).fetchone()


def count_threads(engine, offer_id, buyer_id):
    return row(
        engine, "SELECT COUNT(*) FROM barter_threads WHERE offer_id = :o AND buyer_user_id = :b", o=offer_id, b=buyer_id
    )[0]


# ----------------------------------------------------------------------
# Business rule failures
# ----------------------------------------------------------------------

def test_unknown_offer(ledger, seed):
    result = ledger.open_thread_with_credit(999, seed.user(), now=NOW)
    assert not result.ok
    assert result.error == ERROR_OFFER_NOT_FOUND


def test_creator_cannot_open_thread_to_own_offer(ledger, market):
    result = ledger.open_thread_with_credit(market["offers"][0], market["seller"], now=NOW)
    assert not result.ok
    assert result.error == ERROR_SELF


def test_unknown_buyer(ledger, market):
    result = ledger.open_thread_with_credit(market["offers"][0], 999, now=NOW)
    assert result.error == ERROR_BUYER_NOT_FOUND


# ----------------------------------------------------------------------
# Charging
# ----------------------------------------------------------------------

def test_trial_then_paywall(engine, ledger, seed, market):
    buyer = seed.user(credits=0)
    offers = market["offers"]

    first = ledger.open_thread_with_credit(offers[0], buyer, cost=1, trial_credits=3, now=NOW)
    assert first.ok
    assert first.trial_granted
    assert first.charged
    assert first.charged_amount == 1
    assert first.balance == 2

    balances = [ledger.open_thread_with_credit(o, buyer, cost=1, trial_credits=3, now=NOW).balance for o in offers[1:3]]
    assert balances == [1, 0]

    blocked = ledger.open_thread_with_credit(offers[3], buyer, cost=1, trial_credits=3, now=NOW)
    assert not blocked.ok
    assert blocked.error == ERROR_NEED_PAYWALL
    assert blocked.balance == 0
    assert count_threads(engine, offers[3], buyer) == 0

    meta = ledger.get_intro_meta(buyer)
    assert meta["brand_trial_granted"]
    assert meta["brand_trial_granted_at"] == NOW
    assert row(engine, "SELECT brand_credits_spent FROM users WHERE id = :u", u=buyer)[0] == 3


def test_paywall_rolls_back_trial_grant(ledger, seed, market):
    buyer = seed.user(credits=0)

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, cost=2, trial_credits=1, now=NOW)

    assert result.error == ERROR_NEED_PAYWALL
    assert result.balance == 1
    assert ledger.get_intro_meta(buyer) == {
        "brand_credits": 0,
        "brand_trial_granted": False,
        "brand_trial_granted_at": None,
    }


def test_second_open_is_free_and_returns_same_thread(engine, ledger, seed, market):
    buyer = seed.user(credits=5)
    offer = market["offers"][0]

    first = ledger.open_thread_with_credit(offer, buyer, now=NOW)
    second = ledger.open_thread_with_credit(offer, buyer, now=NOW)

    assert first.charged and not second.charged
    assert second.charged_amount == 0
    assert second.thread["id"] == first.thread["id"]
    assert count_threads(engine, offer, buyer) == 1
    assert ledger.get_intro_meta(buyer)["brand_credits"] == 4
    assert ledger.get_daily_usage(buyer, NOW.date()) == 1


def test_thread_records_charge_metadata(ledger, seed, market):
    buyer = seed.user(credits=5)

    thread = ledger.open_thread_with_credit(market["offers"][0], buyer, cost=2, now=NOW).thread

    assert thread["status"] == "OPEN"
    assert thread["seller_user_id"] == market["seller"]
    assert thread["workspace_id"] == market["workspace"]
    assert thread["intro_cost"] == 2
    assert thread["intro_charge_source"] == "CREDITS"
    assert thread["intro_charged_at"] == NOW


def test_non_positive_cost_charges_one(ledger, seed, market):
    buyer = seed.user(credits=3)
    result = ledger.open_thread_with_credit(market["offers"][0], buyer, cost=0, now=NOW)
    assert result.charged_amount == 1
    assert result.balance == 2


def test_concurrent_insert_is_reread_without_charge(engine, ledger, seed, market, monkeypatch):
    buyer = seed.user(credits=5)
    offer = market["offers"][0]
    existing = seed.thread(offer, buyer, market["seller"])

    # The idempotency read misses, as if another transaction inserted right after it
    lookups = []

    def racing_find_thread(conn, offer_id, buyer_user_id):
        lookups.append(offer_id)
        if len(lookups) == 1:
            return None
        return IntroLedger._find_thread(conn, offer_id, buyer_user_id)

    monkeypatch.setattr(ledger, "_find_thread", racing_find_thread)
    result = ledger.open_thread_with_credit(offer, buyer, now=NOW)

    assert result.ok
    assert not result.charged
    assert result.thread["id"] == existing
    assert ledger.get_intro_meta(buyer)["brand_credits"] == 5
    assert ledger.get_daily_usage(buyer, NOW.date()) == 0
    assert count_threads(engine, offer, buyer) == 1


# ----------------------------------------------------------------------
# Retry credits
# ----------------------------------------------------------------------

def make_retry_credits(seed, market, buyer, expiries):
    """One credit per expiry, each sourced from its own old thread"""
    credit_ids = []
    for i, expires_at in enumerate(expiries):
        source_offer = seed.offer(market["workspace"], market["seller"], title=f"Old offer {i}")
        source_thread = seed.thread(source_offer, buyer, market["seller"])
        credit_ids.append(seed.retry_credit(buyer, source_thread, expires_at))
    return credit_ids


def test_retry_credit_used_before_balance_oldest_expiry_first(engine, ledger, seed, market):
    buyer = seed.user(credits=0, trial_granted=True)
    expired, later, sooner = make_retry_credits(
        seed, market, buyer, [NOW - timedelta(hours=1), NOW + timedelta(days=3), NOW + timedelta(days=1)]
    )

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, retry_enabled=True, now=NOW)

    assert result.ok
    assert result.retry_used
    assert not result.charged
    assert result.charged_amount == 0
    assert result.balance == 0
    assert result.thread["intro_charge_source"] == "RETRY"

    redeemed = row(engine, "SELECT status, redeemed_thread_id, redeemed_at FROM brand_retry_credits WHERE id = :c",
                   c=sooner)
    assert redeemed.status == "REDEEMED"
    assert redeemed.redeemed_thread_id == result.thread["id"]
    assert as_datetime(redeemed.redeemed_at) == NOW
    assert row(engine, "SELECT status FROM brand_retry_credits WHERE id = :c", c=later)[0] == "AVAILABLE"
    assert row(engine, "SELECT status FROM brand_retry_credits WHERE id = :c", c=expired)[0] == "AVAILABLE"
    assert ledger.count_available_retry_credits(buyer, NOW) == 1
    assert ledger.get_daily_usage(buyer, NOW.date()) == 1


def test_retry_credits_ignored_when_disabled(ledger, seed, market):
    buyer = seed.user(credits=0, trial_granted=True)
    make_retry_credits(seed, market, buyer, [NOW + timedelta(days=1)])

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, retry_enabled=False, now=NOW)

    assert result.error == ERROR_NEED_PAYWALL


def test_retry_credits_ignored_without_schema_support(engine, seed, market):
    buyer = seed.user(credits=1, trial_granted=True)
    make_retry_credits(seed, market, buyer, [NOW + timedelta(days=1)])
    ledger = IntroLedger(engine, SchemaCapabilities(retry_credits=False))

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, retry_enabled=True, now=NOW)

    assert result.charged
    assert not result.retry_used
    assert ledger.count_available_retry_credits(buyer, NOW) == 0


# ----------------------------------------------------------------------
# Daily limit
# ----------------------------------------------------------------------

def test_daily_limit_blocks_third_open(ledger, seed, market):
    buyer = seed.user(credits=10)
    offers = market["offers"]

    for offer in offers[:2]:
        assert ledger.open_thread_with_credit(offer, buyer, daily_limit=2, now=NOW).ok

    blocked = ledger.open_thread_with_credit(offers[2], buyer, daily_limit=2, now=NOW)
    assert not blocked.ok
    assert blocked.error == ERROR_LIMIT_REACHED
    assert blocked.daily_used == 2
    assert blocked.daily_limit == 2
    assert ledger.get_intro_meta(buyer)["brand_credits"] == 8

    tomorrow = ledger.open_thread_with_credit(offers[2], buyer, daily_limit=2, now=NOW + timedelta(days=1))
    assert tomorrow.ok
    assert tomorrow.daily_used == 1


# ----------------------------------------------------------------------
# Non-paying buyers
# ----------------------------------------------------------------------

def test_workspace_owner_opens_for_free(engine, ledger, seed, market):
    buyer = seed.user(credits=0)
    seed.workspace(buyer)

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, daily_limit=1, now=NOW)

    assert result.ok
    assert not result.charged
    assert result.balance is None
    assert result.thread["intro_charge_source"] is None
    assert ledger.get_daily_usage(buyer, NOW.date()) == 0


def test_force_brand_charges_workspace_owner(ledger, seed, market):
    buyer = seed.user(credits=1)
    seed.workspace(buyer)

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, force_brand=True, now=NOW)

    assert result.charged
    assert result.balance == 0


def test_open_without_intro_columns_still_charges(engine, seed, market):
    buyer = seed.user(credits=2)
    ledger = IntroLedger(engine, SchemaCapabilities(intro_columns=False, retry_credits=False))

    result = ledger.open_thread_with_credit(market["offers"][0], buyer, now=NOW)

    assert result.charged
    assert result.balance == 1
    assert result.thread["intro_charge_source"] is None


# ----------------------------------------------------------------------
# Thread lifecycle and credits
# ----------------------------------------------------------------------

def test_record_message_stamps_first_buyer_message_and_first_reply(engine, ledger, seed, market):
    buyer = seed.user(credits=1)
    thread_id = ledger.open_thread_with_credit(market["offers"][0], buyer, now=NOW).thread["id"]

    assert ledger.record_message(thread_id, buyer, now=NOW + timedelta(minutes=1))
    ledger.record_message(thread_id, buyer, now=NOW + timedelta(minutes=2))
    ledger.record_message(thread_id, market["seller"], now=NOW + timedelta(minutes=3))

    stamps = row(
        engine,
        "SELECT buyer_first_msg_at, seller_first_reply_at, last_message_at FROM barter_threads WHERE id = :t",
        t=thread_id,
    )
    assert as_datetime(stamps.buyer_first_msg_at) == NOW + timedelta(minutes=1)
    assert as_datetime(stamps.seller_first_reply_at) == NOW + timedelta(minutes=3)
    assert as_datetime(stamps.last_message_at) == NOW + timedelta(minutes=3)
    assert not ledger.record_message(999, buyer, now=NOW)


def test_close_thread_requires_participant(ledger, seed, market):
    buyer = seed.user(credits=1)
    thread_id = ledger.open_thread_with_credit(market["offers"][0], buyer, now=NOW).thread["id"]

    assert ledger.close_thread(thread_id, seed.user(), now=NOW) is None
    closed = ledger.close_thread(thread_id, market["seller"], now=NOW)
    assert closed["status"] == "CLOSED"


def test_add_credits(ledger, seed):
    buyer = seed.user(credits=1)
    assert ledger.add_credits(buyer, 10, now=NOW) == 11
    assert ledger.add_credits(999, 10, now=NOW) is None
