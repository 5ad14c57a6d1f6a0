"""
Intro Ledger
Charges paying buyers for the first contact thread they open with an offer

A buyer pays once per (offer, buyer) pair: with a fairness retry credit if
they hold one, otherwise from their credit balance, topped up once by a trial
grant. Workspace owners open threads for free. Every open runs in a single
transaction; only the buyer's users row and daily usage row are locked.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Date, DateTime, text

from utils.db_context import db_transaction, for_update_clause

from .database import SchemaCapabilities
from .repository import as_datetime, sql, utc_now

logger = logging.getLogger(__name__)

# Business outcomes returned in OpenThreadResult.error
ERROR_OFFER_NOT_FOUND = "offer_not_found"
ERROR_BUYER_NOT_FOUND = "buyer_not_found"
ERROR_SELF = "self"
ERROR_NEED_PAYWALL = "need_paywall"
ERROR_LIMIT_REACHED = "limit_reached"

CHARGE_CREDITS = "CREDITS"
CHARGE_RETRY = "RETRY"

_THREAD_TIMESTAMPS = (
    "last_message_at",
    "intro_charged_at",
    "buyer_first_msg_at",
    "seller_first_reply_at",
    "retry_issued_at",
    "created_at",
    "updated_at",
)


@dataclass
class OpenThreadResult:
    """Outcome of open_thread_with_credit(); error is set only when ok is False"""

    ok: bool
    error: Optional[str] = None
    thread: Optional[dict] = None
    charged: bool = False
    charged_amount: int = 0
    retry_used: bool = False
    balance: Optional[int] = None
    trial_granted: bool = False
    daily_used: Optional[int] = None
    daily_limit: Optional[int] = None


def _positive_int(value, default):
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _thread_row(row):
    data = dict(row._mapping)
    for key in _THREAD_TIMESTAMPS:
        if key in data:
            data[key] = as_datetime(data[key])
    return data


class IntroLedger:
    """Contact threads, brand credits, daily intro usage and retry credit redemption"""

    def __init__(self, engine, capabilities=None):
        self.engine = engine
        self.capabilities = capabilities or SchemaCapabilities()

    def open_thread_with_credit(self, offer_id, buyer_user_id, cost=1, trial_credits=0, daily_limit=None,
                                force_brand=False, retry_enabled=False, now=None):
        """
        Open (or return) the contact thread between a buyer and an offer, charging once

        Args:
            offer_id: Offer to contact
            buyer_user_id: User opening the thread
            cost: Credits per intro (non-positive values mean 1)
            trial_credits: One-time trial grant for buyers short on credits
            daily_limit: Max paid intros per buyer per UTC day (None/0 disables)
            force_brand: Charge the buyer even if they own a workspace
            retry_enabled: Spend an available retry credit before the balance
            now: Transaction time (defaults to utcnow)

        Returns:
            OpenThreadResult
        """
        now = now or utc_now()
        cost = _positive_int(cost, 1)
        trial_credits = _positive_int(trial_credits, 0)
        limit = _positive_int(daily_limit, None)
        retry_enabled = bool(retry_enabled) and self.capabilities.retry_credits

        with db_transaction(self.engine) as (conn, trans):
            offer = conn.execute(
                text("SELECT id, workspace_id, creator_user_id FROM barter_offers WHERE id = :offer_id"),
                {"offer_id": offer_id},
            ).fetchone()
            if not offer:
                trans.rollback()
                return OpenThreadResult(ok=False, error=ERROR_OFFER_NOT_FOUND)

            if int(offer.creator_user_id) == int(buyer_user_id):
                trans.rollback()
                return OpenThreadResult(ok=False, error=ERROR_SELF)

            existing = self._find_thread(conn, offer_id, buyer_user_id)
            if existing:
                return OpenThreadResult(ok=True, thread=existing)

            buyer = conn.execute(
                text(
                    "SELECT id, brand_credits, brand_trial_granted FROM users WHERE id = :uid"
                    + for_update_clause(conn)
                ),
                {"uid": buyer_user_id},
            ).fetchone()
            if not buyer:
                trans.rollback()
                return OpenThreadResult(ok=False, error=ERROR_BUYER_NOT_FOUND)

            paying = bool(force_brand) or not self._owns_workspace(conn, buyer_user_id)
            if not paying:
                thread = self._insert_thread(conn, offer, buyer_user_id, now)
                if thread is None:
                    return OpenThreadResult(ok=True, thread=self._find_thread(conn, offer_id, buyer_user_id))
                logger.info(f"Opened free thread #{thread['id']} (offer #{offer_id}, buyer #{buyer_user_id})")
                return OpenThreadResult(ok=True, thread=thread)

            balance = int(buyer.brand_credits or 0)
            trial_granted = False
            daily_used = None

            if limit:
                usage = conn.execute(
                    sql(
                        "SELECT used_count FROM intro_daily_usage WHERE user_id = :uid AND day = :day"
                        + for_update_clause(conn),
                        day=Date,
                    ),
                    {"uid": buyer_user_id, "day": now.date()},
                ).fetchone()
                daily_used = int(usage.used_count) if usage else 0
                if daily_used >= limit:
                    trans.rollback()
                    return OpenThreadResult(
                        ok=False, error=ERROR_LIMIT_REACHED, daily_used=daily_used, daily_limit=limit
                    )

            retry_id = self._take_retry_credit(conn, buyer_user_id, now) if retry_enabled else None

            if retry_id is None and balance < cost:
                if not buyer.brand_trial_granted and trial_credits > 0:
                    balance = self._grant_trial(conn, buyer_user_id, trial_credits, now)
                    trial_granted = True
                if balance < cost:
                    trans.rollback()
                    return OpenThreadResult(ok=False, error=ERROR_NEED_PAYWALL, balance=balance, daily_limit=limit)

            charge_source = CHARGE_RETRY if retry_id is not None else CHARGE_CREDITS
            thread = self._insert_thread(conn, offer, buyer_user_id, now, cost=cost, charge_source=charge_source)

            if thread is None:
                # Lost the race to a concurrent open of the same pair
                logger.info(f"Thread for offer #{offer_id}/buyer #{buyer_user_id} created concurrently, not charging")
                return OpenThreadResult(
                    ok=True,
                    thread=self._find_thread(conn, offer_id, buyer_user_id),
                    balance=balance,
                    trial_granted=trial_granted,
                    daily_used=daily_used,
                    daily_limit=limit,
                )

            if retry_id is not None:
                conn.execute(
                    sql(
                        """
                        UPDATE brand_retry_credits
                        SET status = 'REDEEMED', redeemed_at = :now, redeemed_thread_id = :thread_id
                        WHERE id = :retry_id AND status = 'AVAILABLE'
                        """,
                        now=DateTime,
                    ),
                    {"retry_id": retry_id, "thread_id": thread["id"], "now": now},
                )
            else:
                # Clamp at zero (SQLite has no GREATEST)
                balance = int(
                    conn.execute(
                        sql(
                            """
                            UPDATE users
                            SET brand_credits = CASE WHEN brand_credits - :cost < 0 THEN 0
                                                     ELSE brand_credits - :cost END,
                                brand_credits_spent = brand_credits_spent + :cost,
                                updated_at = :now
                            WHERE id = :uid
                            RETURNING brand_credits
                            """,
                            now=DateTime,
                        ),
                        {"uid": buyer_user_id, "cost": cost, "now": now},
                    ).scalar()
                    or 0
                )

            # Retry-funded intros count toward the daily cap too
            daily_used = int(
                conn.execute(
                    sql(
                        """
                        INSERT INTO intro_daily_usage (user_id, day, used_count, updated_at)
                        VALUES (:uid, :day, 1, :now)
                        ON CONFLICT (user_id, day)
                        DO UPDATE SET used_count = intro_daily_usage.used_count + 1, updated_at = :now
                        RETURNING used_count
                        """,
                        day=Date,
                        now=DateTime,
                    ),
                    {"uid": buyer_user_id, "day": now.date(), "now": now},
                ).scalar()
            )

        retry_used = retry_id is not None
        logger.info(
            f"💳 Opened thread #{thread['id']} (offer #{offer_id}, buyer #{buyer_user_id}) "
            f"source={charge_source} balance={balance} daily={daily_used}"
        )
        return OpenThreadResult(
            ok=True,
            thread=thread,
            charged=not retry_used,
            charged_amount=0 if retry_used else cost,
            retry_used=retry_used,
            balance=balance,
            trial_granted=trial_granted,
            daily_used=daily_used,
            daily_limit=limit,
        )

    # ------------------------------------------------------------------
    # Transaction steps
    # ------------------------------------------------------------------

    @staticmethod
    def _find_thread(conn, offer_id, buyer_user_id):
        row = conn.execute(
            text("SELECT * FROM barter_threads WHERE offer_id = :offer_id AND buyer_user_id = :uid"),
            {"offer_id": offer_id, "uid": buyer_user_id},
        ).fetchone()
        return _thread_row(row) if row else None

    @staticmethod
    def _owns_workspace(conn, user_id):
        row = conn.execute(
            text("SELECT 1 FROM workspaces WHERE owner_user_id = :uid LIMIT 1"), {"uid": user_id}
        ).fetchone()
        return row is not None

    def _take_retry_credit(self, conn, user_id, now):
        """Lock the buyer's available retry credit that expires first"""
        row = conn.execute(
            sql(
                """
                SELECT id FROM brand_retry_credits
                WHERE user_id = :uid AND status = 'AVAILABLE' AND expires_at > :now
                ORDER BY expires_at ASC, id ASC
                LIMIT 1
                """
                + for_update_clause(conn),
                now=DateTime,
            ),
            {"uid": user_id, "now": now},
        ).fetchone()
        return int(row.id) if row else None

    @staticmethod
    def _grant_trial(conn, user_id, trial_credits, now):
        """One-time trial top-up, guarded by brand_trial_granted"""
        balance = conn.execute(
            sql(
                """
                UPDATE users
                SET brand_credits = brand_credits + :trial,
                    brand_trial_granted = TRUE,
                    brand_trial_granted_at = :now,
                    updated_at = :now
                WHERE id = :uid
                RETURNING brand_credits
                """,
                now=DateTime,
            ),
            {"uid": user_id, "trial": trial_credits, "now": now},
        ).scalar()
        logger.info(f"🎁 Granted {trial_credits} trial credits to user #{user_id}")
        return int(balance or 0)

    def _insert_thread(self, conn, offer, buyer_user_id, now, cost=None, charge_source=None):
        """Insert the OPEN thread; returns None when the (offer, buyer) pair already exists"""
        params = {
            "offer_id": offer.id,
            "workspace_id": offer.workspace_id,
            "uid": buyer_user_id,
            "seller": offer.creator_user_id,
            "now": now,
        }
        if charge_source and self.capabilities.intro_columns:
            statement = """
                INSERT INTO barter_threads (offer_id, workspace_id, buyer_user_id, seller_user_id, status,
                                            last_message_at, intro_cost, intro_charge_source, intro_charged_at,
                                            created_at, updated_at)
                VALUES (:offer_id, :workspace_id, :uid, :seller, 'OPEN', :now, :cost, :source, :now, :now, :now)
                ON CONFLICT (offer_id, buyer_user_id) DO NOTHING
                RETURNING *
            """
            params.update({"cost": cost, "source": charge_source})
        else:
            statement = """
                INSERT INTO barter_threads (offer_id, workspace_id, buyer_user_id, seller_user_id, status,
                                            last_message_at, created_at, updated_at)
                VALUES (:offer_id, :workspace_id, :uid, :seller, 'OPEN', :now, :now, :now)
                ON CONFLICT (offer_id, buyer_user_id) DO NOTHING
                RETURNING *
            """
        row = conn.execute(sql(statement, now=DateTime), params).fetchone()
        return _thread_row(row) if row else None

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def record_message(self, thread_id, sender_user_id, now=None):
        """
        Note a message in a thread, stamping the buyer's first message and the
        seller's first reply (these drive retry credit issuance)

        Returns:
            bool: True if the thread exists
        """
        now = now or utc_now()
        if self.capabilities.intro_columns:
            statement = """
                UPDATE barter_threads
                SET last_message_at = :now,
                    updated_at = :now,
                    buyer_first_msg_at = CASE WHEN buyer_first_msg_at IS NULL AND buyer_user_id = :uid
                                              THEN :now ELSE buyer_first_msg_at END,
                    seller_first_reply_at = CASE WHEN seller_first_reply_at IS NULL AND seller_user_id = :uid
                                                 THEN :now ELSE seller_first_reply_at END
                WHERE id = :thread_id
            """
        else:
            statement = "UPDATE barter_threads SET last_message_at = :now, updated_at = :now WHERE id = :thread_id"
        with self.engine.begin() as conn:
            result = conn.execute(sql(statement, now=DateTime), {"thread_id": thread_id, "uid": sender_user_id, "now": now})
            return result.rowcount > 0

    def close_thread(self, thread_id, user_id, now=None):
        """Close a thread on behalf of either participant; returns the thread or None"""
        with self.engine.begin() as conn:
            row = conn.execute(
                sql(
                    """
                    UPDATE barter_threads
                    SET status = 'CLOSED', updated_at = :now
                    WHERE id = :thread_id AND (buyer_user_id = :uid OR seller_user_id = :uid)
                    RETURNING *
                    """,
                    now=DateTime,
                ),
                {"thread_id": thread_id, "uid": user_id, "now": now or utc_now()},
            ).fetchone()
            return _thread_row(row) if row else None

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def add_credits(self, user_id, credits, now=None):
        """
        Top up a buyer's balance (purchases, manual grants)

        Returns:
            int or None: New balance, None if the user does not exist
        """
        with self.engine.begin() as conn:
            balance = conn.execute(
                sql(
                    """
                    UPDATE users
                    SET brand_credits = brand_credits + :credits, updated_at = :now
                    WHERE id = :uid
                    RETURNING brand_credits
                    """,
                    now=DateTime,
                ),
                {"uid": user_id, "credits": int(credits or 0), "now": now or utc_now()},
            ).scalar()
        if balance is None:
            return None
        logger.info(f"Added {credits} credits to user #{user_id} (balance {balance})")
        return int(balance)

    def get_intro_meta(self, user_id):
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT brand_credits, brand_trial_granted, brand_trial_granted_at FROM users WHERE id = :uid"),
                {"uid": user_id},
            ).fetchone()
        if not row:
            return None
        return {
            "brand_credits": int(row.brand_credits or 0),
            "brand_trial_granted": bool(row.brand_trial_granted),
            "brand_trial_granted_at": as_datetime(row.brand_trial_granted_at),
        }

    def get_daily_usage(self, user_id, day=None):
        day = day or utc_now().date()
        with self.engine.connect() as conn:
            used = conn.execute(
                sql("SELECT used_count FROM intro_daily_usage WHERE user_id = :uid AND day = :day", day=Date),
                {"uid": user_id, "day": day},
            ).scalar()
        return int(used or 0)

    def count_available_retry_credits(self, user_id, now=None):
        if not self.capabilities.retry_credits:
            return 0
        with self.engine.connect() as conn:
            count = conn.execute(
                sql(
                    """
                    SELECT COUNT(*) FROM brand_retry_credits
                    WHERE user_id = :uid AND status = 'AVAILABLE' AND expires_at > :now
                    """,
                    now=DateTime,
                ),
                {"uid": user_id, "now": now or utc_now()},
            ).scalar()
        return int(count or 0)
