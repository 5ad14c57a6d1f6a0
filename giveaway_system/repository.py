"""
Giveaway System Repository
SQL access for giveaways, official placements and intro retry credits

Queries are plain SQLAlchemy text() statements that run on PostgreSQL in
production and on SQLite in tests. Timestamps are passed in from Python
(naive UTC) instead of using now() so callers control the clock.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import JSON, Date, DateTime, bindparam, text

logger = logging.getLogger(__name__)

# Giveaway statuses
STATUS_DRAFT = "DRAFT"
STATUS_PUBLISHED = "PUBLISHED"
STATUS_RUNNING = "RUNNING"
STATUS_ENDED = "ENDED"
STATUS_WINNERS_DRAWN = "WINNERS_DRAWN"
STATUS_RESULTS_PUBLISHED = "RESULTS_PUBLISHED"

# Official placement statuses
PLACEMENT_ACTIVE = "ACTIVE"
PLACEMENT_EXPIRED = "EXPIRED"

# Retry credit statuses
RETRY_AVAILABLE = "AVAILABLE"
RETRY_REDEEMED = "REDEEMED"
RETRY_EXPIRED = "EXPIRED"

# Marks a results post that is being sent right now
PUBLISH_RESERVED = -1

_BIND_TYPES = {DateTime: DateTime(), Date: Date(), JSON: JSON()}


def sql(statement, **types):
    """
    text() with typed binds for the given parameter names

    SQLite stores timestamps as strings, so datetime/date parameters go through
    the same type processors as the table metadata to stay comparable.

    Usage:
        sql("SELECT ... WHERE ends_at <= :now", now=DateTime)
    """
    clause = text(statement)
    if types:
        clause = clause.bindparams(*[bindparam(name, type_=_BIND_TYPES.get(t, t)) for name, t in types.items()])
    return clause


def utc_now():
    """Current time as naive UTC, the form every timestamp column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_datetime(value):
    """Normalise a timestamp column value (SQLite hands back strings)"""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value))


def write_audit(conn, giveaway_id, workspace_id, action, payload=None, actor_user_id=None, now=None):
    """Append a giveaway audit record inside the caller's transaction"""
    conn.execute(
        sql(
            """
            INSERT INTO giveaway_audit (giveaway_id, workspace_id, actor_user_id, action, payload, created_at)
            VALUES (:giveaway_id, :workspace_id, :actor_user_id, :action, :payload, :now)
            """,
            payload=JSON,
            now=DateTime,
        ),
        {
            "giveaway_id": giveaway_id,
            "workspace_id": workspace_id,
            "actor_user_id": actor_user_id,
            "action": action,
            "payload": payload or {},
            "now": now or utc_now(),
        },
    )


class GiveawayRepository:
    """Reads and state transitions for giveaways, their entries and winners"""

    def __init__(self, engine):
        self.engine = engine

    # ------------------------------------------------------------------
    # Phase 1: ending
    # ------------------------------------------------------------------

    def list_to_end(self, now, limit=50):
        """Published or running giveaways whose end time has passed, oldest first"""
        with self.engine.connect() as conn:
            rows = conn.execute(
                sql(
                    """
                    SELECT id, workspace_id, ends_at, status, auto_draw, auto_publish
                    FROM giveaways
                    WHERE status IN ('PUBLISHED', 'RUNNING')
                      AND ends_at IS NOT NULL
                      AND ends_at <= :now
                    ORDER BY ends_at ASC
                    LIMIT :limit
                    """,
                    now=DateTime,
                ),
                {"now": now, "limit": int(limit)},
            )
            return [self._giveaway_row(row) for row in rows]

    def mark_ended(self, giveaway, now):
        """
        Move a giveaway to ENDED and audit it in one transaction

        Args:
            giveaway: Row dict from list_to_end()
            now: Tick time

        Returns:
            bool: False if another writer already moved it on
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE giveaways
                    SET status = 'ENDED', updated_at = :now
                    WHERE id = :id AND status IN ('PUBLISHED', 'RUNNING')
                    """,
                    now=DateTime,
                ),
                {"id": giveaway["id"], "now": now},
            )
            if result.rowcount == 0:
                return False
            write_audit(
                conn,
                giveaway["id"],
                giveaway.get("workspace_id"),
                "gw.ended",
                {"manual": False, "now": now.isoformat()},
                now=now,
            )
            return True

    # ------------------------------------------------------------------
    # Phase 2: drawing
    # ------------------------------------------------------------------

    def list_to_draw(self, limit=50):
        """Ended auto-draw giveaways without winners, least recently touched first"""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT g.id, g.workspace_id, g.winners_count, g.ends_at, g.auto_draw,
                           g.auto_publish, g.results_message_id, w.owner_user_id
                    FROM giveaways g
                    JOIN workspaces w ON w.id = g.workspace_id
                    WHERE g.status = 'ENDED'
                      AND g.winners_drawn_at IS NULL
                      AND g.auto_draw = TRUE
                      AND g.ends_at IS NOT NULL
                    ORDER BY g.updated_at ASC, g.id ASC
                    LIMIT :limit
                    """
                ),
                {"limit": int(limit)},
            )
            return [self._giveaway_row(row) for row in rows]

    def eligible_user_ids(self, giveaway_id):
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT user_id FROM giveaway_entries WHERE giveaway_id = :gid AND is_eligible = TRUE"),
                {"gid": giveaway_id},
            )
            return [int(row[0]) for row in rows]

    def all_user_ids(self, giveaway_id):
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT user_id FROM giveaway_entries WHERE giveaway_id = :gid"),
                {"gid": giveaway_id},
            )
            return [int(row[0]) for row in rows]

    def record_draw(self, giveaway, winner_user_ids, audit_payload, now):
        """
        Persist a draw: winners, WINNERS_DRAWN status and audit in one transaction

        The status update is guarded on the giveaway still being undrawn, so a
        concurrent draw cannot overwrite recorded winners.

        Returns:
            bool: True if this call recorded the draw
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE giveaways
                    SET status = 'WINNERS_DRAWN', winners_drawn_at = :now, updated_at = :now
                    WHERE id = :id AND status = 'ENDED' AND winners_drawn_at IS NULL
                    """,
                    now=DateTime,
                ),
                {"id": giveaway["id"], "now": now},
            )
            if result.rowcount == 0:
                logger.warning(f"⚠️ Giveaway #{giveaway['id']} was drawn concurrently, keeping existing winners")
                return False

            conn.execute(text("DELETE FROM giveaway_winners WHERE giveaway_id = :gid"), {"gid": giveaway["id"]})
            if winner_user_ids:
                conn.execute(
                    text("INSERT INTO giveaway_winners (giveaway_id, user_id, place) VALUES (:gid, :uid, :place)"),
                    [
                        {"gid": giveaway["id"], "uid": int(uid), "place": place}
                        for place, uid in enumerate(winner_user_ids, start=1)
                    ],
                )
            write_audit(conn, giveaway["id"], giveaway.get("workspace_id"), "gw.winners_drawn", audit_payload, now=now)
            return True

    def record_draw_skipped(self, giveaway, reason, now):
        """
        Push a giveaway that cannot be drawn to the back of the draw queue

        Only the first skip is audited; later ticks just bump updated_at.

        Returns:
            bool: True if an audit record was written
        """
        with self.engine.begin() as conn:
            conn.execute(
                sql("UPDATE giveaways SET updated_at = :now WHERE id = :id", now=DateTime),
                {"id": giveaway["id"], "now": now},
            )
            already_audited = conn.execute(
                text(
                    """
                    SELECT 1 FROM giveaway_audit
                    WHERE giveaway_id = :gid AND action = 'gw.winners_drawn_skipped'
                    LIMIT 1
                    """
                ),
                {"gid": giveaway["id"]},
            ).fetchone()
            if already_audited:
                return False
            write_audit(
                conn, giveaway["id"], giveaway.get("workspace_id"), "gw.winners_drawn_skipped", {"reason": reason}, now=now
            )
            return True

    def list_winners(self, giveaway_id):
        """Winners in placement order with their Telegram identity"""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT w.place, w.user_id, u.tg_id, u.tg_username
                    FROM giveaway_winners w
                    JOIN users u ON u.id = w.user_id
                    WHERE w.giveaway_id = :gid
                    ORDER BY w.place ASC
                    """
                ),
                {"gid": giveaway_id},
            )
            return [
                {
                    "place": int(row.place),
                    "user_id": int(row.user_id),
                    "tg_id": int(row.tg_id) if row.tg_id is not None else None,
                    "username": str(row.tg_username) if row.tg_username else None,
                }
                for row in rows
            ]

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def upsert_entry(self, giveaway_id, user_id, now=None):
        """Register a participant; joining twice keeps the original entry"""
        with self.engine.begin() as conn:
            conn.execute(
                sql(
                    """
                    INSERT INTO giveaway_entries (giveaway_id, user_id, is_eligible, created_at)
                    VALUES (:gid, :uid, FALSE, :now)
                    ON CONFLICT (giveaway_id, user_id) DO NOTHING
                    """,
                    now=DateTime,
                ),
                {"gid": giveaway_id, "uid": user_id, "now": now or utc_now()},
            )

    def set_entry_eligibility(self, giveaway_id, user_id, is_eligible, now=None):
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE giveaway_entries
                    SET is_eligible = :eligible, last_checked_at = :now
                    WHERE giveaway_id = :gid AND user_id = :uid
                    """,
                    now=DateTime,
                ),
                {"gid": giveaway_id, "uid": user_id, "eligible": bool(is_eligible), "now": now or utc_now()},
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Results publishing
    # ------------------------------------------------------------------

    def reserve_publish(self, giveaway_id, owner_user_id, now=None):
        """
        Claim the right to post results so retries cannot double-post

        Returns:
            bool: True if the reservation was taken
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE giveaways
                    SET results_message_id = :reserved, updated_at = :now
                    WHERE id = :gid
                      AND results_message_id IS NULL
                      AND status = 'WINNERS_DRAWN'
                      AND workspace_id IN (SELECT id FROM workspaces WHERE owner_user_id = :owner)
                    """,
                    now=DateTime,
                ),
                {"gid": giveaway_id, "owner": owner_user_id, "reserved": PUBLISH_RESERVED, "now": now or utc_now()},
            )
            return result.rowcount > 0

    def finalize_publish(self, giveaway_id, owner_user_id, results_message_id, now=None):
        now = now or utc_now()
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE giveaways
                    SET status = 'RESULTS_PUBLISHED', results_message_id = :message_id,
                        results_published_at = :now, updated_at = :now
                    WHERE id = :gid
                      AND results_message_id = :reserved
                      AND workspace_id IN (SELECT id FROM workspaces WHERE owner_user_id = :owner)
                    """,
                    now=DateTime,
                ),
                {
                    "gid": giveaway_id,
                    "owner": owner_user_id,
                    "message_id": int(results_message_id),
                    "reserved": PUBLISH_RESERVED,
                    "now": now,
                },
            )
            return result.rowcount > 0

    def release_publish(self, giveaway_id, owner_user_id, now=None):
        """Undo a reservation after a failed post"""
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE giveaways
                    SET results_message_id = NULL, updated_at = :now
                    WHERE id = :gid
                      AND results_message_id = :reserved
                      AND workspace_id IN (SELECT id FROM workspaces WHERE owner_user_id = :owner)
                    """,
                    now=DateTime,
                ),
                {"gid": giveaway_id, "owner": owner_user_id, "reserved": PUBLISH_RESERVED, "now": now or utc_now()},
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_giveaway(self, giveaway_id):
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT * FROM giveaways WHERE id = :gid"), {"gid": giveaway_id}).fetchone()
            return self._giveaway_row(row) if row else None

    def get_user_chat(self, user_id):
        """Telegram chat of a user, or None"""
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT tg_id, tg_username FROM users WHERE id = :uid"), {"uid": user_id}
            ).fetchone()
            if not row or row.tg_id is None:
                return None
            return {"tg_id": int(row.tg_id), "username": row.tg_username}

    def list_audit(self, giveaway_id, limit=30):
        """Most recent audit records first"""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT action, payload, created_at
                    FROM giveaway_audit
                    WHERE giveaway_id = :gid
                    ORDER BY created_at DESC, id DESC
                    LIMIT :limit
                    """
                ),
                {"gid": giveaway_id, "limit": int(limit)},
            )
            audit = []
            for row in rows:
                payload = row.payload
                if isinstance(payload, str):
                    payload = json.loads(payload)
                audit.append({"action": row.action, "payload": payload or {}, "created_at": as_datetime(row.created_at)})
            return audit

    @staticmethod
    def _giveaway_row(row):
        data = dict(row._mapping)
        for key in ("ends_at", "winners_drawn_at", "results_published_at", "created_at", "updated_at"):
            if key in data:
                data[key] = as_datetime(data[key])
        for key in ("auto_draw", "auto_publish"):
            if key in data and data[key] is not None:
                data[key] = bool(data[key])
        return data


class PlacementRepository:
    """Official channel placements (paid slots in the official channel)"""

    def __init__(self, engine):
        self.engine = engine

    def list_to_expire(self, now, limit=50):
        with self.engine.connect() as conn:
            rows = conn.execute(
                sql(
                    """
                    SELECT id, offer_id, channel_chat_id, message_id, status, slot_expires_at
                    FROM official_posts
                    WHERE status = 'ACTIVE'
                      AND slot_expires_at IS NOT NULL
                      AND slot_expires_at <= :now
                    ORDER BY slot_expires_at ASC
                    LIMIT :limit
                    """,
                    now=DateTime,
                ),
                {"now": now, "limit": int(limit)},
            )
            placements = []
            for row in rows:
                data = dict(row._mapping)
                data["slot_expires_at"] = as_datetime(data["slot_expires_at"])
                placements.append(data)
            return placements

    def set_status(self, offer_id, status, now, last_error=None):
        """
        Set a placement's status; last_error is kept unless a new one is given

        Returns:
            bool: True if a placement row was updated
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE official_posts
                    SET status = :status,
                        last_error = COALESCE(:last_error, last_error),
                        updated_at = :now
                    WHERE offer_id = :offer_id
                    """,
                    now=DateTime,
                ),
                {
                    "offer_id": int(offer_id),
                    "status": str(status).upper(),
                    "last_error": str(last_error)[:2000] if last_error else None,
                    "now": now,
                },
            )
            return result.rowcount > 0


class RetryCreditRepository:
    """Fairness retry credits for paid intros that never got a reply"""

    def __init__(self, engine):
        self.engine = engine

    def expire(self, now, limit=200):
        """
        Expire AVAILABLE credits past their expiry, oldest first

        Returns:
            int: Number of credits expired
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sql(
                    """
                    UPDATE brand_retry_credits
                    SET status = 'EXPIRED'
                    WHERE id IN (
                        SELECT id FROM brand_retry_credits
                        WHERE status = 'AVAILABLE' AND expires_at < :now
                        ORDER BY expires_at ASC
                        LIMIT :limit
                    )
                    """,
                    now=DateTime,
                ),
                {"now": now, "limit": int(limit)},
            )
            return result.rowcount or 0

    def list_threads_for_retry(self, now, after_hours=24, limit=50):
        """Paid intro threads whose first buyer message has gone unanswered for after_hours"""
        cutoff = now - timedelta(hours=int(after_hours or 24))
        with self.engine.connect() as conn:
            rows = conn.execute(
                sql(
                    """
                    SELECT t.id AS thread_id, t.buyer_user_id, t.offer_id, t.buyer_first_msg_at
                    FROM barter_threads t
                    WHERE t.intro_charge_source = 'CREDITS'
                      AND t.intro_charged_at IS NOT NULL
                      AND t.buyer_first_msg_at IS NOT NULL
                      AND t.seller_first_reply_at IS NULL
                      AND t.retry_issued_at IS NULL
                      AND t.buyer_first_msg_at < :cutoff
                    ORDER BY t.buyer_first_msg_at ASC
                    LIMIT :limit
                    """,
                    cutoff=DateTime,
                ),
                {"cutoff": cutoff, "limit": int(limit)},
            )
            return [dict(row._mapping) for row in rows]

    def issue_for_thread(self, thread_id, user_id, now, expires_days=7, reason="no_reply"):
        """
        Issue at most one retry credit per source thread

        The credit insert and the thread's retry_issued_at stamp share one
        transaction.

        Returns:
            int or None: New credit ID, None if one was already issued
        """
        expires_at = now + timedelta(days=int(expires_days or 7))
        with self.engine.begin() as conn:
            row = conn.execute(
                sql(
                    """
                    INSERT INTO brand_retry_credits (user_id, source_thread_id, status, reason, expires_at, created_at)
                    VALUES (:uid, :thread_id, 'AVAILABLE', :reason, :expires_at, :now)
                    ON CONFLICT (source_thread_id) DO NOTHING
                    RETURNING id
                    """,
                    expires_at=DateTime,
                    now=DateTime,
                ),
                {
                    "uid": int(user_id),
                    "thread_id": int(thread_id),
                    "reason": str(reason or "no_reply"),
                    "expires_at": expires_at,
                    "now": now,
                },
            ).fetchone()
            # Stamp even on conflict so the thread leaves the retry queue
            conn.execute(
                sql(
                    """
                    UPDATE barter_threads
                    SET retry_issued_at = :now, updated_at = :now
                    WHERE id = :thread_id AND retry_issued_at IS NULL
                    """,
                    now=DateTime,
                ),
                {"thread_id": int(thread_id), "now": now},
            )
            return int(row[0]) if row else None
