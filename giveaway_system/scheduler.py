"""
Giveaway Settlement Scheduler
Runs the periodic tick: ends due giveaways, draws winners, expires official
placements and issues intro retry credits
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List

from . import config
from .database import SchemaCapabilities
from .draw import POOL_ALL_ENTRIES, choose_pool, draw, iso_millis
from .exceptions import TickAborted
from .notifications import NullNotifier, PLACEMENT_EXPIRED_TEXT, draw_preview, retry_credit_issued
from .repository import GiveawayRepository, PlacementRepository, RetryCreditRepository, utc_now
from utils.redis_lock import make_key

logger = logging.getLogger(__name__)

PHASE_END_GIVEAWAYS = "end_giveaways"
PHASE_AUTO_DRAW = "auto_draw"
PHASE_EXPIRE_OFFICIAL = "expire_official"
PHASE_RETRY_CREDITS = "retry_credits"

# What a failed state change does to the tick
ABORT_TICK = "abort_tick"
SKIP_ITEM = "skip_item"

PHASE_POLICIES = {
    PHASE_END_GIVEAWAYS: ABORT_TICK,
    PHASE_AUTO_DRAW: ABORT_TICK,
    PHASE_EXPIRE_OFFICIAL: SKIP_ITEM,
    PHASE_RETRY_CREDITS: ABORT_TICK,
}


@dataclass
class RetryPhaseResult:
    checked: int = 0
    issued: int = 0
    expired: int = 0


@dataclass
class TickResult:
    """Per-phase counters; partially filled when a tick aborts"""

    ended: List[int] = field(default_factory=list)
    drawn: List[int] = field(default_factory=list)
    official_expired: int = 0
    retry: RetryPhaseResult = field(default_factory=RetryPhaseResult)
    item_failures: Dict[str, int] = field(default_factory=dict)
    effect_failures: int = 0
    duration_ms: int = 0
    skipped: bool = False

    def to_dict(self):
        return {
            "ended": list(self.ended),
            "drawn": list(self.drawn),
            "official": {"expired": self.official_expired},
            "retry": {"checked": self.retry.checked, "issued": self.retry.issued, "expired": self.retry.expired},
            "ended_count": len(self.ended),
            "drawn_count": len(self.drawn),
            "official_expired": self.official_expired,
            "retry_issued": self.retry.issued,
            "retry_checked": self.retry.checked,
            "retry_expired": self.retry.expired,
            "item_failures": dict(self.item_failures),
            "effect_failures": self.effect_failures,
            "duration_ms": self.duration_ms,
            "skipped": self.skipped,
        }


class GiveawayScheduler:
    """Runs one settlement tick at a time under a Redis lock"""

    def __init__(self, engine, lock, notifier=None, capabilities=None,
                 official_publish_enabled=None, retry_enabled=None, retry_after_hours=None,
                 retry_expires_days=None, retry_notify=None, key_prefix=None, app_env=None):
        """
        Initialize the scheduler

        Args:
            engine: SQLAlchemy engine
            lock: RedisLock guarding the tick
            notifier: Notifier for previews and notices (NullNotifier if omitted)
            capabilities: SchemaCapabilities detected at startup
            Remaining keyword arguments override the matching config values.
        """
        self.giveaways = GiveawayRepository(engine)
        self.placements = PlacementRepository(engine)
        self.retry_credits = RetryCreditRepository(engine)
        self.lock = lock
        self.notifier = notifier or NullNotifier()
        self.capabilities = capabilities or SchemaCapabilities()

        self.official_publish_enabled = _pick(official_publish_enabled, config.OFFICIAL_PUBLISH_ENABLED)
        self.retry_enabled = _pick(retry_enabled, config.INTRO_RETRY_ENABLED)
        self.retry_after_hours = _pick(retry_after_hours, config.INTRO_RETRY_AFTER_HOURS)
        self.retry_expires_days = _pick(retry_expires_days, config.INTRO_RETRY_EXPIRES_DAYS)
        self.retry_notify = _pick(retry_notify, config.INTRO_RETRY_NOTIFY)
        self.lock_key = make_key(_pick(key_prefix, config.KEY_PREFIX), _pick(app_env, config.APP_ENV),
                                 "lock", "giveaways_tick")

        logger.info(
            f"📅 Giveaway scheduler initialized (official: {self.official_publish_enabled}, "
            f"retry credits: {self.retry_enabled and self.capabilities.retry_credits})"
        )

    def run_tick(self, now=None):
        """
        Run all phases once

        Args:
            now: Tick time as naive UTC (defaults to the current time)

        Returns:
            TickResult: skipped=True when another tick holds the lock

        Raises:
            TickAborted: a phase failed; the lock is already released and the
                partial result is attached
        """
        started = time.monotonic()
        now = now or utc_now()
        result = TickResult()

        with self.lock.held(self.lock_key, config.CRON_LOCK_TTL_SEC) as acquired:
            if not acquired:
                result.skipped = True
                logger.info("⏭️ Giveaway tick skipped, another run holds the lock")
                return result

            phase = None
            try:
                for phase, run_phase in (
                    (PHASE_END_GIVEAWAYS, self._end_due_giveaways),
                    (PHASE_AUTO_DRAW, self._auto_draw_ended),
                    (PHASE_EXPIRE_OFFICIAL, self._expire_official_posts),
                    (PHASE_RETRY_CREDITS, self._issue_retry_credits),
                ):
                    run_phase(now, result)
            except Exception as e:
                result.duration_ms = _elapsed_ms(started)
                logger.error(f"❌ Giveaway tick aborted in phase '{phase}': {e}", exc_info=True)
                raise TickAborted(phase, result, e) from e

        result.duration_ms = _elapsed_ms(started)
        logger.info(
            f"✅ Giveaway tick done in {result.duration_ms}ms: ended={len(result.ended)} "
            f"drawn={len(result.drawn)} official_expired={result.official_expired} "
            f"retry_issued={result.retry.issued} effect_failures={result.effect_failures}"
        )
        return result

    # ------------------------------------------------------------------
    # Failure channels
    # ------------------------------------------------------------------

    def _apply(self, phase, result, mutate, *args):
        """Run a state change under the phase's failure policy"""
        if PHASE_POLICIES[phase] != SKIP_ITEM:
            return mutate(*args)
        try:
            return mutate(*args)
        except Exception as e:
            logger.warning(f"⚠️ [{phase}] skipping item after failed update: {e}")
            result.item_failures[phase] = result.item_failures.get(phase, 0) + 1
            return None

    def _best_effort(self, result, label, effect, *args):
        """Notifications and message edits never fail the tick"""
        try:
            effect(*args)
        except Exception as e:
            result.effect_failures += 1
            logger.warning(f"⚠️ {label} failed: {e}")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _end_due_giveaways(self, now, result):
        for giveaway in self.giveaways.list_to_end(now, config.CRON_END_BATCH):
            if self._apply(PHASE_END_GIVEAWAYS, result, self.giveaways.mark_ended, giveaway, now):
                result.ended.append(giveaway["id"])
                logger.info(f"🔔 Giveaway #{giveaway['id']} ended")

    def _auto_draw_ended(self, now, result):
        for giveaway in self.giveaways.list_to_draw(config.CRON_DRAW_BATCH):
            gid = giveaway["id"]
            eligible_ids = self.giveaways.eligible_user_ids(gid)
            entry_ids = eligible_ids if eligible_ids else self.giveaways.all_user_ids(gid)
            pool, used_pool = choose_pool(eligible_ids, entry_ids)

            if not pool:
                self._apply(PHASE_AUTO_DRAW, result, self.giveaways.record_draw_skipped, giveaway, "no_entries", now)
                logger.info(f"Giveaway #{gid} has no entries, draw skipped")
                continue

            ends_at_iso = iso_millis(giveaway["ends_at"])
            requested = int(giveaway.get("winners_count") or 1)
            outcome = draw(gid, ends_at_iso, eligible_ids, requested, pool_user_ids=pool)

            payload = {
                "seedHash": outcome.seed_hash,
                "eligibleHash": outcome.eligible_hash,
                "ends_at_iso": ends_at_iso,
                "winners": len(outcome.winners),
                "winner_user_ids": outcome.winners,
                "used_pool": used_pool,
                "eligible_count": len(eligible_ids),
                "entries_pool_count": len(pool),
                "requested_winners": requested,
            }
            if not self._apply(PHASE_AUTO_DRAW, result, self.giveaways.record_draw, giveaway, outcome.winners,
                               payload, now):
                continue

            result.drawn.append(gid)
            logger.info(f"🎲 Giveaway #{gid} drawn: {len(outcome.winners)} winner(s) from {used_pool} pool")
            self._best_effort(result, f"Owner preview for giveaway #{gid}", self._send_draw_preview,
                              giveaway, used_pool == POOL_ALL_ENTRIES)

    def _expire_official_posts(self, now, result):
        if not self.official_publish_enabled or not self.capabilities.official_posts:
            return

        for placement in self.placements.list_to_expire(now, config.CRON_OFFICIAL_EXPIRE_BATCH):
            if placement.get("channel_chat_id") and placement.get("message_id"):
                self._best_effort(
                    result,
                    f"Expiry edit for offer #{placement['offer_id']}",
                    self.notifier.edit_message_text,
                    placement["channel_chat_id"],
                    placement["message_id"],
                    PLACEMENT_EXPIRED_TEXT,
                )
            if self._apply(PHASE_EXPIRE_OFFICIAL, result, self.placements.set_status,
                           placement["offer_id"], "EXPIRED", now):
                result.official_expired += 1

    def _issue_retry_credits(self, now, result):
        if not self.retry_enabled or not self.capabilities.retry_credits:
            return

        result.retry.expired = self._apply(
            PHASE_RETRY_CREDITS, result, self.retry_credits.expire, now, config.CRON_RETRY_EXPIRE_BATCH
        ) or 0

        threads = self.retry_credits.list_threads_for_retry(now, self.retry_after_hours, config.CRON_RETRY_BATCH)
        result.retry.checked = len(threads)

        for thread in threads:
            buyer_user_id = int(thread["buyer_user_id"])
            credit_id = self._apply(
                PHASE_RETRY_CREDITS, result, self.retry_credits.issue_for_thread,
                thread["thread_id"], buyer_user_id, now, self.retry_expires_days, "no_reply",
            )
            if credit_id is None:
                continue

            result.retry.issued += 1
            logger.info(f"🎟 Retry credit #{credit_id} issued to user #{buyer_user_id} (thread #{thread['thread_id']})")
            if self.retry_notify:
                self._best_effort(result, f"Retry notice for user #{buyer_user_id}", self._send_retry_notice,
                                  buyer_user_id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _send_draw_preview(self, giveaway, used_fallback):
        owner = self.giveaways.get_user_chat(giveaway["owner_user_id"])
        if not owner:
            return
        winners = self.giveaways.list_winners(giveaway["id"])
        text, buttons = draw_preview(giveaway["id"], winners, used_fallback)
        self.notifier.send_message(owner["tg_id"], text, buttons)

    def _send_retry_notice(self, buyer_user_id):
        buyer = self.giveaways.get_user_chat(buyer_user_id)
        if not buyer:
            return
        text, buttons = retry_credit_issued(self.retry_after_hours, self.retry_expires_days)
        self.notifier.send_message(buyer["tg_id"], text, buttons)


def _pick(value, default):
    return default if value is None else value


def _elapsed_ms(started):
    return int((time.monotonic() - started) * 1000)
