import os
import sys
from datetime import datetime

import pytest
from sqlalchemy import create_engine

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from giveaway_system.database import (
    barter_offers,
    barter_threads,
    brand_retry_credits,
    giveaway_entries,
    giveaways,
    metadata,
    official_posts,
    users,
    workspaces,
)
from giveaway_system.notifications import NotificationError, Notifier
from utils.redis_lock import RedisLock

NOW = datetime(2024, 1, 2, 12, 0, 0)


class FakeRedis:
    """In-memory stand-in for the two redis-py calls the lock makes"""

    def __init__(self):
        self.store = {}
        self.calls = []
        self.fail_delete = False

    def set(self, key, value, nx=False, ex=None):
        self.calls.append(("set", key, nx, ex))
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, key):
        self.calls.append(("delete", key))
        if self.fail_delete:
            raise ConnectionError("redis unavailable")
        return 1 if self.store.pop(key, None) is not None else 0


class FakeNotifier(Notifier):
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.edits = []

    def send_message(self, chat_id, text, buttons=None):
        if self.fail:
            raise NotificationError("sendMessage failed (403): bot was blocked by the user")
        self.sent.append({"chat_id": chat_id, "text": text, "buttons": buttons})

    def edit_message_text(self, chat_id, message_id, text):
        if self.fail:
            raise NotificationError("editMessageText failed (400): message to edit not found")
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})


class Seed:
    """Row factories for the giveaway schema"""

    def __init__(self, engine):
        self.engine = engine
        self._tg_id = 1000

    def _insert(self, table, **values):
        with self.engine.begin() as conn:
            return conn.execute(table.insert().values(**values)).inserted_primary_key[0]

    def user(self, credits=0, trial_granted=False, username=None):
        self._tg_id += 1
        return self._insert(
            users,
            tg_id=self._tg_id,
            tg_username=username,
            brand_credits=credits,
            brand_trial_granted=trial_granted,
        )

    def workspace(self, owner_user_id, title="Channel"):
        return self._insert(workspaces, owner_user_id=owner_user_id, title=title)

    def offer(self, workspace_id, creator_user_id, title="Barter offer"):
        return self._insert(barter_offers, workspace_id=workspace_id, creator_user_id=creator_user_id, title=title)

    def giveaway(self, workspace_id, status="RUNNING", ends_at=None, winners_count=1, auto_draw=True,
                 updated_at=None, winners_drawn_at=None):
        return self._insert(
            giveaways,
            workspace_id=workspace_id,
            status=status,
            ends_at=ends_at,
            winners_count=winners_count,
            auto_draw=auto_draw,
            updated_at=updated_at or datetime(2024, 1, 1),
            winners_drawn_at=winners_drawn_at,
        )

    def entry(self, giveaway_id, user_id, eligible=True):
        with self.engine.begin() as conn:
            conn.execute(giveaway_entries.insert().values(giveaway_id=giveaway_id, user_id=user_id,
                                                          is_eligible=eligible))

    def thread(self, offer_id, buyer_user_id, seller_user_id, **columns):
        return self._insert(
            barter_threads,
            offer_id=offer_id,
            buyer_user_id=buyer_user_id,
            seller_user_id=seller_user_id,
            status="OPEN",
            **columns,
        )

    def placement(self, offer_id, slot_expires_at, status="ACTIVE", channel_chat_id=-100123, message_id=77):
        return self._insert(
            official_posts,
            offer_id=offer_id,
            status=status,
            slot_expires_at=slot_expires_at,
            channel_chat_id=channel_chat_id,
            message_id=message_id,
        )

    def retry_credit(self, user_id, source_thread_id, expires_at, status="AVAILABLE"):
        return self._insert(
            brand_retry_credits,
            user_id=user_id,
            source_thread_id=source_thread_id,
            expires_at=expires_at,
            status=status,
        )


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'giveaways.db'}", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seed(engine):
    return Seed(engine)


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def lock(fake_redis):
    return RedisLock(fake_redis)


@pytest.fixture()
def notifier():
    return FakeNotifier()
