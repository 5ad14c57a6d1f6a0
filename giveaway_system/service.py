"""
Service wiring
Builds the scheduler and ledger from environment configuration
"""

import logging

from utils.db_context import create_db_engine
from utils.redis_lock import RedisLock, connect_redis

from . import config
from .database import detect_capabilities
from .ledger import IntroLedger
from .notifications import NullNotifier, TelegramNotifier
from .scheduler import GiveawayScheduler

logger = logging.getLogger(__name__)


def build_notifier(bot_token=None):
    token = bot_token if bot_token is not None else config.BOT_TOKEN
    if not token:
        logger.warning("⚠️ BOT_TOKEN not set, notifications are disabled")
        return NullNotifier()
    return TelegramNotifier(token)


def build_scheduler(engine=None, redis_client=None, notifier=None):
    """
    Create a GiveawayScheduler from config; any dependency can be injected

    Raises:
        ConfigurationError: when required settings are missing
    """
    config.assert_env()
    engine = engine or create_db_engine(config.DATABASE_URL)
    redis_client = redis_client or connect_redis(config.REDIS_URL)
    return GiveawayScheduler(
        engine,
        RedisLock(redis_client),
        notifier=notifier or build_notifier(),
        capabilities=detect_capabilities(engine),
    )


def build_ledger(engine=None):
    engine = engine or create_db_engine(config.DATABASE_URL)
    return IntroLedger(engine, capabilities=detect_capabilities(engine))
