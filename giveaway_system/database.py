"""
Database Schema Setup for the Giveaway System
Declares every table the tick and the intro ledger touch, and detects which
optional features the live schema supports
"""

import logging
from dataclasses import dataclass

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    false,
    func,
    inspect,
    text,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

# ============================================
# USERS & WORKSPACES
# ============================================

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tg_id", BigInteger, unique=True),
    Column("tg_username", Text),
    Column("brand_credits", Integer, nullable=False, server_default=text("0")),
    Column("brand_credits_spent", Integer, nullable=False, server_default=text("0")),
    Column("brand_trial_granted", Boolean, nullable=False, server_default=false()),
    Column("brand_trial_granted_at", DateTime),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

workspaces = Table(
    "workspaces",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("title", Text),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

# ============================================
# BARTER OFFERS, INTRO THREADS & CREDITS
# ============================================

barter_offers = Table(
    "barter_offers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("creator_user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("title", Text),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

barter_threads = Table(
    "barter_threads",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("offer_id", Integer, ForeignKey("barter_offers.id"), nullable=False),
    Column("workspace_id", Integer, ForeignKey("workspaces.id")),
    Column("buyer_user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("seller_user_id", Integer, ForeignKey("users.id")),
    Column("status", String(20), nullable=False, server_default="OPEN"),  # OPEN, CLOSED
    Column("last_message_at", DateTime),
    # Intro payment metadata
    Column("intro_cost", Integer),
    Column("intro_charge_source", String(20)),  # CREDITS, RETRY
    Column("intro_charged_at", DateTime),
    # Reply tracking (retry credit eligibility)
    Column("buyer_first_msg_at", DateTime),
    Column("seller_first_reply_at", DateTime),
    Column("retry_issued_at", DateTime),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("offer_id", "buyer_user_id", name="barter_threads_offer_buyer_key"),
)

brand_retry_credits = Table(
    "brand_retry_credits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("source_thread_id", Integer, ForeignKey("barter_threads.id"), nullable=False, unique=True),
    Column("status", String(20), nullable=False, server_default="AVAILABLE"),  # AVAILABLE, REDEEMED, EXPIRED
    Column("reason", Text),
    Column("expires_at", DateTime, nullable=False),
    Column("redeemed_at", DateTime),
    Column("redeemed_thread_id", Integer, ForeignKey("barter_threads.id")),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

intro_daily_usage = Table(
    "intro_daily_usage",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("day", Date, nullable=False),
    Column("used_count", Integer, nullable=False, server_default=text("0")),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    PrimaryKeyConstraint("user_id", "day"),
)

official_posts = Table(
    "official_posts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("offer_id", Integer, ForeignKey("barter_offers.id"), nullable=False, unique=True),
    Column("channel_chat_id", BigInteger),
    Column("message_id", BigInteger),
    Column("status", String(20), nullable=False, server_default="PENDING"),  # PENDING, ACTIVE, EXPIRED, ...
    Column("placement_type", String(20), server_default="MANUAL"),
    Column("slot_expires_at", DateTime),
    Column("last_error", Text),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

# ============================================
# GIVEAWAYS
# ============================================

giveaways = Table(
    "giveaways",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("prize_value_text", Text),
    Column("winners_count", Integer, nullable=False, server_default=text("1")),
    Column("ends_at", DateTime),
    Column("auto_draw", Boolean, nullable=False, server_default=false()),
    Column("auto_publish", Boolean, nullable=False, server_default=false()),
    # DRAFT, PUBLISHED, RUNNING, ENDED, WINNERS_DRAWN, RESULTS_PUBLISHED
    Column("status", String(20), nullable=False, server_default="DRAFT"),
    Column("winners_drawn_at", DateTime),
    Column("results_message_id", BigInteger),
    Column("results_published_at", DateTime),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

giveaway_entries = Table(
    "giveaway_entries",
    metadata,
    Column("giveaway_id", Integer, ForeignKey("giveaways.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("is_eligible", Boolean, nullable=False, server_default=false()),
    Column("last_checked_at", DateTime),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    PrimaryKeyConstraint("giveaway_id", "user_id"),
)

giveaway_winners = Table(
    "giveaway_winners",
    metadata,
    Column("giveaway_id", Integer, ForeignKey("giveaways.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("place", Integer, nullable=False),
    UniqueConstraint("giveaway_id", "place", name="giveaway_winners_place_key"),
)

giveaway_audit = Table(
    "giveaway_audit",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("giveaway_id", Integer, nullable=False),
    Column("workspace_id", Integer),
    Column("actor_user_id", Integer),
    Column("action", String(64), nullable=False),
    Column("payload", JSON),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

# ============================================
# INDICES FOR PERFORMANCE
# ============================================

Index("idx_giveaways_status_ends", giveaways.c.status, giveaways.c.ends_at)
Index("idx_giveaway_entries_eligible", giveaway_entries.c.giveaway_id, giveaway_entries.c.is_eligible)
Index("idx_giveaway_audit_giveaway", giveaway_audit.c.giveaway_id, giveaway_audit.c.created_at)
Index("idx_retry_credits_user_status", brand_retry_credits.c.user_id, brand_retry_credits.c.status,
      brand_retry_credits.c.expires_at)
Index("idx_official_posts_status_expiry", official_posts.c.status, official_posts.c.slot_expires_at)
Index("idx_barter_threads_retry_scan", barter_threads.c.intro_charge_source, barter_threads.c.buyer_first_msg_at)

REQUIRED_TABLES = [
    "users",
    "workspaces",
    "barter_offers",
    "barter_threads",
    "intro_daily_usage",
    "giveaways",
    "giveaway_entries",
    "giveaway_winners",
    "giveaway_audit",
]

INTRO_THREAD_COLUMNS = {
    "intro_cost",
    "intro_charge_source",
    "intro_charged_at",
    "buyer_first_msg_at",
    "seller_first_reply_at",
    "retry_issued_at",
}


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional features the deployed schema supports (checked once at startup)"""

    retry_credits: bool = True
    intro_columns: bool = True
    official_posts: bool = True


def setup_database(engine):
    """
    Create all giveaway system tables and indices

    Args:
        engine: SQLAlchemy engine instance

    Returns:
        bool: True if successful, False otherwise
    """
    try:
        logger.info("Setting up giveaway system database schema...")
        metadata.create_all(engine)
        logger.info("✅ Giveaway database schema created successfully")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to setup giveaway database: {e}")
        return False


def verify_schema(engine):
    """
    Verify that all required tables exist

    Args:
        engine: SQLAlchemy engine instance

    Returns:
        dict: Status of each table (True/False)
    """
    existing = set(inspect(engine).get_table_names())
    return {table: table in existing for table in REQUIRED_TABLES}


def detect_capabilities(engine):
    """
    Inspect the live schema for optional features.

    Rolling deployments can run new code against a database whose migrations
    have not landed yet; missing pieces switch the matching feature off.

    Args:
        engine: SQLAlchemy engine instance

    Returns:
        SchemaCapabilities
    """
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())

    intro_columns = False
    if "barter_threads" in tables:
        columns = {col["name"] for col in inspector.get_columns("barter_threads")}
        intro_columns = INTRO_THREAD_COLUMNS.issubset(columns)

    capabilities = SchemaCapabilities(
        retry_credits="brand_retry_credits" in tables and intro_columns,
        intro_columns=intro_columns,
        official_posts="official_posts" in tables,
    )

    for name, enabled in vars(capabilities).items():
        if not enabled:
            logger.warning(f"⚠️ Schema not ready for '{name}', feature disabled until migrations run")
    return capabilities
