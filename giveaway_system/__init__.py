"""
Giveaway System
Settlement tick for time-bound giveaways and the intro credit ledger
"""

__version__ = "1.0.0"

from .database import SchemaCapabilities, detect_capabilities, setup_database, verify_schema
from .draw import DrawResult, choose_pool, draw, iso_millis, verify_draw
from .exceptions import ConfigurationError, GiveawaySystemError, TickAborted
from .ledger import IntroLedger, OpenThreadResult
from .scheduler import GiveawayScheduler, TickResult

__all__ = [
    'SchemaCapabilities',
    'detect_capabilities',
    'setup_database',
    'verify_schema',
    'DrawResult',
    'choose_pool',
    'draw',
    'iso_millis',
    'verify_draw',
    'ConfigurationError',
    'GiveawaySystemError',
    'TickAborted',
    'IntroLedger',
    'OpenThreadResult',
    'GiveawayScheduler',
    'TickResult',
]
