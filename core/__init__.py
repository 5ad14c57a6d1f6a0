"""
Core modules for the giveaway service

Modules:
- cron_server: Flask app exposing the giveaway tick to external schedulers
"""

from .cron_server import create_app, get_bearer_token

__all__ = [
    'create_app',
    'get_bearer_token',
]
