"""Exceptions raised by the giveaway system."""


class GiveawaySystemError(Exception):
    """Base class for errors raised by this package"""


class ConfigurationError(GiveawaySystemError):
    """Required configuration is missing or invalid"""


class TickAborted(GiveawaySystemError):
    """
    A tick phase hit an unexpected store error.

    Remaining phases were skipped and the lock was released. The partial
    summary collected before the failure is attached as ``result``.
    """

    def __init__(self, phase, result, cause=None):
        super().__init__(f"Tick aborted in phase '{phase}': {cause}")
        self.phase = phase
        self.result = result
        self.cause = cause
