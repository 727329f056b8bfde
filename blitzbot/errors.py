"""BlitzBot — error taxonomy.

Every failure the engine knows how to recover from has its own type so the
nearest boundary can catch exactly what it expects.
"""


class BlitzBotError(Exception):
    """Base class for all BlitzBot errors."""


class InsufficientData(BlitzBotError, ValueError):
    """Candle series is shorter than an indicator or strategy needs."""


class InvalidCandle(BlitzBotError, ValueError):
    """A candle carries a non-numeric or non-finite price."""


class ConnectionFailure(BlitzBotError):
    """Broker session could not be established or a gateway call failed.

    ``reason`` is the short code reported back to the control plane when a
    session start is rejected.
    """

    def __init__(self, message: str, reason: str = "connection_failed") -> None:
        super().__init__(message)
        self.reason = reason


class OrderSubmissionFailure(BlitzBotError):
    """The broker rejected or failed to acknowledge an order."""


class PersistenceFailure(BlitzBotError):
    """A database read or write failed."""


class ConfigurationError(BlitzBotError, ValueError):
    """A session start or reconfigure command carried an invalid config."""
