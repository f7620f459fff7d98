class OrderBotError(Exception):
    """Base class for errors the dialogue engine knows how to recover from."""


class ValidationError(OrderBotError):
    """Bad user input: non-numeric quantity, search term too short, etc."""


class InvariantViolation(ValidationError):
    """An operation was attempted in a state that does not allow it (empty cart checkout)."""


class NotFoundError(OrderBotError):
    """Unknown client, category or product id."""


class UpstreamUnavailable(OrderBotError):
    """The catalog or order store could not be reached after retrying."""
