from __future__ import annotations


class TradeError(Exception):
    """Base class for every error raised by the accounting engines."""


class TradeValidationError(TradeError, ValueError):
    """The caller asked for something the rules do not allow.

    The message always names the offending quantity, e.g.
    ``cannot sell more than available amount (0.5 BTC)``.
    """


class EntryFieldsImmutableError(TradeValidationError):
    """Entry price/amount/cost edits attempted on a CLOSED trade."""


class TradeNotFoundError(TradeError, LookupError):
    """A referenced trade, parent trade or portfolio does not exist."""


class InvariantViolationError(TradeError, RuntimeError):
    """An internal invariant would be broken (e.g. dividing cost by zero coins).

    Raised instead of letting ``inf``/``nan`` leak into stored prices.
    """
