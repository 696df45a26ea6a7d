"""Exception taxonomy shared by the services and the HTTP layer.

Every error derives from ``ValueError`` so callers that only care about
"bad input or bad state" can keep catching that.
"""


class PnlError(ValueError):
    pass


class ValidationError(PnlError):
    """Out-of-range year/month, malformed amount, bad category name."""


class PolicyViolationError(PnlError):
    """A manual-ledger operation aimed at a category that is not manual."""


class NotFoundError(PnlError):
    pass


class ReferentialIntegrityError(PnlError):
    """A category cannot be deleted while records still point at it."""


class UpstreamUnavailableError(PnlError):
    """A data source or the exchange-rate provider could not be reached."""


class InvariantViolationError(PnlError):
    """Raised when an internal consistency check on a report fails."""
