class NightscoutError(Exception):
    """Raised when Nightscout interaction fails."""


class TranslationDefect(ValueError):
    """A single treatment record could not be translated into pump events."""


class AccountingError(Exception):
    """The event window could not be turned into IOB or meal state."""


class DecisionError(Exception):
    """The decision engine failed or returned something unusable."""
