"""Exception types raised by chromstate.

Every failure aborts the current run; nothing here is retried.
"""


class ChromStateError(Exception):
    """Base class for chromstate errors."""


class InputFormatError(ChromStateError, ValueError):
    """Malformed binary signal file, mismatched mark sets, or bad model file."""


class InitializationError(ChromStateError, ValueError):
    """The requested parameter initialization cannot be produced."""


class NumericalError(ChromStateError, ArithmeticError):
    """A scaling factor or normalization denominator became zero."""
