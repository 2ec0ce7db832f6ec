"""
CartoLab error taxonomy.

Each error also derives from the closest builtin exception so callers that
only know about ValueError / IndexError / RuntimeError still catch them.
"""


class CartolabError(Exception):
    """Base class for all CartoLab errors."""


class InvalidTiterFormat(CartolabError, ValueError):
    """A titer string does not follow the titer grammar."""

    def __init__(self, titer, row=None, col=None):
        self.titer = titer
        self.row = row
        self.col = col
        msg = f"Invalid titer '{titer}'"
        if row is not None and col is not None:
            msg += f" at antigen {row}, serum {col}"
        super().__init__(msg)


class IndexOutOfRange(CartolabError, IndexError):
    """An antigen or serum index lies outside the table."""


class DimensionMismatch(CartolabError, ValueError):
    """Two arrays or tables that must share a shape do not."""


class OptimizationFailure(CartolabError, RuntimeError):
    """Every attempt of an optimization run produced degenerate coordinates."""
