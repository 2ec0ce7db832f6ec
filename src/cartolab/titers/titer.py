"""
CartoLab Titers: single reactivity measurements.

A titer is either an exact measurement ("40"), a censored bound ("<10",
">1280") or missing ("*"). Censored titers are kept as a tagged type rather
than folded into a sentinel number so the stress function can branch on
them.

Log titers follow the hemagglutination convention log2(titer / 10), shifted
one dilution step beyond the recorded bound for censored values.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union

import numpy as np

from cartolab.errors import InvalidTiterFormat

TITER_LOG_BASE = 10

# Largest magnitude a TiterTable can store
MAX_TITER = int(np.iinfo(np.int64).max)


class TiterType(Enum):
    """
    Kind of titer measurement.

    The integer values match the compact type codes used in the titer
    arrays (``TiterTable.titer_types``).
    """
    MISSING = 0
    MEASURED = 1
    LESSTHAN = 2
    MORETHAN = 3

    @property
    def prefix(self) -> str:
        return {
            TiterType.LESSTHAN: "<",
            TiterType.MORETHAN: ">",
        }.get(self, "")


@dataclass(frozen=True)
class Titer:
    """
    An immutable titer value.

    Attributes:
        type: Measurement kind.
        value: Integer magnitude (>= 1), 0 for missing titers.

    Example:
        >>> t = Titer.parse("<10")
        >>> t.type
        <TiterType.LESSTHAN: 2>
        >>> t.log_value()
        -1.0
    """
    type: TiterType
    value: int = 0

    def __post_init__(self):
        if self.type == TiterType.MISSING:
            if self.value != 0:
                raise InvalidTiterFormat(f"*{self.value}")
        elif not 1 <= int(self.value) <= MAX_TITER:
            raise InvalidTiterFormat(f"{self.type.prefix}{self.value}")

    @classmethod
    def parse(cls, titer: str) -> "Titer":
        """
        Parse a titer string.

        Valid strings are "*" or an optional "<"/">" followed by a digit
        string that does not start with 0.

        Raises:
            InvalidTiterFormat: If the string breaks the grammar.
        """
        if not isinstance(titer, str):
            raise InvalidTiterFormat(titer)
        if titer == "*":
            return cls.missing()

        titer_type = TiterType.MEASURED
        digits = titer
        if titer[:1] == "<":
            titer_type = TiterType.LESSTHAN
            digits = titer[1:]
        elif titer[:1] == ">":
            titer_type = TiterType.MORETHAN
            digits = titer[1:]

        # str.isdigit accepts unicode digits, restrict to ASCII
        if (
            not digits
            or digits[0] == "0"
            or any(c not in "0123456789" for c in digits)
        ):
            raise InvalidTiterFormat(titer)

        return cls(titer_type, int(digits))

    @classmethod
    def coerce(cls, titer: Union["Titer", str, int]) -> "Titer":
        """Convert a Titer, titer string or positive integer to a Titer."""
        if isinstance(titer, Titer):
            return titer
        if isinstance(titer, (int, np.integer)) and not isinstance(titer, bool):
            if titer < 1:
                raise InvalidTiterFormat(str(titer))
            return cls.measured(int(titer))
        return cls.parse(titer)

    @classmethod
    def missing(cls) -> "Titer":
        return cls(TiterType.MISSING, 0)

    @classmethod
    def measured(cls, value: int) -> "Titer":
        return cls(TiterType.MEASURED, int(value))

    @classmethod
    def less_than(cls, value: int) -> "Titer":
        return cls(TiterType.LESSTHAN, int(value))

    @classmethod
    def more_than(cls, value: int) -> "Titer":
        return cls(TiterType.MORETHAN, int(value))

    @property
    def is_missing(self) -> bool:
        return self.type == TiterType.MISSING

    @property
    def is_measured(self) -> bool:
        return self.type == TiterType.MEASURED

    @property
    def is_censored(self) -> bool:
        return self.type in (TiterType.LESSTHAN, TiterType.MORETHAN)

    def to_string(self) -> str:
        """Canonical string form, parseable by Titer.parse."""
        if self.is_missing:
            return "*"
        return f"{self.type.prefix}{self.value}"

    def __str__(self) -> str:
        return self.to_string()

    def numeric(self) -> float:
        """Titer magnitude, NaN if missing."""
        if self.is_missing:
            return float("nan")
        return float(self.value)

    def log_value(self) -> float:
        """
        Log2 titer relative to the base dilution.

        Censored titers are moved one step beyond their bound: -1 for "<",
        +1 for ">". Missing titers give NaN.
        """
        if self.is_missing:
            return float("nan")
        log_titer = float(np.log2(self.value / TITER_LOG_BASE))
        if self.type == TiterType.LESSTHAN:
            return log_titer - 1.0
        if self.type == TiterType.MORETHAN:
            return log_titer + 1.0
        return log_titer


def numeric_titers(titers: Iterable[Union[Titer, str]]) -> np.ndarray:
    """Numeric magnitudes of a sequence of titers (NaN for missing)."""
    return np.array([Titer.coerce(t).numeric() for t in titers], dtype=float)


def log_titers(titers: Iterable[Union[Titer, str]]) -> np.ndarray:
    """Log titers of a sequence of titers (NaN for missing)."""
    return np.array([Titer.coerce(t).log_value() for t in titers], dtype=float)


def titer_types(titers: Iterable[Union[Titer, str]]) -> np.ndarray:
    """Integer type codes (see TiterType) of a sequence of titers."""
    return np.array([Titer.coerce(t).type.value for t in titers], dtype=np.int8)
