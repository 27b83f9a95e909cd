"""
Exact Kubernetes resource quantity arithmetic for OptiPod.

Quantities are held as Decimal values (cores for CPU, bytes for memory) so
that comparisons and clamping never suffer floating-point rounding.
1000m equals 1 CPU and 1024Mi equals 1Gi.
"""

import logging
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN
from functools import total_ordering
from typing import Union

from kubernetes.utils import parse_quantity

logger = logging.getLogger(__name__)

_BINARY_SUFFIXES = [
    ("Ei", 1024 ** 6),
    ("Pi", 1024 ** 5),
    ("Ti", 1024 ** 4),
    ("Gi", 1024 ** 3),
    ("Mi", 1024 ** 2),
    ("Ki", 1024),
]

_MILLI = Decimal(1000)


class QuantityError(ValueError):
    """Raised when a quantity string cannot be parsed."""
    pass


@total_ordering
class Quantity:
    """
    An exact resource quantity.

    The ``binary`` flag only affects how the value is rendered; two
    quantities compare equal whenever their numeric values are equal.
    """

    __slots__ = ("value", "binary")

    def __init__(self, value: Union[Decimal, int], binary: bool = False):
        self.value = Decimal(value)
        self.binary = binary

    @classmethod
    def parse(cls, text: Union[str, int, float, "Quantity"]) -> "Quantity":
        """
        Parse a Kubernetes quantity string such as "250m", "1.5", "512Mi".

        Raises:
            QuantityError: If the value is empty or malformed.
        """
        if isinstance(text, Quantity):
            return text
        if text is None or (isinstance(text, str) and not text.strip()):
            raise QuantityError("empty quantity")
        try:
            value = parse_quantity(text)
        except (ValueError, TypeError) as e:
            raise QuantityError(f"invalid quantity {text!r}: {e}")
        binary = isinstance(text, str) and text.strip().endswith("i")
        return cls(value, binary=binary)

    @classmethod
    def from_millicores(cls, millicores: int) -> "Quantity":
        return cls(Decimal(int(millicores)) / _MILLI)

    @classmethod
    def from_bytes(cls, num_bytes: int) -> "Quantity":
        return cls(Decimal(int(num_bytes)), binary=True)

    @property
    def millicores(self) -> int:
        """Value in thousandths, rounded up like the API server does."""
        return int((self.value * _MILLI).to_integral_value(rounding=ROUND_CEILING))

    @property
    def bytes(self) -> int:
        return int(self.value.to_integral_value(rounding=ROUND_CEILING))

    def is_positive(self) -> bool:
        return self.value > 0

    def scale_millicores(self, factor: Union[float, Decimal]) -> "Quantity":
        """Multiply and truncate to a whole millicore."""
        scaled = (Decimal(self.millicores) * Decimal(str(factor))).to_integral_value(
            rounding=ROUND_DOWN
        )
        return Quantity.from_millicores(int(scaled))

    def scale_bytes(self, factor: Union[float, Decimal]) -> "Quantity":
        """Multiply and truncate to a whole byte."""
        scaled = (Decimal(self.bytes) * Decimal(str(factor))).to_integral_value(
            rounding=ROUND_DOWN
        )
        return Quantity.from_bytes(int(scaled))

    def copy(self) -> "Quantity":
        return Quantity(self.value, binary=self.binary)

    def __eq__(self, other) -> bool:
        if isinstance(other, str):
            try:
                other = Quantity.parse(other)
            except QuantityError:
                return False
        if not isinstance(other, Quantity):
            return NotImplemented
        return self.value == other.value

    def __lt__(self, other) -> bool:
        if isinstance(other, str):
            other = Quantity.parse(other)
        if not isinstance(other, Quantity):
            return NotImplemented
        return self.value < other.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __repr__(self) -> str:
        return f"Quantity({str(self)!r})"

    def __str__(self) -> str:
        value = self.value
        if value == value.to_integral_value():
            whole = int(value)
            if self.binary and whole:
                for suffix, multiplier in _BINARY_SUFFIXES:
                    if whole % multiplier == 0:
                        return f"{whole // multiplier}{suffix}"
            return str(whole)

        milli = value * _MILLI
        if milli == milli.to_integral_value():
            return f"{int(milli)}m"

        nano = (value * Decimal(10 ** 9)).to_integral_value(rounding=ROUND_CEILING)
        return f"{int(nano)}n"


def quantities_equal(left, right) -> bool:
    """Compare two optional quantity strings numerically."""
    if left is None or right is None:
        return left is None and right is None
    try:
        return Quantity.parse(left) == Quantity.parse(right)
    except QuantityError:
        return str(left) == str(right)
