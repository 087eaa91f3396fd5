"""
The range / iteration protocol shared by loops, case ranges and the
sumof / productof / arrayof / lengthof reductions.
"""
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from fractions import Fraction
from typing import Any, Callable, Iterable, Iterator, Optional

from reckon.reckon_convert import add_op, arith, fixup, is_number, to_real
from reckon.reckon_errors import CalcArithmeticError, ConversionError, NullValueError


class Purpose(Enum):
    ALL = "all"
    SELECT = "select"
    SUM = "sum"
    PRODUCT = "product"
    LENGTH = "length"


class NotApplicable(Exception):
    """Raised by final_value() when no closed form exists for these bounds."""


class IterationVisitor:
    """Receives each element of a range, list or collection.

    `apply` returns the running result; setting `stopped` ends the
    iteration early. `final_value` may short-circuit the whole walk for
    a numeric range.
    """
    purpose = Purpose.ALL
    initial: Any = None

    def __init__(self):
        self.stopped = False

    def start(self):
        pass

    def apply(self, value: Any) -> Any:
        raise NotImplementedError

    def finish(self):
        pass

    def final_value(self, start: Any, stop: Any, step: Any) -> Any:
        raise NotApplicable()


# ===================================================================
# Range normalization
# ===================================================================


@dataclass(frozen=True)
class NumericRange:
    start: Any
    stop: Any
    step: Any

    @property
    def exact(self) -> bool:
        return all(isinstance(v, int) for v in (self.start, self.stop, self.step))

    def count(self) -> int:
        span = self.stop - self.start
        if self.exact:
            if (self.step > 0 and span < 0) or (self.step < 0 and span > 0):
                return 0
            return span // self.step + 1
        steps = span / self.step
        if steps < 0:
            return 0
        if isinstance(steps, Decimal):
            return int(steps.to_integral_value(rounding=ROUND_FLOOR)) + 1
        return math.floor(steps) + 1

    def value_at(self, index: int) -> Any:
        return fixup(self.start + index * self.step)

    def last(self) -> Any:
        return self.value_at(self.count() - 1)

    def __iter__(self) -> Iterator[Any]:
        for i in range(self.count()):
            yield self.value_at(i)


def make_range(start: Any, stop: Any, step: Any = None) -> NumericRange:
    """Normalize bounds to int stepping when exact, else Decimal/Fraction stepping."""
    if start is None or stop is None:
        raise NullValueError("Range bounds must not be null")
    start, stop = to_real(start), to_real(stop)
    if step is None:
        step = 1 if start <= stop else -1
    else:
        step = to_real(step)
    values = [fixup(v) for v in (start, stop, step)]
    if not all(isinstance(v, int) for v in values):
        if any(isinstance(v, Decimal) for v in values):
            values = [v if isinstance(v, Decimal) else _as_decimal(v) for v in values]
        else:
            values = [Fraction(v) for v in values]
    if values[2] == 0:
        raise CalcArithmeticError("A step of zero would make an infinite loop")
    return NumericRange(*values)


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Fraction):
        return Decimal(value.numerator) / Decimal(value.denominator)
    return Decimal(value)


# ===================================================================
# Driving a visitor
# ===================================================================


def drive(values: Iterable[Any], visitor: IterationVisitor) -> Any:
    visitor.start()
    try:
        result = visitor.initial
        for value in values:
            result = visitor.apply(value)
            if visitor.stopped:
                break
        return result
    finally:
        visitor.finish()


def iterate_range(rng: NumericRange, visitor: IterationVisitor) -> Any:
    if visitor.purpose is not Purpose.ALL:
        try:
            return visitor.final_value(rng.start, rng.stop, rng.step)
        except NotApplicable:
            pass
    return drive(rng, visitor)


def iterate_values(values: Iterable[Any], visitor: IterationVisitor) -> Any:
    """Explicit lists and enumerated collections: no shortcut is attempted."""
    return drive(values, visitor)


# ===================================================================
# Closed forms
# ===================================================================


def range_length(start: Any, stop: Any, step: Any) -> int:
    return NumericRange(start, stop, step).count()


def range_sum(start: Any, stop: Any, step: Any, rational: bool = False) -> Any:
    rng = NumericRange(start, stop, step)
    count = rng.count()
    if count == 0:
        return 0
    first_plus_last = arith('+', rng.start, rng.last(), rational)
    return arith('/', arith('*', count, first_plus_last, rational), 2, rational)


def range_product(start: Any, stop: Any, step: Any) -> Any:
    rng = NumericRange(start, stop, step)
    if not rng.exact:
        raise NotApplicable()
    count = rng.count()
    if count == 0:
        return 1
    lo, hi = min(rng.start, rng.last()), max(rng.start, rng.last())
    if lo <= 0 <= hi:
        # A non-unit step can pass over zero.
        if -rng.start % rng.step == 0:
            return 0
        raise NotApplicable()
    if abs(rng.step) != 1 or lo < 1:
        raise NotApplicable()
    # lo..hi with unit step is hi! / (lo - 1)!
    return math.factorial(hi) // math.factorial(lo - 1)


def range_contains(target: Any, start: Any, stop: Any, step: Any) -> bool:
    if isinstance(target, bool) or not is_number(target):
        raise NotApplicable()
    try:
        t = to_real(target)
    except ConversionError:
        raise NotApplicable()
    rng = NumericRange(start, stop, step)
    count = rng.count()
    if count == 0:
        return False
    if isinstance(rng.start, Decimal):
        t = _as_decimal(t)
    elif isinstance(rng.start, Fraction):
        t = Fraction(t)
    offset = t - rng.start
    if rng.exact and isinstance(t, int):
        index, remainder = divmod(offset, rng.step)
        return remainder == 0 and 0 <= index < count
    index = offset / rng.step
    return index == int(index) and 0 <= index < count


# ===================================================================
# Reduction visitors
# ===================================================================


class CollectVisitor(IterationVisitor):
    purpose = Purpose.ALL

    def __init__(self):
        super().__init__()
        self.initial = []
        self.items = []

    def apply(self, value):
        self.items.append(value)
        return self.items


class SumVisitor(IterationVisitor):
    purpose = Purpose.SUM
    initial = 0

    def __init__(self, rational: bool = False):
        super().__init__()
        self.rational = rational
        self.total = 0
        self.empty = True

    def apply(self, value):
        # The first element seeds the total.
        self.total = value if self.empty else add_op(self.total, value, self.rational)
        self.empty = False
        return self.total

    def final_value(self, start, stop, step):
        return range_sum(start, stop, step, self.rational)


class ProductVisitor(IterationVisitor):
    purpose = Purpose.PRODUCT
    initial = 1

    def __init__(self, rational: bool = False):
        super().__init__()
        self.rational = rational
        self.total = 1

    def apply(self, value):
        self.total = arith('*', self.total, value, self.rational)
        return self.total

    def final_value(self, start, stop, step):
        return range_product(start, stop, step)


class LengthVisitor(IterationVisitor):
    purpose = Purpose.LENGTH
    initial = 0

    def __init__(self):
        super().__init__()
        self.count = 0

    def apply(self, value):
        self.count += 1
        return self.count

    def final_value(self, start, stop, step):
        return range_length(start, stop, step)


class SelectVisitor(IterationVisitor):
    """Membership test: stops at the first element equal to `target`."""
    purpose = Purpose.SELECT
    initial = False

    def __init__(self, target: Any, equals: Callable[[Any, Any], bool]):
        super().__init__()
        self.target = target
        self.equals = equals

    def apply(self, value):
        if self.equals(self.target, value):
            self.stopped = True
            return True
        return False

    def final_value(self, start, stop, step):
        return range_contains(self.target, start, stop, step)


def visitor_for(purpose: Purpose, rational: bool = False) -> Optional[IterationVisitor]:
    match purpose:
        case Purpose.ALL:
            return CollectVisitor()
        case Purpose.SUM:
            return SumVisitor(rational)
        case Purpose.PRODUCT:
            return ProductVisitor(rational)
        case Purpose.LENGTH:
            return LengthVisitor()
    return None
