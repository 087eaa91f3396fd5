import math
from dataclasses import dataclass
from decimal import Decimal, localcontext, getcontext
from fractions import Fraction
from typing import Iterable, List, Tuple, Union

from reckon.reckon_errors import CalcArithmeticError

Real = Union[int, Decimal, Fraction]

# ===================================================================
# Component helpers
# ===================================================================


def fraction_to_decimal(value: Fraction) -> Decimal:
    return Decimal(value.numerator) / Decimal(value.denominator)


def as_component(value: Real, rational: bool) -> Real:
    """Coerce a real number to the component kind used by Complex/Quaternion."""
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        return value
    if rational:
        return Fraction(value) if isinstance(value, Decimal) else value
    if isinstance(value, Fraction):
        return fraction_to_decimal(value)
    return value


def is_rational_component(value: Real) -> bool:
    return isinstance(value, (int, Fraction)) and not isinstance(value, bool)


def _harmonize(values: Iterable[Real]) -> List[Real]:
    values = list(values)
    rational = not any(isinstance(v, Decimal) for v in values)
    return [as_component(v, rational) for v in values]


def fixup_real(value: Real) -> Real:
    """Canonical form of a real: whole values become int, decimals lose trailing zeros."""
    if isinstance(value, bool) or isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise CalcArithmeticError(f"Result is not a finite number: {value}")
        if value == value.to_integral_value():
            return int(value)
        return value.normalize()
    if isinstance(value, Fraction):
        return value.numerator if value.denominator == 1 else value
    return value


# ===================================================================
# Complex numbers
# ===================================================================


@dataclass(frozen=True)
class ComplexNumber:
    re: Real
    im: Real

    @classmethod
    def of(cls, re: Real, im: Real) -> 'ComplexNumber':
        re, im = _harmonize((re, im))
        return cls(re, im)

    def is_real(self) -> bool:
        return self.im == 0

    def __add__(self, other: 'ComplexNumber') -> 'ComplexNumber':
        return ComplexNumber.of(self.re + other.re, self.im + other.im)

    def __sub__(self, other: 'ComplexNumber') -> 'ComplexNumber':
        return ComplexNumber.of(self.re - other.re, self.im - other.im)

    def __mul__(self, other: 'ComplexNumber') -> 'ComplexNumber':
        return ComplexNumber.of(self.re * other.re - self.im * other.im,
                                self.re * other.im + self.im * other.re)

    def __truediv__(self, other: 'ComplexNumber') -> 'ComplexNumber':
        denom = other.re * other.re + other.im * other.im
        if denom == 0:
            raise CalcArithmeticError("Divide by zero")
        num = self * other.conjugate()
        if isinstance(denom, int) and isinstance(num.re, int):
            return ComplexNumber.of(Fraction(num.re, denom), Fraction(num.im, denom))
        return ComplexNumber.of(num.re / denom, num.im / denom)

    def __neg__(self) -> 'ComplexNumber':
        return ComplexNumber(-self.re, -self.im)

    def conjugate(self) -> 'ComplexNumber':
        return ComplexNumber(self.re, -self.im)

    def norm_squared(self) -> Real:
        return self.re * self.re + self.im * self.im

    def magnitude(self) -> Decimal:
        return dec_sqrt(to_dec(self.norm_squared()))

    def argument(self, pi: Decimal) -> Decimal:
        return dec_atan2(to_dec(self.im), to_dec(self.re), pi)

    def int_power(self, n: int) -> 'ComplexNumber':
        if n < 0:
            return ComplexNumber.of(1, 0) / self.int_power(-n)
        result, base = ComplexNumber.of(1, 0), self
        while n:
            if n & 1:
                result = result * base
            base = base * base
            n >>= 1
        return result

    def power(self, exponent: Real, pi: Decimal) -> 'ComplexNumber':
        """Principal value of self ** exponent for a real exponent."""
        if isinstance(exponent, int) or (not isinstance(exponent, Decimal) and exponent == int(exponent)):
            return self.int_power(int(exponent))
        r = self.magnitude()
        if r == 0:
            return ComplexNumber.of(0, 0)
        p = to_dec(exponent)
        theta = self.argument(pi) * p
        rp = dec_power(r, p)
        return ComplexNumber.of(rp * dec_cos(theta, pi), rp * dec_sin(theta, pi))

    def fixup(self) -> 'ComplexNumber':
        return ComplexNumber(fixup_real(self.re), fixup_real(self.im))


# ===================================================================
# Quaternions
# ===================================================================


@dataclass(frozen=True)
class Quaternion:
    a: Real
    b: Real
    c: Real
    d: Real

    @classmethod
    def of(cls, a: Real, b: Real = 0, c: Real = 0, d: Real = 0) -> 'Quaternion':
        return cls(*_harmonize((a, b, c, d)))

    @classmethod
    def from_complex(cls, z: ComplexNumber) -> 'Quaternion':
        return cls.of(z.re, z.im, 0, 0)

    def components(self) -> Tuple[Real, Real, Real, Real]:
        return (self.a, self.b, self.c, self.d)

    def is_real(self) -> bool:
        return self.b == 0 and self.c == 0 and self.d == 0

    def __add__(self, o: 'Quaternion') -> 'Quaternion':
        return Quaternion.of(self.a + o.a, self.b + o.b, self.c + o.c, self.d + o.d)

    def __sub__(self, o: 'Quaternion') -> 'Quaternion':
        return Quaternion.of(self.a - o.a, self.b - o.b, self.c - o.c, self.d - o.d)

    def __mul__(self, o: 'Quaternion') -> 'Quaternion':
        a1, b1, c1, d1 = self.components()
        a2, b2, c2, d2 = o.components()
        return Quaternion.of(
            a1 * a2 - b1 * b2 - c1 * c2 - d1 * d2,
            a1 * b2 + b1 * a2 + c1 * d2 - d1 * c2,
            a1 * c2 - b1 * d2 + c1 * a2 + d1 * b2,
            a1 * d2 + b1 * c2 - c1 * b2 + d1 * a2,
        )

    def __neg__(self) -> 'Quaternion':
        return Quaternion(-self.a, -self.b, -self.c, -self.d)

    def conjugate(self) -> 'Quaternion':
        return Quaternion(self.a, -self.b, -self.c, -self.d)

    def norm_squared(self) -> Real:
        return sum(x * x for x in self.components())

    def magnitude(self) -> Decimal:
        return dec_sqrt(to_dec(self.norm_squared()))

    def inverse(self) -> 'Quaternion':
        n = self.norm_squared()
        if n == 0:
            raise CalcArithmeticError("Divide by zero")
        conj = self.conjugate()
        if isinstance(n, int):
            return Quaternion.of(*(Fraction(x, n) if isinstance(x, int) else x / n for x in conj.components()))
        return Quaternion.of(*(x / n for x in conj.components()))

    def __truediv__(self, o: 'Quaternion') -> 'Quaternion':
        return self * o.inverse()

    def int_power(self, n: int) -> 'Quaternion':
        if n < 0:
            return self.inverse().int_power(-n)
        result, base = Quaternion.of(1), self
        while n:
            if n & 1:
                result = result * base
            base = base * base
            n >>= 1
        return result

    def fixup(self) -> 'Quaternion':
        return Quaternion(*(fixup_real(x) for x in self.components()))


# ===================================================================
# Continued fractions
# ===================================================================


@dataclass(frozen=True)
class ContinuedFraction:
    terms: Tuple[int, ...]

    MAX_TERMS = 100

    @classmethod
    def from_fraction(cls, value: Fraction) -> 'ContinuedFraction':
        terms = []
        num, den = value.numerator, value.denominator
        while den and len(terms) < cls.MAX_TERMS:
            q = num // den
            terms.append(q)
            num, den = den, num - q * den
        return cls(tuple(terms))

    @classmethod
    def from_value(cls, value: Real) -> 'ContinuedFraction':
        return cls.from_fraction(Fraction(value))

    @classmethod
    def from_terms(cls, terms: Iterable[int]) -> 'ContinuedFraction':
        terms = tuple(int(t) for t in terms)
        if not terms:
            raise CalcArithmeticError("A continued fraction needs at least one term")
        if any(t <= 0 for t in terms[1:]):
            raise CalcArithmeticError("Continued fraction terms after the first must be positive")
        return cls(terms)

    def to_fraction(self) -> Fraction:
        result = Fraction(self.terms[-1])
        for t in reversed(self.terms[:-1]):
            result = t + 1 / result
        return result

    def __eq__(self, other):
        if isinstance(other, ContinuedFraction):
            return self.to_fraction() == other.to_fraction()
        return NotImplemented

    def __hash__(self):
        return hash(self.to_fraction())


# ===================================================================
# Decimal math (current decimal context)
# ===================================================================


def to_dec(value: Real) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Fraction):
        return fraction_to_decimal(value)
    return Decimal(value)


def compute_pi(digits: int) -> Decimal:
    """pi to `digits` significant digits via Machin's formula in fixed point."""
    guard = 10
    unity = 10 ** (digits + guard)

    def arccot(x: int) -> int:
        total = term = unity // x
        x2, n, sign = x * x, 1, -1
        while term:
            term //= x2
            n += 2
            total += sign * (term // n)
            sign = -sign
        return total

    fixed = 4 * (4 * arccot(5) - arccot(239))
    with localcontext() as ctx:
        ctx.prec = digits
        return +Decimal(fixed).scaleb(-(digits + guard))


def compute_e(digits: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = digits
        return Decimal(1).exp()


def compute_phi(digits: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = digits
        return (1 + Decimal(5).sqrt()) / 2


def _reduce_angle(x: Decimal, pi: Decimal) -> Decimal:
    two_pi = 2 * pi
    if abs(x) > two_pi:
        x = x - two_pi * (x / two_pi).to_integral_value()
    return x


def dec_sin(x: Decimal, pi: Decimal) -> Decimal:
    with localcontext() as ctx:
        ctx.prec += 5
        x = _reduce_angle(to_dec(x), pi)
        i, lasts, s, fact, num, sign = 1, 0, x, 1, x, 1
        while s != lasts:
            lasts = s
            i += 2
            fact *= i * (i - 1)
            num *= x * x
            sign *= -1
            s += num / fact * sign
    return +s


def dec_cos(x: Decimal, pi: Decimal) -> Decimal:
    with localcontext() as ctx:
        ctx.prec += 5
        x = _reduce_angle(to_dec(x), pi)
        i, lasts, s, fact, num, sign = 0, 0, Decimal(1), 1, Decimal(1), 1
        while s != lasts:
            lasts = s
            i += 2
            fact *= i * (i - 1)
            num *= x * x
            sign *= -1
            s += num / fact * sign
    return +s


def dec_atan(x: Decimal, pi: Decimal) -> Decimal:
    x = to_dec(x)
    with localcontext() as ctx:
        ctx.prec += 5
        if x < 0:
            return -dec_atan(-x, pi)
        # Halve the argument until the series converges quickly.
        halvings = 0
        while x > Decimal("0.1"):
            x = x / (1 + (1 + x * x).sqrt())
            halvings += 1
        x2 = x * x
        term, total, n, lasts = x, x, 1, 0
        while total != lasts:
            lasts = total
            term *= -x2
            n += 2
            total += term / n
        total *= 2 ** halvings
    return +total


def dec_atan2(y: Decimal, x: Decimal, pi: Decimal) -> Decimal:
    y, x = to_dec(y), to_dec(x)
    if x > 0:
        return dec_atan(y / x, pi)
    if x < 0:
        base = dec_atan(y / x, pi)
        return base + pi if y >= 0 else base - pi
    if y > 0:
        return pi / 2
    if y < 0:
        return -pi / 2
    return Decimal(0)


def dec_asin(x: Decimal, pi: Decimal) -> Decimal:
    x = to_dec(x)
    if abs(x) > 1:
        raise CalcArithmeticError(f"asin argument out of range: {x}")
    if abs(x) == 1:
        return pi / 2 * x
    with localcontext() as ctx:
        ctx.prec += 5
        result = dec_atan(x / (1 - x * x).sqrt(), pi)
    return +result


def dec_acos(x: Decimal, pi: Decimal) -> Decimal:
    with localcontext() as ctx:
        ctx.prec += 5
        result = pi / 2 - dec_asin(x, pi)
    return +result


def dec_sqrt(x: Decimal) -> Decimal:
    x = to_dec(x)
    if x < 0:
        raise CalcArithmeticError(f"Square root of negative number: {x}")
    return x.sqrt()


def dec_power(base: Decimal, exponent: Decimal) -> Decimal:
    base, exponent = to_dec(base), to_dec(exponent)
    if base == 0:
        return Decimal(0)
    if base < 0:
        raise CalcArithmeticError("Negative base with a fractional exponent")
    with localcontext() as ctx:
        ctx.prec += 5
        result = (exponent * base.ln()).exp()
    return +result


def dec_root(x: Decimal, n: int) -> Decimal:
    """Real n-th root; odd roots of negatives are negative."""
    x = to_dec(x)
    if n == 0:
        raise CalcArithmeticError("Zero-th root is undefined")
    if x == 0:
        return Decimal(0)
    negative = x < 0
    if negative and n % 2 == 0:
        raise CalcArithmeticError(f"Even root of negative number: {x}")
    with localcontext() as ctx:
        ctx.prec += 5
        ax = -x if negative else x
        guess = dec_power(ax, Decimal(1) / abs(n))
        # One Newton step polishes the exp/ln estimate.
        guess = guess - (guess ** abs(n) - ax) / (abs(n) * guess ** (abs(n) - 1))
        if n < 0:
            guess = 1 / guess
    return +(-guess if negative else guess)


def dec_sinh(x: Decimal) -> Decimal:
    x = to_dec(x)
    with localcontext() as ctx:
        ctx.prec += 5
        ex = x.exp()
        result = (ex - 1 / ex) / 2
    return +result


def dec_cosh(x: Decimal) -> Decimal:
    x = to_dec(x)
    with localcontext() as ctx:
        ctx.prec += 5
        ex = x.exp()
        result = (ex + 1 / ex) / 2
    return +result


def dec_tanh(x: Decimal) -> Decimal:
    x = to_dec(x)
    with localcontext() as ctx:
        ctx.prec += 5
        e2 = (2 * x).exp()
        result = (e2 - 1) / (e2 + 1)
    return +result


# ===================================================================
# Integer functions
# ===================================================================


def fib(n: int) -> int:
    """Fibonacci by fast doubling; F(-n) = (-1)**(n+1) * F(n)."""
    if n < 0:
        f = fib(-n)
        return f if n % 2 else -f

    def _fd(k: int) -> Tuple[int, int]:
        if k == 0:
            return 0, 1
        a, b = _fd(k >> 1)
        c = a * (2 * b - a)
        d = a * a + b * b
        return (d, c + d) if k & 1 else (c, d)

    return _fd(n)[0]


def factorial(n: int) -> int:
    if n < 0:
        return -math.factorial(-n)
    return math.factorial(n)


def is_prime(n: int) -> bool:
    if n < 2:
        return False
    small = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37)
    for p in small:
        if n % p == 0:
            return n == p
    d, s = n - 1, 0
    while d % 2 == 0:
        d //= 2
        s += 1
    for a in small:
        x = pow(a, d, n)
        if x in (1, n - 1):
            continue
        for _ in range(s - 1):
            x = pow(x, 2, n)
            if x == n - 1:
                break
        else:
            return False
    return True


def current_precision() -> int:
    return getcontext().prec


