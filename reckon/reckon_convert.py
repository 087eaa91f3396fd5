import functools
import re
from decimal import Decimal, InvalidOperation, getcontext
from fractions import Fraction
from typing import Any, Callable, Optional, Tuple

from reckon.reckon_datatypes import CalcSet, FunctionDeclaration
from reckon.reckon_errors import (
    CalcArithmeticError, ConversionError, NullValueError, UnknownOperatorError,
)
from reckon.reckon_numeric import (
    ComplexNumber, ContinuedFraction, Quaternion, as_component, compute_pi, dec_power, dec_root, factorial,
    fixup_real, fraction_to_decimal,
    to_dec,
)

MASK64 = (1 << 64) - 1

# ===================================================================
# Kinds
# ===================================================================

# Order used when values of unrelated kinds have to be ordered.
KIND_RANK = {
    'null': 0, 'boolean': 1, 'integer': 2, 'decimal': 3, 'fraction': 4, 'continuedfraction': 5,
    'complex': 6, 'quaternion': 7, 'string': 8, 'array': 9, 'object': 10, 'set': 11, 'function': 12,
}

# Promotion priority among the numeric kinds.
NUMERIC_RANK = {
    'boolean': 0, 'integer': 1, 'decimal': 2, 'fraction': 3, 'continuedfraction': 4,
    'complex': 5, 'quaternion': 6,
}


def kind_of(value: Any) -> str:
    match value:
        case None:
            return 'null'
        case bool():
            return 'boolean'
        case int():
            return 'integer'
        case Decimal():
            return 'decimal'
        case Fraction():
            return 'fraction'
        case ContinuedFraction():
            return 'continuedfraction'
        case ComplexNumber():
            return 'complex'
        case Quaternion():
            return 'quaternion'
        case str():
            return 'string'
        case list():
            return 'array'
        case dict():
            return 'object'
        case CalcSet():
            return 'set'
        case FunctionDeclaration():
            return 'function'
        case _ if callable(value):
            return 'function'
    raise ConversionError(f"Unsupported value type: {type(value).__name__}")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, Decimal, Fraction, ContinuedFraction, ComplexNumber, Quaternion))


def is_collection(value: Any) -> bool:
    return isinstance(value, (list, dict, CalcSet))


# ===================================================================
# Canonical form
# ===================================================================


def fixup(value: Any) -> Any:
    """Canonicalize a numeric result; other values pass through unchanged."""
    match value:
        case bool():
            return value
        case int() | Decimal() | Fraction():
            return fixup_real(value)
        case ComplexNumber():
            z = value.fixup()
            return z.re if z.im == 0 else z
        case Quaternion():
            q = value.fixup()
            return q.a if q.is_real() else q
        case _:
            return value


# ===================================================================
# Conversions
# ===================================================================

_INT_RE = re.compile(r'^[+-]?\d+$')
_RADIX_RE = re.compile(r'^([+-]?)0([xXbBoO])([0-9a-fA-F]+)$')
_FRACTION_RE = re.compile(r'^\s*([+-]?\d+)\s*/\s*(\d+)\s*$')
_TRUE_WORDS = {'true', 'yes', 'on', '1'}
_FALSE_WORDS = {'false', 'no', 'off', '0'}


def parse_number(text: str) -> Any:
    """Parse a numeric string: integer (incl. 0x/0b/0o), n/d, or decimal text."""
    s = text.strip().replace('_', '')
    if _INT_RE.match(s):
        return int(s)
    m = _RADIX_RE.match(s)
    if m:
        base = {'x': 16, 'b': 2, 'o': 8}[m.group(2).lower()]
        try:
            n = int(m.group(3), base)
        except ValueError:
            raise ConversionError(f"Cannot convert \"{text}\" to a number")
        return -n if m.group(1) == '-' else n
    m = _FRACTION_RE.match(s)
    if m:
        if int(m.group(2)) == 0:
            raise CalcArithmeticError("Divide by zero")
        return fixup(Fraction(int(m.group(1)), int(m.group(2))))
    try:
        d = Decimal(s)
    except InvalidOperation:
        raise ConversionError(f"Cannot convert \"{text}\" to a number")
    if not d.is_finite():
        raise ConversionError(f"Cannot convert \"{text}\" to a number")
    return fixup(d)


def to_number(value: Any) -> Any:
    """Any numeric kind, parsing strings; booleans become 1/0."""
    match value:
        case None:
            raise NullValueError("Value must not be null")
        case bool():
            return int(value)
        case str():
            return parse_number(value)
        case _ if is_number(value):
            return value
    raise ConversionError(f"Cannot convert {kind_of(value)} to a number")


def to_real(value: Any) -> Any:
    """int, Decimal or Fraction; complex/quaternion only when purely real."""
    value = to_number(value)
    match value:
        case ContinuedFraction():
            return value.to_fraction()
        case ComplexNumber():
            if not value.is_real():
                raise ConversionError("Complex value has an imaginary part")
            return value.re
        case Quaternion():
            if not value.is_real():
                raise ConversionError("Quaternion value has a vector part")
            return value.a
    return value


def to_decimal(value: Any) -> Decimal:
    value = to_number(value)
    match value:
        case int():
            return Decimal(value)
        case Decimal():
            return value
        case Fraction():
            return fraction_to_decimal(value)
        case ContinuedFraction():
            return fraction_to_decimal(value.to_fraction())
        case ComplexNumber() | Quaternion():
            if value.is_real():
                return to_dec(value.re if isinstance(value, ComplexNumber) else value.a)
            return value.magnitude()
    raise ConversionError(f"Cannot convert {kind_of(value)} to a decimal")


def to_fraction(value: Any) -> Fraction:
    real = to_real(value)
    return Fraction(real)


def to_integer(value: Any) -> int:
    real = to_real(value)
    if isinstance(real, int):
        return real
    if real != int(real):
        raise CalcArithmeticError(f"Value is not an exact integer: {real}")
    return int(real)


def to_boolean(value: Any) -> bool:
    match value:
        case None:
            return False
        case bool():
            return value
        case str():
            word = value.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
            return value != ""
        case list() | dict() | CalcSet():
            return len(value) > 0
        case ComplexNumber() | Quaternion():
            return not (value.is_real() and (value.re if isinstance(value, ComplexNumber) else value.a) == 0)
        case ContinuedFraction():
            return value.to_fraction() != 0
        case _ if is_number(value):
            return value != 0
    return True


def to_complex(value: Any, rational: bool) -> ComplexNumber:
    value = to_number(value)
    if isinstance(value, ComplexNumber):
        return ComplexNumber(as_component(value.re, rational), as_component(value.im, rational))
    if isinstance(value, Quaternion):
        raise ConversionError("Cannot convert a quaternion to a complex number")
    real = to_real(value)
    return ComplexNumber(as_component(real, rational), 0)


def to_quaternion(value: Any, rational: bool) -> Quaternion:
    value = to_number(value)
    if isinstance(value, Quaternion):
        return Quaternion(*(as_component(x, rational) for x in value.components()))
    if isinstance(value, ComplexNumber):
        return Quaternion(as_component(value.re, rational), as_component(value.im, rational), 0, 0)
    return Quaternion(as_component(to_real(value), rational), 0, 0, 0)


def to_text(value: Any) -> str:
    """Unquoted text of a value, as used by concatenation and string compares."""
    match value:
        case None:
            return ""
        case bool():
            return "true" if value else "false"
        case str():
            return value
        case int():
            return str(value)
        case Decimal():
            return format(value, 'f')
    from reckon.reckon_printer import Printer
    return Printer().pformat(value, quote=False)


# ===================================================================
# Promotion
# ===================================================================


def numeric_kind(value: Any) -> str:
    kind = kind_of(value)
    if kind not in NUMERIC_RANK:
        raise ConversionError(f"Expected a number but got {kind}")
    return kind


def promote(a: Any, b: Any, rational: bool) -> Tuple[str, Any, Any]:
    """Coerce two numbers to their common kind.

    Returns (kind, a, b). Continued fractions are computed on as
    Fractions and the caller re-wraps the result.
    """
    a, b = to_number(a), to_number(b)
    kind = max(numeric_kind(a), numeric_kind(b), key=NUMERIC_RANK.__getitem__)
    if kind == 'integer' or kind == 'boolean':
        return 'integer', int(a), int(b)
    if kind == 'decimal' and rational:
        kind = 'fraction'
    match kind:
        case 'decimal':
            return kind, to_decimal(a), to_decimal(b)
        case 'fraction' | 'continuedfraction':
            if not rational and kind == 'fraction' and (isinstance(a, Decimal) or isinstance(b, Decimal)):
                return 'decimal', to_decimal(a), to_decimal(b)
            return kind, to_fraction(a), to_fraction(b)
        case 'complex':
            return kind, to_complex(a, rational), to_complex(b, rational)
        case 'quaternion':
            return kind, to_quaternion(a, rational), to_quaternion(b, rational)
    raise UnknownOperatorError(f"Cannot promote {kind}")


# ===================================================================
# Arithmetic
# ===================================================================


def _int_div(a: int, b: int, rational: bool) -> Any:
    if a % b == 0:
        return a // b
    if rational:
        return Fraction(a, b)
    return Decimal(a) / Decimal(b)


def _trunc_div(a: Any, b: Any) -> int:
    q = a / b
    return int(q)


def arith(op: str, a: Any, b: Any, rational: bool = False) -> Any:
    """The numeric binary operators + - * / \\ %."""
    if a is None or b is None:
        raise NullValueError(f"Null operand for '{op}'")
    kind, x, y = promote(a, b, rational)
    if op in ('/', '\\', '%') and y == 0:
        raise CalcArithmeticError("Divide by zero")
    if kind in ('complex', 'quaternion'):
        match op:
            case '+':
                return fixup(x + y)
            case '-':
                return fixup(x - y)
            case '*':
                return fixup(x * y)
            case '/':
                return fixup(x / y)
        raise CalcArithmeticError(f"Operator '{op}' is not defined for {kind} values")
    match op:
        case '+':
            result = x + y
        case '-':
            result = x - y
        case '*':
            result = x * y
        case '/':
            result = _int_div(x, y, rational) if kind == 'integer' else x / y
        case '\\':
            if kind == 'integer':
                q = abs(x) // abs(y)
                result = q if (x < 0) == (y < 0) else -q
            else:
                result = _trunc_div(x, y)
        case '%':
            if kind == 'integer':
                r = abs(x) % abs(y)
                result = r if x >= 0 else -r
            else:
                result = x - y * _trunc_div(x, y)
        case _:
            raise UnknownOperatorError(f"Unknown operator '{op}'")
    if kind == 'continuedfraction':
        return ContinuedFraction.from_fraction(Fraction(result))
    return fixup(result)


def add_op(a: Any, b: Any, rational: bool = False) -> Any:
    """'+': collection concatenation, string concatenation, else numeric addition."""
    # An empty object literal adopts the kind of the collection it meets.
    if isinstance(a, dict) and not a and isinstance(b, (list, CalcSet)):
        a = [] if isinstance(b, list) else CalcSet()
    if isinstance(b, dict) and not b and isinstance(a, (list, CalcSet)):
        b = [] if isinstance(a, list) else CalcSet()
    match a, b:
        case list(), list():
            return a + b
        case list(), _:
            return a + [b]
        case _, list():
            return [a] + b
        case dict(), dict():
            merged = dict(a)
            merged.update(b)
            return merged
        case CalcSet(), CalcSet():
            return a.union(b)
        case CalcSet(), _:
            new = a.copy()
            new.add(b)
            return new
        case _, CalcSet():
            new = b.copy()
            new.add(a)
            return new
        case (str(), _) | (_, str()):
            return to_text(a) + to_text(b)
    return arith('+', a, b, rational)


def _exact_root(value: Any, n: int) -> Optional[Any]:
    """Exact n-th root of a non-negative int/Fraction, or None."""
    def iroot(k: int) -> Optional[int]:
        if k < 2:
            return k
        x = 1 << ((k.bit_length() + n - 1) // n)
        while True:
            y = ((n - 1) * x + k // x ** (n - 1)) // n
            if y >= x:
                break
            x = y
        return x if x ** n == k else None

    if isinstance(value, int):
        return iroot(value)
    if isinstance(value, Fraction):
        num, den = iroot(value.numerator), iroot(value.denominator)
        if num is not None and den is not None:
            return Fraction(num, den)
    return None


def _default_pi() -> Decimal:
    return compute_pi(getcontext().prec + 2)


def power_op(a: Any, b: Any, rational: bool = False, pi: Optional[Decimal] = None) -> Any:
    if a is None or b is None:
        raise NullValueError("Null operand for '**'")
    pi = pi if pi is not None else _default_pi()
    a, b = to_number(a), to_number(b)
    if isinstance(b, (ComplexNumber, Quaternion)):
        if not b.is_real():
            raise CalcArithmeticError("Complex or quaternion exponents are not supported")
        b = b.re if isinstance(b, ComplexNumber) else b.a
    if isinstance(b, ContinuedFraction):
        b = b.to_fraction()
    b = fixup(b)
    if isinstance(a, Quaternion):
        if not isinstance(b, int):
            raise CalcArithmeticError("Quaternions can only be raised to integer powers")
        return fixup(to_quaternion(a, rational).int_power(b))
    if isinstance(a, ComplexNumber):
        return fixup(to_complex(a, rational).power(b, pi))
    if isinstance(a, ContinuedFraction):
        return ContinuedFraction.from_fraction(Fraction(power_op(a.to_fraction(), b, True, pi)))
    if isinstance(b, int):
        if b >= 0:
            return fixup(a ** b)
        if a == 0:
            raise CalcArithmeticError("Divide by zero")
        if isinstance(a, int):
            return fixup(Fraction(1, a ** -b) if rational else Decimal(1) / Decimal(a ** -b))
        return fixup(a ** b)
    # Fractional exponent.
    if a < 0:
        return fixup(ComplexNumber.of(a, 0).power(b, pi))
    if isinstance(b, Fraction) and isinstance(a, (int, Fraction)) and b.denominator <= 64:
        root = _exact_root(a, b.denominator)
        if root is not None:
            return fixup(Fraction(root) ** b.numerator)
    return fixup(dec_power(to_dec(a), to_dec(b)))


def root_op(a: Any, n: Any, rational: bool = False, pi: Optional[Decimal] = None) -> Any:
    """Principal n-th root."""
    pi = pi if pi is not None else _default_pi()
    n = to_integer(n)
    if n == 0:
        raise CalcArithmeticError("Zero-th root is undefined")
    a = to_number(a)
    if isinstance(a, (ComplexNumber, Quaternion)) and not a.is_real():
        if isinstance(a, Quaternion):
            raise CalcArithmeticError("Roots of quaternions are not supported")
        return fixup(to_complex(a, rational).power(Fraction(1, n), pi))
    real = to_real(a)
    if real < 0 and n % 2 == 0:
        if n == 2:
            return fixup(ComplexNumber.of(0, root_op(-real, 2, rational, pi)))
        return fixup(ComplexNumber.of(real, 0).power(Fraction(1, n), pi))
    if n > 0 and isinstance(real, (int, Fraction)):
        exact = _exact_root(abs(real), n)
        if exact is not None:
            return fixup(-exact if real < 0 else exact)
    return fixup(dec_root(to_dec(real), n))


# ===================================================================
# Unary operators
# ===================================================================


def negate(value: Any) -> Any:
    if value is None:
        raise NullValueError("Cannot negate null")
    value = to_number(value)
    if isinstance(value, ContinuedFraction):
        return ContinuedFraction.from_fraction(-value.to_fraction())
    return fixup(-value)


def bit_not(value: Any) -> Any:
    if isinstance(value, bool):
        return not value
    return ~to_integer(value)


def factorial_op(value: Any) -> int:
    return factorial(to_integer(value))


# ===================================================================
# Bitwise / set operators
# ===================================================================


def bit_op(op: str, a: Any, b: Any) -> Any:
    if a is None or b is None:
        raise NullValueError(f"Null operand for '{op}'")
    if isinstance(a, CalcSet) or isinstance(b, CalcSet):
        if not (isinstance(a, CalcSet) and isinstance(b, CalcSet)):
            raise ConversionError(f"Operator '{op}' needs two sets")
        match op:
            case '&':
                return a.intersection(b)
            case '|':
                return a.union(b)
            case '^':
                return a.symmetric_difference(b)
            case '&~':
                return a.difference(b)
        raise CalcArithmeticError(f"Operator '{op}' is not defined for sets")
    if isinstance(a, bool) and isinstance(b, bool):
        match op:
            case '&':
                return a and b
            case '~&':
                return not (a and b)
            case '&~':
                return a and not b
            case '|':
                return a or b
            case '~|':
                return not (a or b)
            case '^':
                return a != b
            case '~^':
                return a == b
        raise UnknownOperatorError(f"Unknown operator '{op}'")
    x, y = to_integer(a), to_integer(b)
    match op:
        case '&':
            return x & y
        case '~&':
            return ~(x & y)
        case '&~':
            return x & ~y
        case '|':
            return x | y
        case '~|':
            return ~(x | y)
        case '^':
            return x ^ y
        case '~^':
            return ~(x ^ y)
    raise UnknownOperatorError(f"Unknown operator '{op}'")


def shift_op(op: str, a: Any, b: Any) -> int:
    if a is None or b is None:
        raise NullValueError(f"Null operand for '{op}'")
    x, n = to_integer(a), to_integer(b)
    match op:
        case '<<':
            return x << n if n >= 0 else x >> -n
        case '>>':
            return x >> n if n >= 0 else x << -n
        case '>>>':
            result = (x & MASK64) >> (n & 63)
            return result - (1 << 64) if result >= (1 << 63) else result
    raise UnknownOperatorError(f"Unknown operator '{op}'")


# ===================================================================
# Comparison
# ===================================================================


def _natural_key(text: str):
    return [(0, int(part), '') if part.isdigit() else (1, 0, part) for part in re.split(r'(\d+)', text) if part]


def _sign(x) -> int:
    return (x > 0) - (x < 0)


def _strict_kind(value: Any) -> str:
    kind = kind_of(value)
    if kind == 'decimal' and value == value.to_integral_value():
        return 'integer'
    return kind


def _key_lookup(obj: dict, key: str, ignore_case: bool) -> Any:
    if key in obj or not ignore_case:
        return obj[key]
    folded = key.casefold()
    for k, v in obj.items():
        if k.casefold() == folded:
            return v
    raise KeyError(key)


def compare(a: Any, b: Any, strict: bool = False, allow_nulls: bool = False, ignore_case: bool = False,
            natural_order: bool = False, equality: bool = False) -> int:
    """The single three-way comparison used by relational operators, sort, sets and case."""
    recurse = functools.partial(compare, strict=strict, allow_nulls=allow_nulls, ignore_case=ignore_case,
                                natural_order=natural_order, equality=equality)
    if a is None or b is None:
        if not allow_nulls:
            raise NullValueError("Cannot compare null values")
        return 0 if a is None and b is None else (-1 if a is None else 1)

    if strict:
        ka, kb = _strict_kind(a), _strict_kind(b)
        if ka != kb:
            return _sign(KIND_RANK[ka] - KIND_RANK[kb])

    if isinstance(a, str) or isinstance(b, str):
        sa, sb = to_text(a), to_text(b)
        if ignore_case:
            sa, sb = sa.casefold(), sb.casefold()
        if natural_order:
            ka, kb = _natural_key(sa), _natural_key(sb)
            return (ka > kb) - (ka < kb)
        return (sa > sb) - (sa < sb)

    if (is_number(a) or isinstance(a, bool)) and (is_number(b) or isinstance(b, bool)):
        if isinstance(a, (ComplexNumber, Quaternion)) or isinstance(b, (ComplexNumber, Quaternion)):
            qa, qb = to_quaternion(a, True), to_quaternion(b, True)
            if qa == qb:
                return 0
            if qa.is_real() and qb.is_real():
                return _sign(qa.a - qb.a)
            if equality:
                return 1
            raise CalcArithmeticError("Complex and quaternion values have no ordering")
        x, y = to_real(a), to_real(b)
        return (x > y) - (x < y)

    match a, b:
        case list(), list():
            if len(a) != len(b):
                return _sign(len(a) - len(b))
            for x, y in zip(a, b):
                c = recurse(x, y)
                if c:
                    return c
            return 0
        case dict(), dict():
            c = recurse(CalcSet(a.keys()), CalcSet(b.keys()))
            if c:
                return c
            for key, x in a.items():
                c = recurse(x, _key_lookup(b, key, ignore_case))
                if c:
                    return c
            return 0
        case CalcSet(), CalcSet():
            if len(a) != len(b):
                return _sign(len(a) - len(b))
            xs, ys = list(a), list(b)
            if not strict:
                key = functools.cmp_to_key(functools.partial(compare, allow_nulls=True, ignore_case=ignore_case))
                xs, ys = sorted(xs, key=key), sorted(ys, key=key)
            for x, y in zip(xs, ys):
                c = recurse(x, y)
                if c:
                    return c
            return 0

    ka, kb = kind_of(a), kind_of(b)
    if ka == kb == 'function':
        if a is b:
            return 0
        na, nb = getattr(a, 'name', ''), getattr(b, 'name', '')
        return (na > nb) - (na < nb) or 1
    return _sign(KIND_RANK[ka] - KIND_RANK[kb])


def sort_key(ignore_case: bool = False, natural_order: bool = False) -> Callable:
    return functools.cmp_to_key(functools.partial(
        compare, allow_nulls=True, ignore_case=ignore_case, natural_order=natural_order))


# ===================================================================
# Introspection
# ===================================================================


def length_of(value: Any, recursive: bool = False) -> int:
    match value:
        case None:
            return 0
        case bool():
            return 1
        case int():
            return len(str(abs(value)))
        case Decimal():
            return len(value.normalize().as_tuple().digits)
        case str():
            return len(value)
        case list() | CalcSet():
            if recursive:
                return sum(length_of(v, True) if is_collection(v) else 1 for v in value)
            return len(value)
        case dict():
            if recursive:
                return sum(length_of(v, True) if is_collection(v) else 1 for v in value.values())
            return len(value)
        case ContinuedFraction():
            return len(value.terms)
    return len(to_text(value))
