from decimal import Decimal, localcontext
from fractions import Fraction

import pytest

from reckon.reckon_convert import (
    add_op, arith, bit_op, compare, fixup, kind_of, length_of, parse_number, power_op, promote, root_op,
    shift_op, to_boolean, to_integer, to_text,
)
from reckon.reckon_datatypes import CalcSet
from reckon.reckon_errors import CalcArithmeticError, ConversionError, NullValueError
from reckon.reckon_numeric import (
    ComplexNumber, ContinuedFraction, Quaternion, compute_pi, fib, is_prime,
)


# --- canonical form ---

@pytest.mark.parametrize("value, expected", [
    (Decimal("2.50"), Decimal("2.5")),
    (Decimal("3.000"), 3),
    (Fraction(4, 2), 2),
    (ComplexNumber(Decimal("1.0"), 0), 1),
    (Quaternion(2, 0, 0, 0), 2),
    (True, True),
])
def test_fixup_canonicalizes(value, expected):
    result = fixup(value)
    assert result == expected
    assert type(result) is type(expected)


def test_fixup_is_idempotent():
    for value in (Decimal("1.2300"), Fraction(6, 4), ComplexNumber(Fraction(1, 2), 3), 7):
        once = fixup(value)
        assert fixup(once) == once


# --- parsing and conversion ---

def test_parse_number_forms():
    assert parse_number("42") == 42
    assert parse_number("0x1f") == 31
    assert parse_number("-0b101") == -5
    assert parse_number("3/6") == Fraction(1, 2)
    assert parse_number("1.50") == Decimal("1.5")
    assert parse_number("1_000") == 1000
    with pytest.raises(ConversionError):
        parse_number("abc")
    with pytest.raises(CalcArithmeticError):
        parse_number("1/0")


@pytest.mark.parametrize("value, expected", [
    (None, False), ("", False), ("no", False), ("off", False), ("0", False), ("yes", True),
    ("abc", True), ([], False), ([0], True), ({}, False), (0, False), (Decimal("0.0"), False),
    (Fraction(1, 3), True), (ComplexNumber(0, 1), True),
])
def test_to_boolean(value, expected):
    assert to_boolean(value) is expected


def test_to_integer_requires_a_whole_value():
    assert to_integer(Decimal("4.0")) == 4
    assert to_integer("12") == 12
    with pytest.raises(CalcArithmeticError):
        to_integer(Decimal("2.5"))
    with pytest.raises(NullValueError):
        to_integer(None)


def test_to_text():
    assert to_text(None) == ""
    assert to_text(True) == "true"
    assert to_text(Decimal("0.50")) == "0.50"
    assert to_text(Fraction(1, 3)) == "1/3"
    assert to_text([1, "a"]) == '[ 1, "a" ]'


def test_kind_of():
    assert kind_of(True) == 'boolean'
    assert kind_of(3) == 'integer'
    assert kind_of(ContinuedFraction((1, 2))) == 'continuedfraction'
    assert kind_of(CalcSet()) == 'set'


# --- promotion and arithmetic ---

def test_promotion_lattice():
    assert promote(1, 2, False)[0] == 'integer'
    assert promote(1, Decimal("0.5"), False)[0] == 'decimal'
    assert promote(1, Decimal("0.5"), True) == ('fraction', Fraction(1), Fraction(1, 2))
    assert promote(Fraction(1, 3), Decimal("0.5"), False)[0] == 'decimal'
    assert promote(2, ComplexNumber(0, 1), False)[0] == 'complex'
    assert promote(ComplexNumber(0, 1), Quaternion(0, 0, 1, 0), False)[0] == 'quaternion'


def test_division_by_mode():
    assert arith('/', 1, 3, rational=True) == Fraction(1, 3)
    assert isinstance(arith('/', 1, 3), Decimal)
    assert arith('/', 6, 3) == 2
    with pytest.raises(CalcArithmeticError):
        arith('/', 1, 0)


def test_integer_division_and_remainder_truncate_toward_zero():
    assert arith('\\', 7, 2) == 3
    assert arith('\\', -7, 2) == -3
    assert arith('%', -7, 3) == -1
    assert arith('%', 7, -3) == 1
    assert arith('%', Decimal("7.5"), 2) == Decimal("1.5")


def test_fraction_results_are_reduced():
    assert arith('+', Fraction(1, 6), Fraction(1, 3)) == Fraction(1, 2)
    assert arith('*', Fraction(2, 3), Fraction(3, 2)) == 1
    assert type(arith('*', Fraction(2, 3), Fraction(3, 2))) is int


def test_continued_fraction_arithmetic_stays_continued():
    half = ContinuedFraction.from_fraction(Fraction(1, 2))
    result = arith('+', half, Fraction(1, 3))
    assert isinstance(result, ContinuedFraction)
    assert result.to_fraction() == Fraction(5, 6)
    assert ContinuedFraction.from_fraction(Fraction(415, 93)).terms == (4, 2, 6, 7)


def test_complex_and_quaternion_arithmetic():
    i = ComplexNumber.of(0, 1)
    assert arith('*', i, i) == -1
    assert arith('/', 1, i) == ComplexNumber(0, -1)
    qi, qj = Quaternion.of(0, 1), Quaternion.of(0, 0, 1)
    assert arith('*', qi, qj) == Quaternion(0, 0, 0, 1)
    assert arith('*', qj, qi) == Quaternion(0, 0, 0, -1)


def test_add_op_concatenation_rules():
    assert add_op("a", 1) == "a1"
    assert add_op([1], 2) == [1, 2]
    assert add_op(0, [1]) == [0, 1]
    assert add_op({}, [1]) == [1]
    assert add_op({'a': 1}, {'a': 2, 'b': 3}) == {'a': 2, 'b': 3}
    assert add_op(CalcSet([1]), 2) == CalcSet([1, 2])
    assert add_op(1, 2) == 3


def test_power_op():
    assert power_op(2, 10) == 1024
    assert power_op(2, -2, rational=True) == Fraction(1, 4)
    assert power_op(2, -2) == Decimal("0.25")
    assert power_op(Fraction(4, 9), Fraction(1, 2)) == Fraction(2, 3)
    assert power_op(ComplexNumber.of(0, 1), 2) == -1
    with pytest.raises(CalcArithmeticError):
        power_op(0, -1)


def test_root_op():
    assert root_op(27, 3) == 3
    assert root_op(-8, 3) == -2
    assert root_op(-4, 2) == ComplexNumber(0, 2)
    with localcontext() as ctx:
        ctx.prec = 20
        assert str(root_op(2, 2)) == "1.4142135623730950488"


def test_bit_and_shift_ops():
    assert bit_op('&', 12, 10) == 8
    assert bit_op('|', 12, 10) == 14
    assert bit_op('^', 12, 10) == 6
    assert bit_op('&~', 12, 10) == 4
    assert bit_op('&', True, False) is False
    assert bit_op('|', CalcSet([1, 2]), CalcSet([2, 3])) == CalcSet([1, 2, 3])
    with pytest.raises(ConversionError):
        bit_op('&', CalcSet([1]), 1)
    assert shift_op('<<', 1, 4) == 16
    assert shift_op('>>', -16, 2) == -4
    assert shift_op('>>>', -1, 60) == 15


# --- comparison ---

def test_compare_numbers_across_kinds():
    assert compare(1, Decimal("1.0")) == 0
    assert compare(Fraction(1, 3), Decimal("0.3")) == 1
    assert compare(ComplexNumber(2, 0), 1) == 1


@pytest.mark.parametrize("a, b", [
    (1, 2), ("a", "b"), ([1, 2], [1, 3]), ([1], [1, 1]), (None, 0), (True, "x"), (3, "3a"),
    ({'a': 1}, {'a': 2}), (CalcSet([1]), CalcSet([1, 2])),
])
def test_compare_is_antisymmetric(a, b):
    assert compare(a, b, allow_nulls=True) == -compare(b, a, allow_nulls=True)


def test_compare_nulls_and_strictness():
    with pytest.raises(NullValueError):
        compare(None, 1)
    assert compare(None, None, allow_nulls=True) == 0
    assert compare(1, Decimal("1.0"), strict=True) == 0
    assert compare(1, Decimal("1.5"), strict=True) != 0
    assert compare("ABC", "abc", ignore_case=True) == 0
    assert compare("file10", "file9", natural_order=True) == 1


def test_compare_objects_ignoring_key_case():
    assert compare({"A": 1}, {"a": 1}, ignore_case=True) == 0
    assert compare({"A": 1, "b": "X"}, {"a": 1, "B": "x"}, ignore_case=True, equality=True) == 0
    assert compare({"A": 1}, {"a": 2}, ignore_case=True) == -1
    assert compare({"A": 1}, {"a": 1}) != 0


def test_complex_values_have_no_ordering():
    with pytest.raises(CalcArithmeticError):
        compare(ComplexNumber(0, 1), 1)
    assert compare(ComplexNumber(0, 1), 1, equality=True) != 0


# --- misc numeric helpers ---

def test_length_of():
    assert length_of(12345) == 5
    assert length_of(Decimal("1.50")) == 2
    assert length_of([1, [2, 3]], recursive=True) == 3
    assert length_of(None) == 0


def test_integer_functions():
    assert [fib(n) for n in range(8)] == [0, 1, 1, 2, 3, 5, 8, 13]
    assert fib(-4) == -3
    assert is_prime(2) and is_prime(97) and is_prime(2 ** 61 - 1)
    assert not is_prime(1) and not is_prime(91)


def test_compute_pi_digits():
    assert str(compute_pi(20)) == "3.1415926535897932385"
