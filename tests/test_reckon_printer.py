from decimal import Decimal
from fractions import Fraction

import pytest

from reckon.reckon_datatypes import CalcSet, FunctionDeclaration, FunctionParameter, Node
from reckon.reckon_numeric import ComplexNumber, ContinuedFraction, Quaternion
from reckon.reckon_printer import Printer, format_range, format_with_code, pformat_source
from reckon.reckon_settings import Settings


@pytest.fixture
def printer():
    return Printer()


def test_scalars(printer):
    assert printer.pformat(None) == "<null>"
    assert printer.pformat(None, quote=False) == ""
    assert printer.pformat(True) == "true"
    assert printer.pformat(-12) == "-12"
    assert printer.pformat(Decimal("1E+3")) == "1000"
    assert printer.pformat(Decimal("0.125")) == "0.125"
    assert printer.pformat(Fraction(-1, 3)) == "-1/3"


def test_separators_group_digits():
    p = Printer(separators=True)
    assert p.pformat(1234567) == "1,234,567"
    assert p.pformat(Decimal("1234.5")) == "1,234.5"
    assert p.pformat(Fraction(1000, 3)) == "1,000/3"


def test_extended_numbers(printer):
    assert printer.pformat(ComplexNumber(1, Fraction(1, 2))) == "( 1, 1/2 )"
    assert printer.pformat(Quaternion(1, 2, 3, 4)) == "( 1, 2, 3, 4 )"
    assert printer.pformat(ContinuedFraction((4, 2, 6, 7))) == "[4; 2, 6, 7]"
    assert printer.pformat(ContinuedFraction((3,))) == "[3]"


def test_strings_quote_and_escape(printer):
    assert printer.pformat('a"b\n') == '"a\\"b\\n"'
    assert printer.pformat('a"b', quote=False) == 'a"b'


def test_collections(printer):
    assert printer.pformat([1, "a", None]) == '[ 1, "a", <null> ]'
    assert printer.pformat([]) == "[ ]"
    assert printer.pformat({}) == "{ }"
    assert printer.pformat({"a": 1, "b c": 2}) == '{ a: 1, "b c": 2 }'
    assert printer.pformat(CalcSet([2, 1])) == "{ 2, 1 }"


def test_pretty_printing_indents_nested_collections():
    text = Printer(pretty=True).pformat({"a": [1, 2]})
    assert text == "{\n  a: [\n    1,\n    2\n  ]\n}"


def test_functions_and_builtins(printer):
    decl = FunctionDeclaration("f", [FunctionParameter("x")], Node("block"))
    assert printer.pformat(decl) == "f(x)"

    def _sqrt(x):
        return x

    assert printer.pformat(_sqrt) == "<builtin sqrt>"


def test_source_form_is_reparseable_text():
    assert pformat_source(None) == "null"
    assert pformat_source(Fraction(1, 2)) == "frac(1, 2)"
    assert pformat_source(ComplexNumber(Fraction(1, 2), 3)) == "complex(frac(1, 2), 3)"
    assert pformat_source(Quaternion(1, 0, 0, 2)) == "quaternion(1, 0, 0, 2)"
    assert pformat_source(ContinuedFraction((1, 2))) == "cfrac([1, 2])"
    assert pformat_source(CalcSet([1, "x"])) == 'set(1, "x")'
    assert pformat_source({"k": [Decimal("1.5"), "x"]}) == '{ k: [ 1.5, "x" ] }'
    assert pformat_source([]) == "[]"


def test_source_form_ignores_separators():
    p = Printer(separators=True, source=True)
    assert p.pformat(1234567) == "1234567"


@pytest.mark.parametrize("value, units, expected", [
    (512, 'mixed', "512 bytes"),
    (2048, 'mixed', "2 KB"),
    (2048, 'binary', "2 KiB"),
    (1500, 'si', "1.5 KB"),
    (3 * 1024 ** 3, 'binary', "3 GiB"),
    (-2048, 'mixed', "-2 KB"),
])
def test_format_range(value, units, expected):
    assert format_range(value, units) == expected


@pytest.mark.parametrize("value, code, expected", [
    (255, 'x', "0xff"),
    (255, 'X', "0xFF"),
    (-255, 'x', "-0xff"),
    (5, 'b', "0b101"),
    (8, 'o', "0o10"),
    (Decimal("0.25"), '%', "25%"),
    (Fraction(1, 8), '%', "12.5%"),
    ([1, 2], 'j', "[1, 2]"),
    ({"a": 1}, 'y', "a: 1"),
    (2048, 'k', "2 KB"),
])
def test_format_with_code(value, code, expected):
    assert format_with_code(value, code, Settings()) == expected


def test_format_with_code_uses_unit_mode():
    assert format_with_code(2048, 'k', Settings(units='binary')) == "2 KiB"


def test_pretty_format_code():
    assert format_with_code([1], 'p', Settings()) == "[\n  1\n]"
