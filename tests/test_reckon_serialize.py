from decimal import Decimal, localcontext
from fractions import Fraction

import pytest

from reckon.reckon_datatypes import CalcSet, Constant, FunctionDeclaration, FunctionParameter, GlobalScope, Node
from reckon.reckon_errors import ConversionError
from reckon.reckon_numeric import ComplexNumber
from reckon.reckon_runtime import ScriptRunner
from reckon.reckon_serialize import from_json, from_yaml, render_save_file, to_json, to_yaml


# --- JSON / YAML ---

def test_to_json_plain_values():
    assert to_json({"a": [1, None, True]}) == '{"a": [1, null, true]}'
    assert to_json(Decimal("1.5")) == "1.5"
    assert to_json(CalcSet([1, 2])) == "[1, 2]"


def test_to_json_renders_exotic_numbers_as_text():
    assert to_json({"f": Fraction(1, 2)}) == '{"f": "1/2"}'
    assert to_json(ComplexNumber(1, 2)) == '"( 1, 2 )"'


def test_to_json_pretty():
    assert to_json({"a": 1}, pretty=True) == '{\n  "a": 1\n}'
    assert to_json({"a": [1, Decimal("2.5")], "b": []}, pretty=True) == (
        '{\n  "a": [\n    1,\n    2.5\n  ],\n  "b": []\n}')


FULL_PRECISION = Decimal("0.1234567890123456789012345678901234")


def test_json_keeps_every_decimal_digit():
    text = to_json({"x": FULL_PRECISION, "y": [Decimal("-1.5E-40")]})
    assert text == '{"x": 0.1234567890123456789012345678901234, "y": [-1.5E-40]}'
    with localcontext() as ctx:
        ctx.prec = 34
        value = from_json(text)
    assert value["x"] == FULL_PRECISION
    assert value["y"] == [Decimal("-1.5E-40")]


def test_yaml_keeps_every_decimal_digit():
    text = to_yaml({"x": FULL_PRECISION})
    assert text == "x: 0.1234567890123456789012345678901234\n"
    with localcontext() as ctx:
        ctx.prec = 34
        assert from_yaml(text)["x"] == FULL_PRECISION


def test_non_finite_decimals_cannot_be_serialized():
    with pytest.raises(ConversionError):
        to_json(Decimal("Infinity"))


def test_from_json_reads_numbers_as_decimals():
    value = from_json('{"a": 1.50, "b": [1, null, true], "c": 2.0}')
    assert value == {"a": Decimal("1.5"), "b": [1, None, True], "c": 2}
    assert isinstance(value["a"], Decimal)
    assert type(value["c"]) is int


def test_from_json_rejects_bad_input():
    with pytest.raises(ConversionError, match="Invalid JSON"):
        from_json("{bad")


def test_yaml_round_trip_of_plain_data():
    text = to_yaml({"a": [1, 2], "b": "x"})
    assert text == "a:\n- 1\n- 2\nb: x\n"
    assert from_yaml(text) == {"a": [1, 2], "b": "x"}


def test_from_yaml_converts_floats_and_other_scalars():
    value = from_yaml("a: 1.25\nd: 2024-01-01\n")
    assert value["a"] == Decimal("1.25")
    assert value["d"] == "2024-01-01"
    with pytest.raises(ConversionError, match="Invalid YAML"):
        from_yaml("a: [")


# --- save files ---

def test_render_save_file_lists_user_bindings():
    scope = GlobalScope()
    scope.define_predefined("pi", Decimal("3.14"))
    scope.set_value("x", Fraction(1, 2))
    scope.define("k", Constant([1, "a"]))
    params = [FunctionParameter("a")]
    scope.set_value("sq", FunctionDeclaration("sq", params, Node("binop"), body_text="a * a"))
    text = render_save_file(scope)
    assert text.splitlines() == [
        '$require "1.0.0"',
        "x = frac(1, 2)",
        'const k = [ 1, "a" ]',
        "def sq(a) = a * a",
    ]


def test_save_and_load_round_trip(tmp_path):
    writer = ScriptRunner(base_dir=str(tmp_path))
    res = writer.handle_script(
        'x = frac(1, 2)\nconst k = [1, "a"]\ndef sq(a) = a * a\ns = set(1, 2)\n$save "vars.calc"')
    assert res.status == 'success', res.error_message
    assert "Variables saved to 'vars.calc'." in writer.sink.messages('action')
    assert (tmp_path / "vars.calc").read_text(encoding="utf-8").startswith('$require "1.0.0"\n')

    reader = ScriptRunner(base_dir=str(tmp_path))
    res = reader.handle_script('$load "vars"\nsq(k[0] + 2) + x')
    assert res.status == 'success', res.error_message
    assert res.value == Fraction(19, 2)
    assert reader.handle_script("s").value == CalcSet([1, 2])

    res = reader.handle_script("k = 2")
    assert res.status == 'error'
    assert "constant" in res.error_message


def test_load_does_not_display_results(tmp_path):
    (tmp_path / "vals.calc").write_text("a = 1\na + 1\n", encoding="utf-8")
    runner = ScriptRunner(base_dir=str(tmp_path))
    res = runner.handle_script('$load "vals.calc"')
    assert res.status == 'success', res.error_message
    assert runner.sink.messages('result') == []
    assert runner.handle_script("a").value == 1


def test_load_rejects_newer_version(tmp_path):
    (tmp_path / "future.calc").write_text('$require "99.0"\nz = 1\n', encoding="utf-8")
    res = ScriptRunner(base_dir=str(tmp_path)).handle_script('$load "future"')
    assert res.status == 'error'
    assert res.error_kind == "VersionMismatchError"
    assert res.exit_code == 10
