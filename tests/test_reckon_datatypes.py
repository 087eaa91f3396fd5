from decimal import Decimal
from fractions import Fraction

import pytest

from reckon.reckon_datatypes import (
    CalcSet, Constant, FunctionDeclaration, FunctionParameter, FunctionScope, GlobalScope, Leave, NestedScope,
    Node, Parameter, Predefined, SystemBacked, escaped_signal_error, unwrap,
)
from reckon.reckon_errors import CalcExprError, InternalError


@pytest.fixture
def nested():
    outer = GlobalScope()
    outer.set_value("x", 1)
    return outer, NestedScope(outer, kind="loop")


# --- scopes ---

def test_set_value_assigns_to_nearest_existing_binding(nested):
    outer, inner = nested
    inner.set_value("x", 2)
    inner.set_value("y", 3)
    assert outer.get_value("x") == 2
    assert not outer.is_defined("y")
    assert inner.is_defined_locally("y")


def test_set_value_locally_shadows(nested):
    outer, inner = nested
    inner.set_value_locally("x", 10)
    assert inner.get_value("x") == 10
    assert outer.get_value("x") == 1


def test_ignore_case_lookup(nested):
    outer, inner = nested
    assert inner.get_value("X") is None
    assert inner.get_value("X", ignore_case=True) == 1
    inner.set_value("X", 5, ignore_case=True)
    assert outer.bindings == {"x": 5}


def test_constants_and_predefined_values_are_protected():
    scope = GlobalScope()
    scope.define("k", Constant(3))
    scope.define_predefined("answer", 42)
    with pytest.raises(CalcExprError, match="constant 'k'"):
        scope.set_value("k", 4)
    with pytest.raises(CalcExprError, match="Cannot redefine"):
        scope.define("answer", 1)
    with pytest.raises(CalcExprError, match="Cannot clear"):
        scope.remove("answer")
    assert scope.get_value("k") == 3


def test_define_refuses_duplicates_unless_replacing_a_function():
    scope = GlobalScope()
    scope.define("v", 1)
    with pytest.raises(CalcExprError, match="already defined"):
        scope.define("v", 2)
    f = FunctionDeclaration("f", [], Node("number", text="1"))
    g = FunctionDeclaration("f", [FunctionParameter("a")], Node("number", text="2"))
    scope.define("f", f)
    scope.define("f", g, replace_functions=True)
    assert scope.get_value("f") is g


def test_clear_and_names_skip_predefined_values():
    scope = GlobalScope()
    scope.define_predefined("pi", Decimal("3.14"))
    scope.bindings["now"] = SystemBacked(lambda: 7)
    scope.set_value("a", 1)
    scope.define("b", Constant(2))
    assert scope.names() == ["a", "b"]
    scope.clear()
    assert scope.names() == []
    assert scope.get_value("pi") == Decimal("3.14")
    assert scope.get_value("now") == 7


def test_parameters_stay_parameters_when_reassigned():
    decl = FunctionDeclaration("f", [FunctionParameter("a")], Node("name", text="a"))
    scope = FunctionScope(decl, [1], GlobalScope())
    scope.bindings["a"] = Parameter(1)
    scope.set_value("a", 2)
    assert isinstance(scope.bindings["a"], Parameter)
    assert unwrap(scope.bindings["a"]) == 2
    assert scope.label == "f"


def test_nearest_finds_enclosing_kind(nested):
    outer, inner = nested
    deeper = NestedScope(inner, kind="case")
    assert deeper.nearest("loop") is inner
    assert deeper.nearest("global") is outer
    assert deeper.nearest("function") is None


# --- sets ---

def test_calcset_deduplicates_by_value():
    s = CalcSet([1, Decimal("1.0"), Fraction(2, 2), "1", True, None, [1, 2], [1, 2]])
    assert len(s) == 5
    assert 1 in s and "1" in s and True in s and [1, 2] in s


def test_calcset_keeps_insertion_order_and_equality_ignores_it():
    a = CalcSet(["b", "a", "c"])
    assert list(a) == ["b", "a", "c"]
    assert a == CalcSet(["c", "b", "a"])
    assert a != CalcSet(["a", "b"])


def test_calcset_operations_return_new_sets():
    a, b = CalcSet([1, 2, 3]), CalcSet([2, 3, 4])
    assert list(a.union(b)) == [1, 2, 3, 4]
    assert list(a.intersection(b)) == [2, 3]
    assert list(a.difference(b)) == [1]
    assert list(a.symmetric_difference(b)) == [1, 4]
    assert list(a) == [1, 2, 3]


# --- functions and signals ---

def test_function_full_name_renders_parameters():
    params = [FunctionParameter("a"), FunctionParameter("b", default=Node("number", text="2")),
              FunctionParameter("rest", rest=True)]
    decl = FunctionDeclaration("f", params, Node("block"))
    assert decl.full_name == "f(a, b = 2, rest...)"
    assert FunctionDeclaration("g", [], Node("block"), params_given=False).full_name == "g"
    assert FunctionDeclaration("h", [], Node("block")).full_name == "h()"


def test_escaped_signals_become_internal_errors():
    err = escaped_signal_error(Leave(label="outer"))
    assert isinstance(err, InternalError)
    assert "'outer'" in str(err)
    assert err.exit_code == 99


def test_predefined_binding_flags():
    binding = Predefined(1)
    assert not binding.assignable and not binding.listed and not binding.clearable
    assert Constant(1).listed
