from decimal import Decimal

import pytest

from reckon.reckon_errors import CalcSyntaxError
from reckon.reckon_numeric import ComplexNumber
from reckon.reckon_parser import ReckonParser
from reckon.reckon_transformer import ReckonTransformer, unescape


def parse(src):
    tree = ReckonParser().parse(src)
    return ReckonTransformer().transform(tree, src)


def statements(src):
    program = parse(src)
    assert program.kind == 'program'
    return program.children


def only_expr(src):
    stmts = statements(src)
    assert len(stmts) == 1
    assert stmts[0].kind == 'expr_stmt'
    return stmts[0].children[0]


def shape(node):
    """Compact (kind, text, children...) tuple for structural asserts."""
    if node is None:
        return None
    kids = tuple(shape(c) for c in node.children)
    return (node.kind, node.text) + kids


# --- expressions ---

def test_precedence_and_associativity():
    assert shape(only_expr("1 + 2 * 3")) == (
        'binop', '+', ('literal', '1'), ('binop', '*', ('literal', '2'), ('literal', '3')))
    assert shape(only_expr("a = b = 3")) == (
        'assign', '=', ('name', 'a'), ('assign', '=', ('name', 'b'), ('literal', '3')))
    assert shape(only_expr("8 - 4 - 2")) == (
        'binop', '-', ('binop', '-', ('literal', '8'), ('literal', '4')), ('literal', '2'))


def test_unary_minus_binds_looser_than_power():
    assert shape(only_expr("-2 ** 2")) == (
        'unary', '-', ('binop', '**', ('literal', '2'), ('literal', '2')))
    assert shape(only_expr("2 ** -1")) == (
        'binop', '**', ('literal', '2'), ('unary', '-', ('literal', '1')))


def test_postfix_chain():
    node = only_expr("a.b[1](2)!")
    assert node.kind == 'factorial'
    call = node.children[0]
    assert call.kind == 'call'
    assert shape(call.children[0]) == ('index', None, ('member', 'b', ('name', 'a')), ('literal', '1'))


def test_slice_bounds_are_optional():
    node = only_expr("s[:2]")
    assert node.kind == 'slice'
    assert node.children[1] is None
    assert node.children[2].value == 2


def test_multi_character_operators_lex_greedily():
    assert only_expr("a &~ b").text == '&~'
    assert only_expr("a >>> 2").text == '>>>'
    assert only_expr("a **= 2").text == '**='
    assert only_expr("a === b").text == '==='


@pytest.mark.parametrize("src, value", [
    ("42", 42),
    ("0x1f", 31),
    ("0b101", 5),
    ("0o17", 15),
    ("2.50", Decimal("2.50")),
    ("1e3", Decimal("1e3")),
    ("3i", ComplexNumber.of(0, 3)),
    ("2.5i", ComplexNumber.of(0, Decimal("2.5"))),
])
def test_literals(src, value):
    node = only_expr(src)
    assert node.kind == 'literal'
    assert node.value == value


def test_unit_literal_keeps_its_parts():
    node = only_expr("4KiB")
    assert node.kind == 'unit'
    assert node.value == (4, 'K', True)


def test_strings_and_escapes():
    assert only_expr('"a\\tb"').value == "a\tb"
    assert only_expr("'it\\'s'").value == "it's"
    node = only_expr('$"x=$x \\$y"')
    assert node.kind == 'istring'
    assert node.value == "x=$x \\$y"
    assert unescape("\\u00e9") == "é"


def test_args_and_collections():
    assert only_expr("$2").value == 2
    assert only_expr("$#").kind == 'arg_count'
    assert only_expr("$*").kind == 'all_args'
    obj = only_expr('{a: 1, "b c": 2}')
    assert [p.text for p in obj.children] == ['a', 'b c']
    assert len(only_expr("[1, 2, 3,]").children) == 3


def test_reduction_node():
    node = only_expr("sumof(1 .. 10)")
    assert node.kind == 'reduction'
    assert node.text == 'sumof'
    assert node.children[0].kind == 'range'


# --- statements and line breaks ---

def test_line_breaks_separate_statements():
    assert len(statements("x = 1\ny = 2")) == 2
    assert len(statements("x = 1; y = 2")) == 2
    assert len(statements("\n\nx = 1\n\n")) == 1


def test_line_break_after_operator_or_inside_brackets_continues():
    assert len(statements("1 +\n2")) == 1
    assert len(statements("f(1,\n2)")) == 1
    assert len(statements("[1,\n2\n]")) == 1


def test_else_may_start_the_next_line():
    stmts = statements("if x {\n1\n}\nelse {\n2\n}")
    assert len(stmts) == 1
    assert [c.kind for c in stmts[0].children] == ['name', 'block', 'block']


def test_comments_are_ignored():
    stmts = statements("1 // first\n/* second\nline */ 2")
    assert len(stmts) == 2


def test_format_suffix():
    stmt = statements("255 @x")[0]
    assert stmt.kind == 'expr_stmt'
    assert stmt.text == 'x'


def test_define_with_defaults_and_rest():
    stmt = statements("def f(a, b = 2, c...) = a + b")[0]
    assert stmt.kind == 'define'
    assert stmt.text == 'f'
    params, params_given, body_text = stmt.value
    assert [str(p) for p in params] == ['a', 'b = 2', 'c...']
    assert params_given
    assert body_text == 'a + b'


def test_define_without_parameter_list():
    params, params_given, body_text = statements("def g = { 1 }")[0].value
    assert params == [] and not params_given
    assert body_text == '{ 1 }'


@pytest.mark.parametrize("src, message", [
    ("def f(a, a) = 1", "Duplicate parameter"),
    ("def f(a..., b) = 1", "must come last"),
])
def test_define_rejects_bad_parameter_lists(src, message):
    with pytest.raises(CalcSyntaxError, match=message):
        parse(src)


def test_loop_forms():
    stmt = statements("loop i in [1, 2] { i }")[0]
    assert stmt.kind == 'loop'
    assert stmt.value == {'var': 'i', 'mode': 'in'}
    assert stmt.children[0].kind == 'list'
    ranged = statements("loop outer: 1 .. 10, 2 { }")[0]
    assert ranged.text == 'outer'
    assert ranged.value == {'var': None, 'mode': None}
    assert [c.kind for c in ranged.children[0].children] == ['literal'] * 3


def test_case_arms_and_selectors():
    stmt = statements("case x of 1, 2: { a }, 3 .. 5: { b }, matches \"^z\" i: { c }, > 9: { d }, default: { e }")[0]
    assert stmt.kind == 'case'
    arms = stmt.children[1:]
    assert [[s.kind for s in arm.children[:-1]] for arm in arms] == [
        ['sel_value', 'sel_value'], ['sel_range'], ['sel_regex'], ['sel_compare'], ['sel_default']]
    regex = arms[2].children[0]
    assert (regex.text, regex.value) == ("^z", "i")
    assert arms[3].children[0].value == (['>'], None)


def test_leave_label_and_value():
    assert shape(statements("leave outer 42")[0]) == ('leave', 'outer', ('literal', '42'))
    assert shape(statements("leave outer: 42")[0]) == ('leave', 'outer', ('literal', '42'))
    assert shape(statements("leave x")[0]) == ('leave', None, ('name', 'x'))
    assert shape(statements("leave")[0]) == ('leave', None)


def test_directives():
    stmt = statements("$precision 30")[0]
    assert shape(stmt) == ('directive', 'precision', ('literal', '30'))
    block = statements("$degrees on { sin(90) }")[0]
    assert block.text == 'degrees'
    assert block.value.kind == 'block'
    assert statements("$variables")[0].children == []


def test_nodes_carry_source_locations():
    stmt = statements("x = 1\ny = 2 * 3")[1]
    assert stmt.loc['line'] == 2
    assert stmt.source == 'y = 2 * 3'


# --- syntax errors ---

def test_unexpected_token_reports_position():
    with pytest.raises(CalcSyntaxError) as excinfo:
        parse("1 2")
    err = excinfo.value
    assert err.message.startswith("Unexpected '2'")
    assert err.loc['line'] == 1
    assert err.loc['col'] == 3
    assert err.exit_code == 2


def test_unexpected_character():
    with pytest.raises(CalcSyntaxError, match="Unexpected character '`'"):
        parse("1 ` 2")


def test_unexpected_end_of_input():
    with pytest.raises(CalcSyntaxError, match="end of input"):
        parse("f(1, 2")
