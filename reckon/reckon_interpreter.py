"""
The reckon tree-walking evaluator.

Statements return their value or a control Signal (Leave / Next); every
block frame checks what it got back. A signal that has to cross a
function call made inside an expression travels as SignalEscape and is
turned back into a returned signal by the nearest statement frame.
"""
import inspect
import logging
import re
import time
from decimal import Decimal
from fractions import Fraction
from typing import Any, Callable, Dict, List, Optional

from reckon.reckon_constants import VERSION
from reckon.reckon_convert import (
    add_op, arith, bit_not, bit_op, compare, factorial_op, fixup, is_collection, is_number, negate,
    power_op, shift_op, to_boolean, to_integer, to_number, to_real, to_text,
)
from reckon.reckon_datatypes import (
    NEXT, Binding, CalcSet, Constant, EnumMember, FunctionDeclaration, FunctionScope, Leave, NestedScope,
    Next, Node, Parameter, Scope, SignalEscape, escaped_signal_error, is_signal, unwrap,
)
from reckon.reckon_errors import (
    CalcArithmeticError, CalcAssertionError, CalcError, CalcExprError, ConversionError,
    NullValueError, UndefinedNameError, UnknownOperatorError, VersionMismatchError,
)
from reckon.reckon_file import FileHelper
from reckon.reckon_iteration import (
    IterationVisitor, NotApplicable, Purpose, SelectVisitor, iterate_range, iterate_values, make_range,
    visitor_for,
)
from reckon.reckon_parser import ReckonParser
from reckon.reckon_printer import Printer, format_with_code
from reckon.reckon_serialize import render_save_file
from reckon.reckon_settings import (
    DEFAULT_PRECISION, DOUBLE_PRECISION, FLOAT_PRECISION, MODE_DIRECTIVES,
)
from reckon.reckon_transformer import ReckonTransformer

logger = logging.getLogger("reckon.interpreter")
logger.addHandler(logging.NullHandler())

_NAME_RE = re.compile(r'[^\W\d]\w*')
_DIGITS_RE = re.compile(r'\d+')

_UNIT_POWERS = {'K': 1, 'M': 2, 'G': 3, 'T': 4, 'P': 5, 'E': 6}

_MODE_WORDS = {
    'on': True, 'yes': True, 'true': True,
    'off': False, 'no': False, 'false': False,
}

_REGEX_FLAGS = {
    'i': re.IGNORECASE,
    's': re.DOTALL,
    'm': re.MULTILINE,
    'u': re.UNICODE,
    'd': 0,   # unix lines: Python only treats '\n' as a line end already
    'l': 0,   # literal: handled by escaping the pattern
}

_REDUCTIONS = {
    'sumof': Purpose.SUM,
    'productof': Purpose.PRODUCT,
    'arrayof': Purpose.ALL,
    'lengthof': Purpose.LENGTH,
}


def _version_tuple(text: str):
    parts = []
    for piece in str(text).strip().lstrip('vV').split('.'):
        m = _DIGITS_RE.match(piece)
        parts.append(int(m.group()) if m else 0)
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


class LoopVisitor(IterationVisitor):
    """Runs a loop body once per element.

    `result` holds the last body value; a Leave that is not for this
    loop is parked in `escaped` and the walk stops.
    """
    purpose = Purpose.ALL

    def __init__(self, evaluator: 'Evaluator', body: Node, scope: Scope, var: Optional[str], label: Optional[str]):
        super().__init__()
        self.evaluator = evaluator
        self.body = body
        self.outer = scope
        self.var = var
        self.label = label
        self.loop_scope: Optional[NestedScope] = None
        self.result: Any = None
        self.escaped: Any = None

    def start(self):
        self.loop_scope = NestedScope(self.outer, kind="loop", label=self.label)
        self.evaluator.labels.append(self.label)

    def finish(self):
        self.evaluator.labels.pop()
        self.loop_scope = None

    def apply(self, value):
        scope = self.loop_scope
        scope.bindings.clear()
        if self.var:
            scope.bindings[self.var] = value
        outcome = self.evaluator.exec_block(self.body.children, scope)
        if isinstance(outcome, Next):
            return self.result
        if isinstance(outcome, Leave):
            self.stopped = True
            if self.evaluator.leave_matches(outcome.label, self.label):
                if outcome.has_value:
                    self.result = outcome.value
            else:
                self.escaped = outcome
            return self.result
        self.result = outcome
        return self.result


class Evaluator:
    """The reckon execution engine: one per session."""

    def __init__(self, session, files: Optional[FileHelper] = None):
        self.session = session
        self.files = files or FileHelper()
        self.parser = ReckonParser()
        self.transformer = ReckonTransformer()
        self.current_node: Optional[Node] = None
        self.current_scope: Scope = session.global_scope
        self.call_stack: List[Dict[str, Any]] = []
        self.labels: List[Optional[str]] = []
        # >0 while evaluating call arguments: zero-parameter functions are passed, not called.
        self.param_eval = 0
        # >0 inside functions, case blocks and interpolation: no implicit result display.
        self.quiet_depth = 0
        self._handlers = self._create_handlers()
        self._directives = self._create_directives()

    @property
    def settings(self):
        return self.session.settings

    @property
    def global_scope(self) -> Scope:
        return self.session.global_scope

    @property
    def sink(self):
        return self.session.sink

    def _create_handlers(self) -> Dict[str, Callable[[Node, Scope], Any]]:
        return {
            'program': self._eval_program,
            'block': self._eval_block,
            'expr_stmt': self._eval_expr_stmt,
            'define': self._eval_define,
            'var': self._eval_var,
            'const': self._eval_const,
            'enum': self._eval_enum,
            'loop': self._eval_loop,
            'while': self._eval_while,
            'if': self._eval_if,
            'case': self._eval_case,
            'leave': self._eval_leave,
            'next': self._eval_next,
            'timethis': self._eval_timethis,
            'directive': self._eval_directive,
            'assign': self._eval_assign,
            'ternary': self._eval_ternary,
            'binop': self._eval_binop,
            'unary': self._eval_unary,
            'incdec': self._eval_incdec,
            'factorial': self._eval_factorial,
            'call': self._eval_call,
            'index': self._eval_index,
            'slice': self._eval_slice,
            'member': self._eval_member,
            'reduction': self._eval_reduction,
            'literal': self._eval_literal,
            'unit': self._eval_unit,
            'string': self._eval_string,
            'istring': self._eval_istring,
            'name': self._eval_name,
            'argref': self._eval_argref,
            'all_args': self._eval_all_args,
            'arg_count': self._eval_arg_count,
            'array': self._eval_array,
            'object': self._eval_object,
        }

    # ===================================================================
    # Entry points
    # ===================================================================

    def parse(self, source: str) -> Node:
        return self.transformer.transform(self.parser.parse(source), source)

    def run_program(self, program: Node, scope: Optional[Scope] = None) -> Any:
        """Execute a whole program; a signal that escapes it is an internal error."""
        scope = scope or self.global_scope
        result = None
        for stmt in program.children:
            started = time.perf_counter()
            value = self.exec_statement(stmt, scope)
            if is_signal(value):
                err = escaped_signal_error(value)
                err.loc = stmt.loc
                raise err
            if self.settings.timing and self.quiet_depth == 0 and self.sink is not None:
                self.sink.display_timing_message(f"Elapsed time: {time.perf_counter() - started:.6f} seconds")
            result = value
        return result

    def evaluate_source(self, source: str, scope: Optional[Scope] = None, quiet: bool = True) -> Any:
        """Parse and run text from inside an evaluation (eval, interpolation, $include)."""
        program = self.parse(source)
        if quiet:
            self.quiet_depth += 1
        try:
            return self.run_program(program, scope or self.current_scope)
        finally:
            if quiet:
                self.quiet_depth -= 1

    def eval(self, node: Node, scope: Scope) -> Any:
        """Evaluate an expression node to a value."""
        self.current_node = node
        handler = self._handlers.get(node.kind)
        if handler is None:
            raise UnknownOperatorError(f"Unknown node kind '{node.kind}'", node.loc)
        return handler(node, scope)

    def exec_block(self, statements: List[Node], scope: Scope) -> Any:
        result = None
        for stmt in statements:
            value = self.exec_statement(stmt, scope)
            if is_signal(value):
                return value
            result = value
        return result

    def exec_statement(self, node: Node, scope: Scope) -> Any:
        """Run one statement, translating low-level failures into calculator errors."""
        previous_scope = self.current_scope
        self.current_scope = scope
        try:
            return self.eval(node, scope)
        except SignalEscape as e:
            return e.signal
        except CalcError as e:
            if e.loc is None:
                e.loc = node.loc
            raise
        except ZeroDivisionError as e:
            raise CalcArithmeticError("Divide by zero", node.loc) from e
        except ArithmeticError as e:
            raise CalcArithmeticError(f"Arithmetic error: {type(e).__name__}", node.loc) from e
        except RecursionError as e:
            raise CalcExprError("Recursion too deep", node.loc) from e
        except (ValueError, TypeError) as e:
            raise ConversionError(str(e), node.loc) from e
        finally:
            self.current_scope = previous_scope

    def _run_body(self, body: Node, scope: Scope) -> Any:
        """A function or block body: a brace block or a single expression."""
        if body.kind == 'block':
            return self.exec_block(body.children, scope)
        return self.exec_statement(body, scope)

    # ===================================================================
    # Helpers
    # ===================================================================

    def _printer(self, pretty: bool = False) -> Printer:
        return Printer.for_settings(self.settings, pretty=pretty)

    def _render(self, value: Any) -> str:
        return self._printer().pformat(value, quote=self.settings.quote_strings)

    def _action(self, message: str):
        if self.sink is not None and not self.settings.silence_directives and self.quiet_depth == 0:
            self.sink.display_action_message(message)

    def _pi(self) -> Decimal:
        return self.session.constants.snapshot().pi

    def leave_matches(self, leave_label: Optional[str], label: Optional[str]) -> bool:
        if leave_label is None or label is None:
            return leave_label is None and label is None
        if self.settings.ignore_case:
            return leave_label.casefold() == label.casefold()
        return leave_label == label

    def _is_active_label(self, name: str) -> bool:
        if any(label is not None and self.leave_matches(name, label) for label in self.labels):
            return True
        return any(self.leave_matches(name, frame['name']) for frame in self.call_stack
                   if isinstance(frame['func'], FunctionDeclaration))

    def _push_frame(self, name, func, args, call_site_node):
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'call_site': getattr(call_site_node, 'loc', None),
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _args_scope(self, scope: Scope):
        fn = scope.nearest("function")
        return fn if fn is not None else self.global_scope

    # ===================================================================
    # Statements
    # ===================================================================

    def _eval_program(self, node: Node, scope: Scope) -> Any:
        return self.run_program(node, scope)

    def _eval_block(self, node: Node, scope: Scope) -> Any:
        return self.exec_block(node.children, NestedScope(scope, kind="block"))

    def _eval_expr_stmt(self, node: Node, scope: Scope) -> Any:
        expr = node.children[0]
        value = self.eval(expr, scope)
        code = node.text
        if code:
            text = format_with_code(value, code, self.settings)
            value = text
        else:
            text = self._render(value)
        if self.sink is not None and self.quiet_depth == 0 and not self.settings.quiet:
            expr_text = "" if self.settings.results_only else expr.source + (f"@{code}" if code else "")
            self.sink.display_result(expr_text, text)
        return value

    def _eval_define(self, node: Node, scope: Scope) -> Any:
        params, params_given, body_text = node.value
        decl = FunctionDeclaration(node.text, params, node.children[0], body_text,
                                   closure=scope, params_given=params_given)
        scope.define(node.text, decl, self.settings.ignore_case, replace_functions=True)
        logger.debug("Defined function %s", decl.full_name)
        return decl

    def _eval_var(self, node: Node, scope: Scope) -> Any:
        value = None
        for item in node.children:
            value = self.eval(item.children[0], scope) if item.children else None
            scope.define(item.text, value, self.settings.ignore_case)
        return value

    def _eval_const(self, node: Node, scope: Scope) -> Any:
        value = None
        for item in node.children:
            value = self.eval(item.children[0], scope)
            scope.define(item.text, Constant(value), self.settings.ignore_case)
        return value

    def _eval_enum(self, node: Node, scope: Scope) -> Any:
        counter = 0
        value = None
        for item in node.children:
            if item.children:
                value = self.eval(item.children[0], scope)
                if isinstance(value, int) and not isinstance(value, bool):
                    counter = value + 1
            else:
                value = counter
                counter += 1
            scope.define(item.text, EnumMember(value), self.settings.ignore_case)
        return value

    def _eval_if(self, node: Node, scope: Scope) -> Any:
        cond, then_block, *rest = node.children
        if to_boolean(self.eval(cond, scope)):
            return self.exec_block(then_block.children, NestedScope(scope, kind="if"))
        if not rest:
            return None
        other = rest[0]
        if other.kind == 'if':
            return self.exec_statement(other, scope)
        return self.exec_block(other.children, NestedScope(scope, kind="if"))

    def _eval_while(self, node: Node, scope: Scope) -> Any:
        cond, body = node.children
        label = node.text
        loop_scope = NestedScope(scope, kind="while", label=label)
        result = None
        self.labels.append(label)
        try:
            while to_boolean(self.eval(cond, scope)):
                loop_scope.bindings.clear()
                outcome = self.exec_block(body.children, loop_scope)
                if isinstance(outcome, Next):
                    continue
                if isinstance(outcome, Leave):
                    if self.leave_matches(outcome.label, label):
                        return outcome.value if outcome.has_value else result
                    return outcome
                result = outcome
        finally:
            self.labels.pop()
        return result

    def _eval_loop(self, node: Node, scope: Scope) -> Any:
        ctl, body = node.children
        var = node.value['var']
        mode = node.value['mode']
        visitor = LoopVisitor(self, body, scope, var, node.text)
        if ctl.kind == 'range':
            if mode == 'within':
                raise CalcExprError("'within' cannot be used with an explicit start and stop", ctl.loc)
            iterate_range(self._range_of(ctl, scope), visitor)
        else:
            items = [self.eval(c, scope) for c in ctl.children]
            if len(items) == 1:
                self._iterate_single(items[0], mode, visitor)
            else:
                iterate_values(items, visitor)
        if visitor.escaped is not None:
            return visitor.escaped
        return visitor.result

    def _range_of(self, ctl: Node, scope: Scope):
        bounds = [self.eval(c, scope) for c in ctl.children]
        return make_range(*bounds)

    def _iterate_single(self, value: Any, mode: Optional[str], visitor: IterationVisitor) -> Any:
        """`loop n`, `loop within n` or enumeration of one collection/string."""
        if value is None:
            raise NullValueError("Cannot loop over null")
        if isinstance(value, (str, list, dict, CalcSet)):
            if mode == 'within':
                return iterate_values(range(len(value)), visitor)
            if isinstance(value, dict):
                items = list(value.values()) if mode == 'over' else list(value.keys())
            else:
                items = list(value)
            return iterate_values(items, visitor)
        if mode == 'within':
            n = to_integer(value)
            if n == 0:
                return iterate_values([], visitor)
            return iterate_range(make_range(0, n - 1 if n > 0 else n + 1), visitor)
        n = to_real(value)
        if n == 0:
            return iterate_values([], visitor)
        return iterate_range(make_range(1 if n > 0 else -1, n), visitor)

    # --- case ---

    def _eval_case(self, node: Node, scope: Scope) -> Any:
        value = self.eval(node.children[0], scope)
        arms = node.children[1:]
        outcome, matched = self._match_arms(arms, 0, value, scope)
        if matched:
            return outcome
        for index, arm in enumerate(arms):
            if any(sel.kind == 'sel_default' for sel in arm.children[:-1]):
                outcome = self._run_case_block(arm.children[-1], scope)
                if isinstance(outcome, Next):
                    outcome, _ = self._match_arms(arms, index + 1, value, scope)
                return outcome
        return None

    def _match_arms(self, arms: List[Node], start: int, value: Any, scope: Scope):
        """Try arms from `start`; returns (outcome, whether any arm matched)."""
        matched = False
        for arm in arms[start:]:
            selectors = arm.children[:-1]
            if not any(self._selector_matches(sel, value, scope) for sel in selectors):
                continue
            matched = True
            outcome = self._run_case_block(arm.children[-1], scope)
            if isinstance(outcome, Next):
                continue
            return outcome, True
        return None, matched

    def _run_case_block(self, block: Node, scope: Scope) -> Any:
        self.quiet_depth += 1
        try:
            return self.exec_block(block.children, NestedScope(scope, kind="case"))
        finally:
            self.quiet_depth -= 1

    def _equals(self, a: Any, b: Any) -> bool:
        return compare(a, b, allow_nulls=True, ignore_case=self.settings.ignore_case, equality=True) == 0

    def _compare_with(self, op: str, a: Any, b: Any) -> bool:
        ic = self.settings.ignore_case
        match op:
            case '==':
                return self._equals(a, b)
            case '!=':
                return not self._equals(a, b)
            case '===':
                return compare(a, b, strict=True, allow_nulls=True, ignore_case=ic, equality=True) == 0
            case '!==':
                return compare(a, b, strict=True, allow_nulls=True, ignore_case=ic, equality=True) != 0
            case '<':
                return compare(a, b, ignore_case=ic) < 0
            case '<=':
                return compare(a, b, ignore_case=ic) <= 0
            case '>':
                return compare(a, b, ignore_case=ic) > 0
            case '>=':
                return compare(a, b, ignore_case=ic) >= 0
        raise UnknownOperatorError(f"Unknown comparison '{op}'")

    def _selector_matches(self, sel: Node, value: Any, scope: Scope) -> bool:
        match sel.kind:
            case 'sel_default':
                return False
            case 'sel_value':
                return self._equals(value, self.eval(sel.children[0], scope))
            case 'sel_range':
                rng = self._range_of(sel, scope)
                return bool(iterate_range(rng, SelectVisitor(value, self._equals)))
            case 'sel_regex':
                return self._regex_matches(sel, value)
            case 'sel_compare':
                ops, conn = sel.value
                first = self._compare_with(ops[0], value, self.eval(sel.children[0], scope))
                if conn is None:
                    return first
                if conn == '&&' and not first:
                    return False
                if conn == '||' and first:
                    return True
                second = self._compare_with(ops[1], value, self.eval(sel.children[1], scope))
                if conn == '^^':
                    return first != second
                return second
        raise UnknownOperatorError(f"Unknown case selector '{sel.kind}'", sel.loc)

    def _regex_matches(self, sel: Node, value: Any) -> bool:
        flags = 0
        pattern = sel.text
        for ch in sel.value or "":
            if ch not in _REGEX_FLAGS:
                raise CalcExprError(f"Unknown regular expression flag '{ch}'", sel.loc)
            flags |= _REGEX_FLAGS[ch]
        if 'l' in (sel.value or ""):
            pattern = re.escape(pattern)
        if self.settings.ignore_case:
            flags |= re.IGNORECASE
        try:
            return re.fullmatch(pattern, to_text(value), flags) is not None
        except re.error as e:
            raise CalcExprError(f"Invalid regular expression '{sel.text}': {e}", sel.loc)

    # --- leave / next / timethis ---

    def _eval_leave(self, node: Node, scope: Scope) -> Any:
        label = node.text
        children = node.children
        # `leave outer` with no value: the bare name is a label when one is active.
        if label is None and len(children) == 1 and children[0].kind == 'name' \
                and self._is_active_label(children[0].text):
            return Leave(children[0].text)
        if not children:
            return Leave(label)
        return Leave(label, self.eval(children[0], scope), True)

    def _eval_next(self, node: Node, scope: Scope) -> Any:
        return NEXT

    def _eval_timethis(self, node: Node, scope: Scope) -> Any:
        started = time.perf_counter()
        try:
            return self.exec_block(node.children[0].children, NestedScope(scope, kind="block"))
        finally:
            elapsed = time.perf_counter() - started
            what = f" for {node.text}" if node.text else ""
            if self.sink is not None:
                self.sink.display_timing_message(f"Elapsed time{what}: {elapsed:.6f} seconds")

    # ===================================================================
    # Directives
    # ===================================================================

    def _create_directives(self) -> Dict[str, Callable[[Node, Scope], Any]]:
        return {
            'decimal': self._dir_decimal,
            'double': lambda n, s: self._set_precision(DOUBLE_PRECISION),
            'float': lambda n, s: self._set_precision(FLOAT_PRECISION),
            'default': lambda n, s: self._set_precision(DEFAULT_PRECISION),
            'degrees': lambda n, s: self._set_trig(True),
            'radians': lambda n, s: self._set_trig(False),
            'binary': lambda n, s: self._set_units('binary', "Units in binary."),
            'si': lambda n, s: self._set_units('si', "Units in SI (base ten) form."),
            'mixed': lambda n, s: self._set_units('mixed', "Units in mixed form."),
            'clear': self._dir_clear,
            'variables': self._dir_variables,
            'echo': self._dir_echo,
            'assert': self._dir_assert,
            'require': self._dir_require,
            'include': self._dir_include,
            'save': self._dir_save,
            'load': self._dir_load,
        }

    def _eval_directive(self, node: Node, scope: Scope) -> Any:
        name = node.text.lower()
        if name in MODE_DIRECTIVES:
            return self._dir_mode(MODE_DIRECTIVES[name], node, scope)
        handler = self._directives.get(name)
        if handler is None:
            raise CalcExprError(f"Unknown directive '${node.text}'", node.loc)
        if node.value is not None:
            raise CalcExprError(f"Directive '${node.text}' does not take a block", node.loc)
        logger.debug("Directive $%s", name)
        return handler(node, scope)

    def _dir_mode(self, mode: str, node: Node, scope: Scope) -> Any:
        session = self.session
        args = node.children
        word = args[0].text.lower() if args and args[0].kind == 'name' else None
        if word in ('pop', 'prev'):
            session.pop_mode(mode)
            self._action(f"Mode '{mode}' restored to {session.mode(mode)}.")
            return session.mode(mode)
        if not args:
            value = True
        elif word in _MODE_WORDS:
            value = _MODE_WORDS[word]
        else:
            value = to_boolean(self.eval(args[0], scope))
        logger.debug("Mode %s -> %s", mode, value)
        if node.value is None:
            session.push_mode(mode, value)
            self._action(f"Mode '{mode}' set to {value}.")
            return value
        stack = session.stacks[mode]
        depth = len(stack)
        session.push_mode(mode, value)
        try:
            return self.exec_block(node.value.children, NestedScope(scope, kind="block"))
        finally:
            # Drop anything the block pushed itself, then restore our own entry.
            del stack[depth + 1:]
            session.pop_mode(mode)

    def _set_precision(self, digits: int):
        self.session.set_precision(digits)
        self._action(f"Precision is now {digits} digits.")
        return digits

    def _dir_decimal(self, node: Node, scope: Scope):
        if len(node.children) != 1:
            raise CalcExprError("$decimal needs exactly one precision value", node.loc)
        value = self.eval(node.children[0], scope)
        try:
            digits = to_integer(value)
        except CalcArithmeticError:
            raise CalcExprError(f"Decimal precision of {self._render(value)} must be an integer value", node.loc)
        return self._set_precision(digits)

    def _set_trig(self, degrees: bool):
        self.settings.degrees = degrees
        self._action(f"Trig mode set to {'degrees' if degrees else 'radians'}.")
        return None

    def _set_units(self, units: str, message: str):
        self.session.set_units(units)
        self._action(message)
        return None

    def _dir_clear(self, node: Node, scope: Scope):
        target = self.global_scope
        if not node.children:
            target.clear()
            self._action("All variables cleared.")
            return None
        names = []
        for arg in node.children:
            name = arg.text if arg.kind == 'name' else to_text(self.eval(arg, scope))
            if not target.remove(name, self.settings.ignore_case):
                raise UndefinedNameError(f"Undefined name '{name}'", arg.loc)
            names.append(f"'{name}'")
        prefix = "Variable" if len(names) == 1 else "Variables"
        self._action(f"{prefix} {', '.join(names)} cleared.")
        return None

    def _dir_variables(self, node: Node, scope: Scope):
        listing = {}
        for name in self.global_scope.names():
            listing[name] = unwrap(self.global_scope.bindings[name])
        if self.sink is not None:
            for name, value in listing.items():
                shown = value.full_name if isinstance(value, FunctionDeclaration) else self._render(value)
                self.sink.display_message(f"{name} = {shown}", 'stdout')
        return listing

    def _dir_echo(self, node: Node, scope: Scope):
        text = " ".join(to_text(self.eval(arg, scope)) for arg in node.children)
        if self.sink is not None:
            self.sink.display_message(text, 'stdout')
        return None

    def _dir_assert(self, node: Node, scope: Scope):
        if not node.children:
            raise CalcExprError("$assert needs a condition", node.loc)
        cond = node.children[0]
        if to_boolean(self.eval(cond, scope)):
            return True
        if len(node.children) > 1:
            message = to_text(self.eval(node.children[1], scope))
        else:
            message = f"Assertion failed: {cond.source}"
        raise CalcAssertionError(message, node.loc)

    def _dir_require(self, node: Node, scope: Scope):
        if len(node.children) != 1:
            raise CalcExprError("$require needs one version string", node.loc)
        required = to_text(self.eval(node.children[0], scope))
        if _version_tuple(VERSION) < _version_tuple(required):
            raise VersionMismatchError(
                f"Required version {required} is newer than the running version {VERSION}", node.loc)
        return True

    def _paths(self, node: Node, scope: Scope) -> List[str]:
        if not node.children:
            raise CalcExprError(f"${node.text} needs a file name", node.loc)
        paths = []
        for arg in node.children:
            value = self.eval(arg, scope)
            if isinstance(value, list):
                paths.extend(to_text(v) for v in value)
            else:
                paths.append(to_text(value))
        return paths

    def _dir_include(self, node: Node, scope: Scope):
        text = self.files.get_file_contents(self._paths(node, scope))
        return self.run_program(self.parse(text), self.global_scope)

    def _dir_save(self, node: Node, scope: Scope):
        path = self._paths(node, scope)[0]
        size = self.files.write_raw_text(render_save_file(self.global_scope), path)
        self._action(f"Variables saved to '{path}'.")
        return size

    def _dir_load(self, node: Node, scope: Scope):
        paths = self._paths(node, scope)
        text = self.files.get_file_contents(paths)
        self.quiet_depth += 1
        try:
            self.run_program(self.parse(text), self.global_scope)
        finally:
            self.quiet_depth -= 1
        self._action(f"Variables loaded from {', '.join(repr(p) for p in paths)}.")
        return None

    # ===================================================================
    # Expressions
    # ===================================================================

    def _eval_literal(self, node: Node, scope: Scope) -> Any:
        value = node.value
        if isinstance(value, Decimal) and self.settings.rational:
            return fixup(Fraction(value))
        return fixup(value)

    def _eval_unit(self, node: Node, scope: Scope) -> Any:
        count, prefix, binary = node.value
        base = 1000 if self.settings.units == 'si' and not binary else 1024
        return count * base ** _UNIT_POWERS[prefix]

    def _eval_string(self, node: Node, scope: Scope) -> Any:
        return node.value

    def _eval_istring(self, node: Node, scope: Scope) -> Any:
        return self.interpolate(node.value, scope)

    def _eval_name(self, node: Node, scope: Scope, autocall: bool = True) -> Any:
        name = node.text
        ic = self.settings.ignore_case
        owner = scope.find_owner(name, ic)
        if owner is None:
            raise UndefinedNameError(f"Undefined name '{name}'", node.loc)
        value = unwrap(owner.bindings[owner._local_key(name, ic)])
        if autocall and self.param_eval == 0 and isinstance(value, FunctionDeclaration) and not value.params:
            return self.call_function(value, [], node)
        return value

    def _eval_argref(self, node: Node, scope: Scope) -> Any:
        args = self._args_scope(scope).args
        index = node.value
        if index == 0:
            fn = scope.nearest("function")
            return fn.declaration.name if fn is not None else None
        return args[index - 1] if index <= len(args) else None

    def _eval_all_args(self, node: Node, scope: Scope) -> Any:
        return list(self._args_scope(scope).args)

    def _eval_arg_count(self, node: Node, scope: Scope) -> Any:
        return len(self._args_scope(scope).args)

    def _eval_array(self, node: Node, scope: Scope) -> Any:
        return [self.eval(c, scope) for c in node.children]

    def _eval_object(self, node: Node, scope: Scope) -> Any:
        obj = {}
        for pair in node.children:
            obj[pair.text] = self.eval(pair.children[0], scope)
        if self.settings.sort_keys:
            obj = {k: obj[k] for k in sorted(obj, key=lambda k: k.casefold() if self.settings.ignore_case else k)}
        return obj

    def _eval_ternary(self, node: Node, scope: Scope) -> Any:
        cond, a, b = node.children
        return self.eval(a if to_boolean(self.eval(cond, scope)) else b, scope)

    def _eval_binop(self, node: Node, scope: Scope) -> Any:
        op = node.text
        left_node, right_node = node.children
        left = self.eval(left_node, scope)
        # Short-circuit forms evaluate the right side only when needed.
        if op == '&&':
            return to_boolean(left) and to_boolean(self.eval(right_node, scope))
        if op == '||':
            return to_boolean(left) or to_boolean(self.eval(right_node, scope))
        right = self.eval(right_node, scope)
        return self.binary(op, left, right)

    def binary(self, op: str, left: Any, right: Any) -> Any:
        rational = self.settings.rational
        ic = self.settings.ignore_case
        match op:
            case '^^':
                return to_boolean(left) != to_boolean(right)
            case '&' | '~&' | '&~' | '|' | '~|' | '^' | '~^':
                return bit_op(op, left, right)
            case '==' | '!=' | '===' | '!==' | '<' | '<=' | '>' | '>=':
                return self._compare_with(op, left, right)
            case '<=>':
                return compare(left, right, ignore_case=ic)
            case '<<' | '>>' | '>>>':
                return shift_op(op, left, right)
            case '+':
                return add_op(left, right, rational)
            case '-' | '*' | '/' | '\\' | '%':
                return arith(op, left, right, rational)
            case '**':
                return power_op(left, right, rational, self._pi())
            case '&&':
                return to_boolean(left) and to_boolean(right)
            case '||':
                return to_boolean(left) or to_boolean(right)
        raise UnknownOperatorError(f"Unknown operator '{op}'")

    def _eval_unary(self, node: Node, scope: Scope) -> Any:
        value = self.eval(node.children[0], scope)
        match node.text:
            case '-':
                return negate(value)
            case '+':
                if value is None:
                    raise NullValueError("Null operand for '+'")
                return fixup(to_number(value))
            case '!':
                return not to_boolean(value)
            case '~':
                return bit_not(value)
        raise UnknownOperatorError(f"Unknown operator '{node.text}'")

    def _eval_factorial(self, node: Node, scope: Scope) -> Any:
        return factorial_op(self.eval(node.children[0], scope))

    def _eval_incdec(self, node: Node, scope: Scope) -> Any:
        target = node.children[0]
        old = self.eval(target, scope)
        if old is None:
            raise NullValueError(f"Cannot apply '{node.text}' to null")
        new = arith('+' if node.text == '++' else '-', old, 1, self.settings.rational)
        self.assign(target, new, scope)
        return new if node.value == 'pre' else old

    def _eval_assign(self, node: Node, scope: Scope) -> Any:
        target, value_node = node.children
        op = node.text
        if op == '=':
            value = self.eval(value_node, scope)
        else:
            current = self.eval(target, scope)
            base = op[:-1]
            if base == '&&':
                value = to_boolean(current) and to_boolean(self.eval(value_node, scope))
            elif base == '||':
                value = to_boolean(current) or to_boolean(self.eval(value_node, scope))
            else:
                value = self.binary(base, current, self.eval(value_node, scope))
        self.assign(target, value, scope)
        return value

    # --- lvalues ---

    def assign(self, target: Node, value: Any, scope: Scope):
        ic = self.settings.ignore_case
        match target.kind:
            case 'name':
                owner = scope.find_owner(target.text, ic)
                if owner is not None and owner.kind == "library" \
                        and not isinstance(owner.get_binding(target.text, ic), Binding):
                    # Library functions may be shadowed; predefined values may not.
                    scope.set_value_locally(target.text, value, ic)
                else:
                    scope.set_value(target.text, value, ic)
            case 'member':
                container = self._container_for(target.children[0], scope, dict)
                self._store_item(container, target.text, value, target)
            case 'index':
                key = self.eval(target.children[1], scope)
                kind = list if isinstance(key, int) and not isinstance(key, bool) else dict
                container = self._container_for(target.children[0], scope, kind)
                self._store_item(container, key, value, target)
            case _:
                raise CalcExprError("Cannot assign to this expression", target.loc)

    def _check_root(self, node: Node, scope: Scope):
        """Collections reachable from a constant cannot be modified in place."""
        while node.kind in ('member', 'index'):
            node = node.children[0]
        if node.kind == 'name':
            binding = scope.get_binding(node.text, self.settings.ignore_case)
            if isinstance(binding, Binding) and not binding.assignable:
                raise CalcExprError(f"Cannot modify {binding.label} '{node.text}'", node.loc)

    def _container_for(self, node: Node, scope: Scope, kind: type) -> Any:
        """The collection `node` refers to, created (as `kind`) when it is undefined or null."""
        self._check_root(node, scope)
        ic = self.settings.ignore_case
        match node.kind:
            case 'name':
                current = scope.get_value(node.text, ic)
                if current is None:
                    current = kind()
                    scope.set_value(node.text, current, ic)
                return current
            case 'member' | 'index':
                if node.kind == 'member':
                    key = node.text
                    inner_kind = dict
                else:
                    key = self.eval(node.children[1], scope)
                    inner_kind = list if isinstance(key, int) and not isinstance(key, bool) else dict
                parent = self._container_for(node.children[0], scope, inner_kind)
                current = self._read_item(parent, key, node)
                if current is None:
                    current = kind()
                    self._store_item(parent, key, current, node)
                return current
        return self.eval(node, scope)

    def _read_item(self, container: Any, key: Any, node: Node) -> Any:
        match container:
            case dict():
                return self._dict_get(container, to_text(key))
            case list():
                index = to_integer(key)
                if index < 0:
                    index += len(container)
                return container[index] if 0 <= index < len(container) else None
        raise ConversionError(f"Cannot index into a {type(container).__name__} value", node.loc)

    def _store_item(self, container: Any, key: Any, value: Any, node: Node):
        match container:
            case dict():
                text = to_text(key)
                if self.settings.ignore_case:
                    text = next((k for k in container if k.casefold() == text.casefold()), text)
                container[text] = value
            case list():
                index = to_integer(key)
                if index < 0:
                    index += len(container)
                    if index < 0:
                        raise CalcExprError(f"Index {key} is out of range", node.loc)
                if index >= len(container):
                    container.extend([None] * (index + 1 - len(container)))
                container[index] = value
            case _:
                raise ConversionError("Only arrays and objects can be assigned into", node.loc)

    def _dict_get(self, obj: dict, key: str) -> Any:
        if key in obj:
            return obj[key]
        if self.settings.ignore_case:
            folded = key.casefold()
            for k, v in obj.items():
                if k.casefold() == folded:
                    return v
        return None

    # --- access ---

    def _eval_member(self, node: Node, scope: Scope) -> Any:
        obj = self.eval(node.children[0], scope)
        if obj is None:
            raise NullValueError(f"Cannot read '{node.text}' of null", node.loc)
        if not isinstance(obj, dict):
            raise ConversionError(f"Cannot read member '{node.text}' of a non-object value", node.loc)
        return self._dict_get(obj, node.text)

    def _eval_index(self, node: Node, scope: Scope) -> Any:
        obj = self.eval(node.children[0], scope)
        key = self.eval(node.children[1], scope)
        match obj:
            case None:
                raise NullValueError("Cannot index into null", node.loc)
            case str():
                index = to_integer(key)
                if index < 0:
                    index += len(obj)
                return obj[index] if 0 <= index < len(obj) else None
            case dict() | list():
                return self._read_item(obj, key, node)
        raise ConversionError("Only strings, arrays and objects can be indexed", node.loc)

    def _eval_slice(self, node: Node, scope: Scope) -> Any:
        obj_node, lo_node, hi_node = node.children
        obj = self.eval(obj_node, scope)
        lo = to_integer(self.eval(lo_node, scope)) if lo_node is not None else None
        hi = to_integer(self.eval(hi_node, scope)) if hi_node is not None else None
        if isinstance(obj, (str, list)):
            return obj[lo:hi]
        if obj is None:
            raise NullValueError("Cannot slice null", node.loc)
        raise ConversionError("Only strings and arrays can be sliced", node.loc)

    # --- calls ---

    def _eval_call(self, node: Node, scope: Scope) -> Any:
        callee, *arg_nodes = node.children
        if callee.kind == 'name':
            func = self._eval_name(callee, scope, autocall=False)
        else:
            func = self.eval(callee, scope)
        self.param_eval += 1
        try:
            args = [self.eval(a, scope) for a in arg_nodes]
        finally:
            self.param_eval -= 1
        return self.call_function(func, args, node)

    def call_function(self, func: Any, args: List[Any], node: Optional[Node] = None) -> Any:
        if isinstance(func, FunctionDeclaration):
            return self._call_user(func, args, node)
        if callable(func):
            name = getattr(func, "__name__", "<builtin>").lstrip("_")
            try:
                inspect.signature(func).bind(*args)
            except TypeError:
                raise CalcExprError(f"Wrong number of arguments for '{name}'", getattr(node, "loc", None))
            self._push_frame(name, func, args, node)
            saved = self.param_eval
            self.param_eval = 0
            try:
                return func(*args)
            except CalcError as e:
                e.frames.append(name)
                raise
            finally:
                self.param_eval = saved
                self._pop_frame()
        raise CalcExprError(f"{self._render(func)} is not a function", getattr(node, 'loc', None))

    def _call_user(self, decl: FunctionDeclaration, args: List[Any], node: Optional[Node]) -> Any:
        fscope = FunctionScope(decl, args, enclosing=decl.closure or self.global_scope)
        self._push_frame(decl.name, decl, args, node)
        saved = self.param_eval
        self.param_eval = 0
        self.quiet_depth += 1
        try:
            for i, param in enumerate(decl.params):
                if param.rest:
                    value = list(args[i:])
                elif i < len(args):
                    value = args[i]
                elif param.default is not None:
                    # Defaults see the parameters bound before them.
                    value = self.eval(param.default, fscope)
                else:
                    value = None
                fscope.bindings[param.name] = Parameter(value)
            result = self._run_body(decl.body, fscope)
        except CalcError as e:
            e.frames.append(decl.full_name)
            raise
        finally:
            self.quiet_depth -= 1
            self.param_eval = saved
            self._pop_frame()
        if is_signal(result):
            if isinstance(result, Leave) and (result.label is None or self.leave_matches(result.label, decl.name)):
                return result.value
            raise SignalEscape(result)
        return result

    # --- reductions ---

    def _eval_reduction(self, node: Node, scope: Scope) -> Any:
        ctl = node.children[0]
        visitor = visitor_for(_REDUCTIONS[node.text], self.settings.rational)
        if ctl.kind == 'range':
            return iterate_range(self._range_of(ctl, scope), visitor)
        items = [self.eval(c, scope) for c in ctl.children]
        if len(items) == 1:
            item = items[0]
            if isinstance(item, dict):
                return iterate_values(list(item.values()), visitor)
            if isinstance(item, (str, list, CalcSet)):
                return iterate_values(list(item), visitor)
            if is_number(item) and not is_collection(item):
                n = to_real(item)
                if n == 0:
                    return iterate_values([], visitor)
                return iterate_range(make_range(1 if n > 0 else -1, n), visitor)
        return iterate_values(items, visitor)

    # ===================================================================
    # Interpolation
    # ===================================================================

    def interpolate(self, template: str, scope: Scope) -> str:
        """Expand `$name`, `$$name`, `$n` and `${expr}` in an interpolated string."""
        out = []
        i = 0
        n = len(template)
        while i < n:
            ch = template[i]
            if ch == '\\' and i + 1 < n and template[i + 1] == '$':
                out.append('$')
                i += 2
                continue
            if ch != '$' or i + 1 >= n:
                out.append(ch)
                i += 1
                continue
            nxt = template[i + 1]
            if nxt == '{':
                end = self._matching_brace(template, i + 1)
                expr_text = template[i + 2:end]
                out.append(to_text(self._interpolated_value(expr_text, scope)))
                i = end + 1
                continue
            lookup_scope = scope
            start = i + 1
            if nxt == '$':
                lookup_scope = self.global_scope
                start = i + 2
            m = _NAME_RE.match(template, start)
            if m:
                value = self._eval_name(Node('name', text=m.group()), lookup_scope)
                out.append(to_text(value))
                i = m.end()
                continue
            m = _DIGITS_RE.match(template, start)
            if m and start == i + 1:
                value = self._eval_argref(Node('argref', value=int(m.group())), scope)
                out.append(to_text(value))
                i = m.end()
                continue
            out.append('$')
            i += 1
        return ''.join(out)

    def _matching_brace(self, text: str, open_index: int) -> int:
        depth = 0
        quote = None
        i = open_index
        while i < len(text):
            ch = text[i]
            if quote:
                if ch == '\\':
                    i += 2
                    continue
                if ch == quote:
                    quote = None
            elif ch in ('"', "'"):
                quote = ch
            elif ch == '{':
                depth += 1
            elif ch == '}':
                depth -= 1
                if depth == 0:
                    return i
            i += 1
        raise CalcExprError("Unterminated '${' in interpolated string")

    def _interpolated_value(self, expr_text: str, scope: Scope) -> Any:
        saved = self.param_eval
        self.param_eval = 0
        try:
            value = self.evaluate_source(expr_text, scope, quiet=True)
        finally:
            self.param_eval = saved
        return value
