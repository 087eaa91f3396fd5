import inspect
import logging
import math
import os
import re
import sys
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Context, Decimal, localcontext
from fractions import Fraction
from typing import Any, Dict, List, Literal, Optional

from reckon.reckon_constants import constant_getters, info, now, today
from reckon.reckon_convert import (
    compare, factorial_op, fixup, is_collection, kind_of, length_of, root_op, sort_key,
    to_decimal, to_fraction, to_integer, to_number, to_real, to_text,
)
from reckon.reckon_datatypes import CalcSet, Scope, SystemBacked
from reckon.reckon_errors import (
    CalcArithmeticError, CalcError, CalcExprError, CalcSyntaxError, ConversionError, NullValueError,
)
from reckon.reckon_file import FileHelper
from reckon.reckon_interpreter import Evaluator
from reckon.reckon_numeric import (
    ComplexNumber, ContinuedFraction, Quaternion, dec_acos, dec_asin, dec_atan, dec_atan2, dec_cos,
    dec_cosh, dec_sin, dec_sinh, dec_tanh, fib, is_prime,
)
from reckon.reckon_printer import Printer
from reckon.reckon_serialize import from_json, from_yaml, to_json, to_yaml
from reckon.reckon_settings import EvaluatorSession, Settings

logger = logging.getLogger("reckon.runtime")
logger.addHandler(logging.NullHandler())

RECURSION_LIMIT = 20000


# ===================================================================
# 1. Display sinks
# ===================================================================

class DisplaySink:
    """Where the evaluator sends results and messages. The base ignores everything."""

    def display_result(self, expr_text: str, result_text: str):
        pass

    def display_action_message(self, text: str):
        pass

    def display_message(self, text: str, channel: str = 'stdout'):
        pass

    def display_error_message(self, text: str, line: Optional[int] = None):
        pass

    def display_timing_message(self, text: str):
        pass


_RESET = "\033[0m"
_COLORS = {'result': "\033[32m", 'action': "\033[36m", 'error': "\033[31m", 'timing': "\033[33m"}


class ConsoleSink(DisplaySink):
    """Writes to stdout/stderr; colors follow the session's `colored` mode."""

    def __init__(self, settings: Optional[Settings] = None, out=None, err=None):
        self.settings = settings
        self.out = out or sys.stdout
        self.err = err or sys.stderr

    def _paint(self, text: str, what: str) -> str:
        if self.settings is not None and self.settings.colored:
            return f"{_COLORS[what]}{text}{_RESET}"
        return text

    def display_result(self, expr_text, result_text):
        if expr_text:
            print(f"{expr_text} -> {self._paint(result_text, 'result')}", file=self.out)
        else:
            print(self._paint(result_text, 'result'), file=self.out)

    def display_action_message(self, text):
        print(self._paint(text, 'action'), file=self.out)

    def display_message(self, text, channel='stdout'):
        print(text, file=self.err if channel == 'stderr' else self.out)

    def display_error_message(self, text, line=None):
        print(self._paint(text, 'error'), file=self.err)

    def display_timing_message(self, text):
        print(self._paint(text, 'timing'), file=self.out)


class RecordingSink(DisplaySink):
    """Collects everything as `{'topics': [...], 'message': ...}` dicts."""

    def __init__(self):
        self.side_effects: List[Dict[str, Any]] = []

    def clear(self):
        self.side_effects.clear()

    def display_result(self, expr_text, result_text):
        message = f"{expr_text} -> {result_text}" if expr_text else result_text
        self.side_effects.append({'topics': ['stdout', 'result'], 'message': message,
                                  'expr': expr_text, 'result': result_text})

    def display_action_message(self, text):
        self.side_effects.append({'topics': ['stdout', 'action'], 'message': text})

    def display_message(self, text, channel='stdout'):
        self.side_effects.append({'topics': [channel], 'message': text})

    def display_error_message(self, text, line=None):
        self.side_effects.append({'topics': ['stderr'], 'message': text, 'line': line})

    def display_timing_message(self, text):
        self.side_effects.append({'topics': ['stdout', 'timing'], 'message': text})

    def messages(self, topic: str) -> List[str]:
        return [e['message'] for e in self.side_effects if topic in e['topics']]


# ===================================================================
# 2. The Standard Library
# ===================================================================

class StdLib:
    """Python implementations of the calculator's built-in functions.

    Every `_name` method is bound into the library scope as `name`.
    """

    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    # --- helpers (not exported) ---

    @property
    def settings(self) -> Settings:
        return self.evaluator.settings

    def real_result(self, value: Decimal) -> Any:
        if self.settings.rational:
            return fixup(Fraction(value))
        return fixup(value)

    def pi(self) -> Decimal:
        return self.evaluator.session.constants.snapshot().pi

    def angle_in(self, x: Any) -> Decimal:
        d = to_decimal(x)
        if self.settings.degrees:
            return d * self.evaluator.session.constants.snapshot().pi_over_180
        return d

    def angle_out(self, radians: Decimal) -> Any:
        if self.settings.degrees:
            radians = radians / self.evaluator.session.constants.snapshot().pi_over_180
        return self.real_result(radians)

    def values_of(self, args) -> List[Any]:
        """A single collection argument stands for its elements."""
        if len(args) == 1 and is_collection(args[0]):
            coll = args[0]
            return list(coll.values()) if isinstance(coll, dict) else list(coll)
        return list(args)

    # --- Math ---
    def _abs(self, x):
        x = to_number(x)
        match x:
            case ComplexNumber() | Quaternion():
                return self.real_result(x.magnitude())
            case ContinuedFraction():
                return fixup(abs(x.to_fraction()))
        return fixup(abs(x))

    def _sign(self, x):
        r = to_real(x)
        return (r > 0) - (r < 0)

    def _sqrt(self, x):
        return root_op(x, 2, self.settings.rational, self.pi())

    def _cbrt(self, x):
        return root_op(x, 3, self.settings.rational, self.pi())

    def _root(self, x, n):
        return root_op(x, n, self.settings.rational, self.pi())

    def _exp(self, x):
        return self.real_result(to_decimal(x).exp())

    def _ln(self, x):
        d = to_decimal(x)
        if d <= 0:
            raise CalcArithmeticError(f"Logarithm of a non-positive number: {self.evaluator._render(x)}")
        return self.real_result(d.ln())

    def _log(self, x):
        d = to_decimal(x)
        if d <= 0:
            raise CalcArithmeticError(f"Logarithm of a non-positive number: {self.evaluator._render(x)}")
        return self.real_result(d.log10())

    def _log2(self, x):
        d = to_decimal(x)
        if d <= 0:
            raise CalcArithmeticError(f"Logarithm of a non-positive number: {self.evaluator._render(x)}")
        with localcontext() as ctx:
            ctx.prec += 5
            result = d.ln() / Decimal(2).ln()
        return self.real_result(+result)

    # --- Trigonometry (degrees mode converts at the edges) ---
    def _sin(self, x):
        return self.real_result(dec_sin(self.angle_in(x), self.pi()))

    def _cos(self, x):
        return self.real_result(dec_cos(self.angle_in(x), self.pi()))

    def _tan(self, x):
        angle = self.angle_in(x)
        c = dec_cos(angle, self.pi())
        if c == 0:
            raise CalcArithmeticError("Tangent is undefined for this angle")
        return self.real_result(dec_sin(angle, self.pi()) / c)

    def _asin(self, x):
        return self.angle_out(dec_asin(to_decimal(x), self.pi()))

    def _acos(self, x):
        return self.angle_out(dec_acos(to_decimal(x), self.pi()))

    def _atan(self, x):
        return self.angle_out(dec_atan(to_decimal(x), self.pi()))

    def _atan2(self, y, x):
        return self.angle_out(dec_atan2(to_decimal(y), to_decimal(x), self.pi()))

    def _sinh(self, x):
        return self.real_result(dec_sinh(to_decimal(x)))

    def _cosh(self, x):
        return self.real_result(dec_cosh(to_decimal(x)))

    def _tanh(self, x):
        return self.real_result(dec_tanh(to_decimal(x)))

    # --- Rounding and integers ---
    def _round(self, x, places=0):
        """Round to `places` significant digits; 0 rounds to an integer."""
        digits = to_integer(places)
        d = to_decimal(x)
        if digits <= 0:
            return fixup(d.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        return fixup(Context(prec=digits, rounding=ROUND_HALF_UP).plus(d))

    def _floor(self, x):
        return math.floor(to_real(x))

    def _ceil(self, x):
        return math.ceil(to_real(x))

    def _trunc(self, x):
        return math.trunc(to_real(x))

    def _gcd(self, *values):
        return math.gcd(*(to_integer(v) for v in self.values_of(values)))

    def _lcm(self, *values):
        return math.lcm(*(to_integer(v) for v in self.values_of(values)))

    def _fib(self, n):
        return fib(to_integer(n))

    def _factorial(self, n):
        return factorial_op(n)

    def _isprime(self, n):
        return is_prime(to_integer(n))

    def _max(self, *values):
        items = self.values_of(values)
        if not items:
            raise CalcExprError("max needs at least one value")
        if any(v is None for v in items):
            raise NullValueError("Cannot compare null values")
        return max(items, key=sort_key(self.settings.ignore_case))

    def _min(self, *values):
        items = self.values_of(values)
        if not items:
            raise CalcExprError("min needs at least one value")
        if any(v is None for v in items):
            raise NullValueError("Cannot compare null values")
        return min(items, key=sort_key(self.settings.ignore_case))

    # --- Types and conversions ---
    def _typeof(self, x):
        return kind_of(x)

    def _length(self, x, recursive=False):
        return length_of(x, bool(recursive))

    def _int(self, x):
        return math.trunc(to_real(x))

    def _dec(self, x):
        return fixup(to_decimal(x))

    def _frac(self, n, d=None):
        if d is None:
            return fixup(to_fraction(n))
        den = to_fraction(d)
        if den == 0:
            raise CalcArithmeticError("Divide by zero")
        return fixup(to_fraction(n) / den)

    def _complex(self, re_, im=0):
        return fixup(ComplexNumber.of(to_real(re_), to_real(im)))

    def _quaternion(self, a, b=0, c=0, d=0):
        return fixup(Quaternion.of(to_real(a), to_real(b), to_real(c), to_real(d)))

    def _cfrac(self, x):
        if isinstance(x, list):
            return ContinuedFraction.from_terms(to_integer(t) for t in x)
        if isinstance(x, ContinuedFraction):
            return x
        return ContinuedFraction.from_value(to_real(x))

    def _real(self, z):
        z = to_number(z)
        match z:
            case ComplexNumber():
                return fixup(z.re)
            case Quaternion():
                return fixup(z.a)
        return to_real(z)

    def _imag(self, z):
        z = to_number(z)
        match z:
            case ComplexNumber():
                return fixup(z.im)
            case Quaternion():
                return fixup(z.b)
        return 0

    def _conj(self, z):
        z = to_number(z)
        if isinstance(z, (ComplexNumber, Quaternion)):
            return fixup(z.conjugate())
        return z

    # --- Strings ---
    def _join(self, *values):
        """1 value: itself; 2: concatenated; more: the first n-1 joined by the last."""
        texts = [to_text(v) for v in values]
        match len(texts):
            case 0:
                return ""
            case 1 | 2:
                return "".join(texts)
        return texts[-1].join(texts[:-1])

    def _split(self, s, sep=None, limit=None):
        text = to_text(s)
        maxsplit = -1 if limit is None else max(to_integer(limit) - 1, 0)
        return text.split(None if sep is None else to_text(sep), maxsplit)

    def _upper(self, s):
        return to_text(s).upper()

    def _lower(self, s):
        return to_text(s).lower()

    def _trim(self, s):
        return to_text(s).strip()

    def _replace(self, s, old, new):
        return to_text(s).replace(to_text(old), to_text(new))

    def _matches(self, s, pattern):
        flags = re.IGNORECASE if self.settings.ignore_case else 0
        try:
            return re.fullmatch(to_text(pattern), to_text(s), flags) is not None
        except re.error as e:
            raise CalcExprError(f"Invalid regular expression '{pattern}': {e}")

    def _repeat(self, s, n):
        count = to_integer(n)
        if count < 0:
            raise CalcExprError("Repeat count must not be negative")
        return to_text(s) * count

    # --- Collections ---
    def _keys(self, obj):
        if not isinstance(obj, dict):
            raise ConversionError(f"keys needs an object, not {kind_of(obj)}")
        return list(obj.keys())

    def _values(self, obj):
        if not isinstance(obj, dict):
            raise ConversionError(f"values needs an object, not {kind_of(obj)}")
        return list(obj.values())

    def _sort(self, coll):
        key = sort_key(self.settings.ignore_case)
        match coll:
            case dict():
                return {k: coll[k] for k in sorted(coll, key=key)}
            case list() | CalcSet():
                return sorted(coll, key=key)
            case str():
                return "".join(sorted(coll))
        raise ConversionError(f"Cannot sort a {kind_of(coll)} value")

    def _reverse(self, coll):
        match coll:
            case str():
                return coll[::-1]
            case list():
                return coll[::-1]
            case CalcSet():
                return CalcSet(reversed(list(coll)))
            case dict():
                return {k: coll[k] for k in reversed(list(coll))}
        raise ConversionError(f"Cannot reverse a {kind_of(coll)} value")

    def _set(self, *values):
        return CalcSet(self.values_of(values))

    def _has(self, coll, value):
        ic = self.settings.ignore_case
        match coll:
            case dict():
                key = to_text(value)
                if ic:
                    return any(k.casefold() == key.casefold() for k in coll)
                return key in coll
            case str():
                if ic:
                    return to_text(value).casefold() in coll.casefold()
                return to_text(value) in coll
            case list() | CalcSet():
                return any(compare(value, v, allow_nulls=True, ignore_case=ic, equality=True) == 0 for v in coll)
        raise ConversionError(f"Cannot search a {kind_of(coll)} value")

    def _find(self, coll, value, start=0):
        ic = self.settings.ignore_case
        begin = to_integer(start)
        match coll:
            case str():
                needle = to_text(value)
                if ic:
                    return coll.casefold().find(needle.casefold(), begin)
                return coll.find(needle, begin)
            case list():
                for i in range(begin, len(coll)):
                    if compare(value, coll[i], allow_nulls=True, ignore_case=ic, equality=True) == 0:
                        return i
                return -1
        raise ConversionError(f"Cannot search a {kind_of(coll)} value")

    # --- Serialization ---
    def _tojson(self, value):
        return to_json(value)

    def _fromjson(self, text):
        return from_json(to_text(text))

    def _toyaml(self, value):
        return to_yaml(value)

    def _fromyaml(self, text):
        return from_yaml(to_text(text))

    # --- System ---
    def _eval(self, text):
        return self.evaluator.evaluate_source(to_text(text), self.evaluator.current_scope, quiet=True)

    def _read(self, path, charset=None):
        return self.evaluator.files.read_raw_text(to_text(path), None if charset is None else to_text(charset))

    def _write(self, text, path, charset=None):
        return self.evaluator.files.write_raw_text(to_text(text), to_text(path),
                                                   None if charset is None else to_text(charset))

    def _exec(self, *args):
        return self.evaluator.files.run_external_command([to_text(a) for a in self.values_of(args)])


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    error_kind: Optional[str] = None
    exit_code: int = 0
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses, transforms, and executes calculator scripts against one session."""

    def __init__(self, settings: Optional[Settings] = None, sink: Optional[DisplaySink] = None,
                 args: Optional[List[Any]] = None, base_dir: Optional[str] = None):
        self.sink = sink if sink is not None else RecordingSink()
        # Each calculator call nests a dozen or so Python frames.
        sys.setrecursionlimit(max(sys.getrecursionlimit(), RECURSION_LIMIT))
        self.session = EvaluatorSession(settings, self.sink, args)
        self.files = FileHelper(base_dir)
        self.evaluator = Evaluator(self.session, self.files)

        # Built-ins and predefined values sit in a scope enclosing the globals,
        # so `$clear`, `$variables` and `$save` never see them.
        self.library_scope = Scope(kind="library")
        stdlib = StdLib(self.evaluator)
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                self.library_scope.bindings[name[1:]] = member
        for name, value in (('true', True), ('false', False), ('null', None)):
            self.library_scope.define_predefined(name, value)
        for name, getter in constant_getters(self.session).items():
            self.library_scope.define_predefined(name, SystemBacked(getter))
        self.library_scope.define_predefined('today', SystemBacked(today))
        self.library_scope.define_predefined('now', SystemBacked(now))
        self.library_scope.define_predefined('info', SystemBacked(lambda: info(self.session)))
        self.session.global_scope.enclosing = self.library_scope

    @property
    def settings(self) -> Settings:
        return self.session.settings

    # --- error formatting ---

    def _format_parse_error(self, e: CalcSyntaxError, source: str) -> str:
        loc = e.loc or {}
        line = loc.get('line')
        col = loc.get('col')
        if line is not None and col is not None:
            context = self._source_context(source, loc)
            return f"{e.kind}: {e.message} (line {line}, col {col})" + (f"\n{context}" if context else "")
        return f"{e.kind}: {e.message}"

    def _format_runtime_error(self, e: Exception, source: str) -> tuple[str, Optional[dict]]:
        match e:
            case CalcError():
                msg = f"{e.kind}: {e.message}"
                loc = e.loc
            case RecursionError():
                msg = "ExpressionError: Recursion too deep"
                loc = None
            case _:
                msg = f"InternalError: {e}"
                loc = None
        if loc is None:
            node = self.evaluator.current_node
            loc = getattr(node, 'loc', None)

        token = None
        if loc and isinstance(loc, dict):
            line = loc.get('line')
            col = loc.get('col')
            token = {'line': line, 'col': col, 'tag': loc.get('tag'), 'text': loc.get('text')}
            if line is not None and col is not None:
                context = self._source_context(source, loc)
                if context:
                    msg = f"{msg}\n{context}"

        st = self._format_stacktrace(getattr(e, 'frames', None))
        if st:
            msg += "\n" + st
        return msg, token

    def _source_context(self, source: str, loc: dict, radius: int = 2) -> str:
        """Show the lines around `loc` and underline the source span it covers."""
        lines = source.splitlines()
        line, col = loc.get('line'), loc.get('col')
        if not line or line < 1 or line > len(lines):
            return ""
        first = max(1, line - radius)
        last = min(len(lines), line + radius)
        gutter = len(str(last))
        target = lines[line - 1]
        indent = max((col or 1) - 1, 0)
        span_text = (loc.get('text') or '').split('\n', 1)[0]
        span = max(1, min(len(span_text), len(target) - indent))
        shown = []
        for number in range(first, last + 1):
            marker = ">" if number == line else " "
            shown.append(f"{marker} {number:>{gutter}} | {lines[number - 1]}")
            if number == line and col is not None:
                shown.append(f"  {'':>{gutter}} | {' ' * indent}{'^' * span}")
        return "\n".join(shown)

    def _format_stacktrace(self, frames: Optional[List[str]]) -> str:
        if not frames:
            return ""
        return "Called from: " + " <- ".join(frames)

    # --- execution ---

    def _error_result(self, msg: str, token: Optional[Token], error: Exception) -> ExecutionResult:
        kind = getattr(error, 'kind', 'InternalError')
        exit_code = getattr(error, 'exit_code', 99)
        line = token.get('line') if token else None
        self.sink.display_error_message(
            ExecutionResult('error', error_message=msg, error_token=token).format_error(), line)
        return ExecutionResult(
            status='error',
            error_message=msg,
            error_token=token,
            error_kind=kind,
            exit_code=exit_code,
            side_effects=list(getattr(self.sink, 'side_effects', [])),
        )

    def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        if isinstance(self.sink, RecordingSink):
            self.sink.clear()
        self.evaluator.call_stack.clear()
        self.evaluator.labels.clear()
        self.evaluator.current_node = None

        # 1. Parse and transform
        try:
            program = self.evaluator.parse(source_code)
        except CalcSyntaxError as e:
            logger.debug("Syntax error: %s", e)
            return self._error_result(self._format_parse_error(e, source_code), e.loc, e)

        # 2. Evaluate under the session's decimal context
        try:
            with localcontext(self.session.decimal_context()):
                result = self.evaluator.run_program(program)
        except Exception as e:
            logger.debug("Script failed: %r", e)
            msg, token = self._format_runtime_error(e, source_code)
            if not isinstance(e, CalcError):
                logger.exception("Unexpected failure while evaluating")
            return self._error_result(msg, token, e)

        return ExecutionResult(
            status='success',
            value=result,
            side_effects=list(getattr(self.sink, 'side_effects', [])),
        )

    def run_file(self, path: str) -> ExecutionResult:
        """Run a script file; relative includes resolve against its directory."""
        try:
            full = self.files.resolve(path)
            source = self.files.read_raw_text(full)
        except CalcError as e:
            return self._error_result(f"{e.kind}: {e.message}", None, e)
        self.files.base_dir = os.path.dirname(os.path.abspath(full))
        return self.handle_script(source)

    def render(self, value: Any) -> str:
        return Printer.for_settings(self.settings).pformat(value, quote=self.settings.quote_strings)
