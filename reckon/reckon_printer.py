"""
Rendering of calculator values as display text or re-parseable source.
"""
import re
from decimal import Decimal
from fractions import Fraction

from reckon.reckon_datatypes import CalcSet, FunctionDeclaration
from reckon.reckon_numeric import ComplexNumber, ContinuedFraction, Quaternion

_IDENT_RE = re.compile(r'^[^\W\d]\w*$')

_ESCAPES = {
    '\\': '\\\\', '"': '\\"', '\n': '\\n', '\t': '\\t', '\r': '\\r', '\b': '\\b', '\f': '\\f',
}


class Printer:
    """Formats values for display, or as source text when `source` is set."""

    def __init__(self, separators=False, pretty=False, source=False, indent_width=2):
        self.separators = separators
        self.pretty = pretty
        self.source = source
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    @classmethod
    def for_settings(cls, settings, pretty=False):
        return cls(separators=settings.separators, pretty=pretty)

    def pformat(self, obj, quote=True, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, quote, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, dict):
            return self._pformat_dict
        if isinstance(obj, list):
            return self._pformat_list
        if callable(obj):
            return self._pformat_builtin
        return lambda o, q, l: str(o)

    def _create_handlers(self):
        return {
            type(None): self._pformat_none,
            bool: self._pformat_bool,
            int: self._pformat_int,
            Decimal: self._pformat_decimal,
            Fraction: self._pformat_fraction,
            ComplexNumber: self._pformat_complex,
            Quaternion: self._pformat_quaternion,
            ContinuedFraction: self._pformat_continued,
            str: self._pformat_str,
            list: self._pformat_list,
            dict: self._pformat_dict,
            CalcSet: self._pformat_set,
            FunctionDeclaration: self._pformat_function,
        }

    # --- scalars ---

    def _pformat_none(self, obj, quote, level):
        if self.source:
            return 'null'
        return '<null>' if quote else ''

    def _pformat_bool(self, obj, quote, level):
        return 'true' if obj else 'false'

    def _pformat_int(self, obj, quote, level):
        return f"{obj:,}" if self.separators and not self.source else str(obj)

    def _pformat_decimal(self, obj, quote, level):
        return format(obj, ',f') if self.separators and not self.source else format(obj, 'f')

    def _pformat_fraction(self, obj, quote, level):
        if self.source:
            return f"frac({obj.numerator}, {obj.denominator})"
        return f"{self._pformat_int(obj.numerator, quote, level)}/{self._pformat_int(obj.denominator, quote, level)}"

    def _component(self, value):
        if self.source and isinstance(value, Fraction):
            return self._pformat_fraction(value, True, 0)
        return self.pformat(value)

    def _pformat_complex(self, obj, quote, level):
        if self.source:
            return f"complex({self._component(obj.re)}, {self._component(obj.im)})"
        return f"( {self._component(obj.re)}, {self._component(obj.im)} )"

    def _pformat_quaternion(self, obj, quote, level):
        parts = ", ".join(self._component(x) for x in obj.components())
        if self.source:
            return f"quaternion({parts})"
        return f"( {parts} )"

    def _pformat_continued(self, obj, quote, level):
        terms = obj.terms
        if self.source:
            return f"cfrac([{', '.join(str(t) for t in terms)}])"
        if len(terms) == 1:
            return f"[{terms[0]}]"
        return f"[{terms[0]}; {', '.join(str(t) for t in terms[1:])}]"

    def _pformat_str(self, obj, quote, level):
        if not quote and not self.source:
            return obj
        return '"' + ''.join(_ESCAPES.get(ch, ch) for ch in obj) + '"'

    def _pformat_function(self, obj, quote, level):
        return obj.full_name

    def _pformat_builtin(self, obj, quote, level):
        return f"<builtin {getattr(obj, '__name__', '?').lstrip('_')}>"

    # --- collections ---

    def _pformat_key(self, key):
        return key if _IDENT_RE.match(key) else self._pformat_str(key, True, 0)

    def _pformat_items(self, items, level, open_, close):
        if not items:
            return f"{open_}{close}" if self.source else f"{open_} {close}"
        if not self.pretty:
            return f"{open_} {', '.join(items)} {close}"
        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)
        body = ",\n".join(inner_indent + item for item in items)
        return f"{open_}\n{body}\n{outer_indent}{close}"

    def _pformat_list(self, obj, quote, level):
        items = [self.pformat(v, True, level + 1) for v in obj]
        return self._pformat_items(items, level, '[', ']')

    def _pformat_dict(self, obj, quote, level):
        items = [f"{self._pformat_key(str(k))}: {self.pformat(v, True, level + 1)}" for k, v in obj.items()]
        return self._pformat_items(items, level, '{', '}')

    def _pformat_set(self, obj, quote, level):
        items = [self.pformat(v, True, level + 1) for v in obj]
        if self.source:
            return f"set({', '.join(items)})"
        return self._pformat_items(items, level, '{', '}')


def pformat_source(value):
    """Re-parseable source text for `value`, as written to save files."""
    return Printer(source=True).pformat(value)


# ===================================================================
# Format codes
# ===================================================================

_RANGES = ('', 'K', 'M', 'G', 'T', 'P', 'E')


def format_range(value, units='mixed'):
    """Scale a byte count into K/M/G/... units ('binary', 'si' or 'mixed')."""
    base = 1000 if units == 'si' else 1024
    magnitude = Decimal(abs(value))
    index = 0
    while index < len(_RANGES) - 1 and magnitude >= base:
        magnitude /= base
        index += 1
    suffix = _RANGES[index]
    if suffix and units == 'binary':
        suffix += 'i'
    scaled = magnitude.quantize(Decimal('0.01')).normalize()
    text = format(scaled, 'f')
    if value < 0:
        text = '-' + text
    return f"{text} {suffix}B" if suffix else f"{text} bytes"


def format_with_code(value, code, settings):
    """Render `value` for a trailing @code on an expression statement."""
    from reckon.reckon_convert import to_decimal, to_integer
    from reckon.reckon_serialize import to_json, to_yaml

    match code:
        case 'x' | 'X' | 'o' | 'O' | 'b' | 'B':
            n = to_integer(value)
            spec = {'x': 'x', 'X': 'X', 'o': 'o', 'O': 'o', 'b': 'b', 'B': 'b'}[code]
            prefix = {'x': '0x', 'X': '0x', 'o': '0o', 'O': '0o', 'b': '0b', 'B': '0b'}[code]
            return ('-' if n < 0 else '') + prefix + format(abs(n), spec)
        case 'k' | 'K':
            return format_range(to_decimal(value), settings.units)
        case '%':
            pct = (to_decimal(value) * 100).normalize()
            return format(pct, 'f') + '%'
        case 'j' | 'J':
            return to_json(value, pretty=(code == 'J'))
        case 'y' | 'Y':
            return to_yaml(value).rstrip('\n')
        case 'p' | 'P':
            return Printer(separators=settings.separators, pretty=True).pformat(value)
    return Printer.for_settings(settings).pformat(value)
