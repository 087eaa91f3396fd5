import logging
from dataclasses import dataclass, fields, replace
from decimal import Context, ROUND_HALF_EVEN, getcontext
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from reckon.reckon_constants import PiWorker
from reckon.reckon_datatypes import GlobalScope
from reckon.reckon_errors import CalcExprError, CalcIOError, ConversionError

logger = logging.getLogger("reckon.settings")
logger.addHandler(logging.NullHandler())

DEFAULT_PRECISION = 34
DOUBLE_PRECISION = 16
FLOAT_PRECISION = 7
MAX_PRECISION = 10000

UNIT_MODES = ('binary', 'si', 'mixed')


@dataclass
class Settings:
    """Evaluation options; the booleans below `units` each own a mode stack."""
    precision: int = DEFAULT_PRECISION
    degrees: bool = False
    units: str = 'mixed'
    timing: bool = False
    debug: bool = False
    rational: bool = False
    separators: bool = False
    ignore_case: bool = False
    quote_strings: bool = True
    sort_keys: bool = False
    colored: bool = False
    results_only: bool = False
    quiet: bool = False
    silence_directives: bool = False


MODE_NAMES = (
    'timing', 'debug', 'rational', 'separators', 'ignore_case', 'quote_strings',
    'sort_keys', 'colored', 'results_only', 'quiet', 'silence_directives',
)

# Directive spelling -> mode name.
MODE_DIRECTIVES = {
    'timing': 'timing',
    'debug': 'debug',
    'rational': 'rational',
    'separators': 'separators',
    'ignorecase': 'ignore_case',
    'quotestrings': 'quote_strings',
    'sortkeys': 'sort_keys',
    'colors': 'colored',
    'colored': 'colored',
    'resultsonly': 'results_only',
    'quiet': 'quiet',
    'silencedirectives': 'silence_directives',
}


def validate_precision(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConversionError(f"Precision must be an integer, not {value!r}")
    if not 1 < value <= MAX_PRECISION:
        raise ConversionError(f"Precision must be between 2 and {MAX_PRECISION}, not {value}")
    return value


def load_settings(path: Optional[str] = None, base: Optional[Settings] = None) -> Settings:
    """Read a YAML file of settings overrides on top of `base` (or the defaults)."""
    settings = base or Settings()
    if path is None:
        return settings
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding='utf-8'))
    except OSError as e:
        raise CalcIOError(f"Cannot read settings file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConversionError(f"Invalid settings file {path}: {e}")
    if raw is None:
        return settings
    if not isinstance(raw, dict):
        raise ConversionError(f"Settings file {path} must contain a mapping")
    known = {f.name: f for f in fields(Settings)}
    overrides: Dict[str, Any] = {}
    for key, value in raw.items():
        name = str(key).replace('-', '_')
        if name not in known:
            raise ConversionError(f"Unknown setting '{key}' in {path}")
        default = getattr(Settings(), name)
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConversionError(f"Setting '{key}' must be true or false")
        elif name == 'precision':
            validate_precision(value)
        elif name == 'units' and value not in UNIT_MODES:
            raise ConversionError(f"Setting 'units' must be one of {', '.join(UNIT_MODES)}")
        overrides[name] = value
    logger.debug("Loaded settings overrides from %s: %s", path, sorted(overrides))
    return replace(settings, **overrides)


class EvaluatorSession:
    """All mutable state of one interpreter instance.

    Owns the settings, the mode stacks, the global scope, the display
    sink and the constants worker. Nothing here is shared between
    sessions.
    """

    def __init__(self, settings: Optional[Settings] = None, sink=None, args: Optional[List[Any]] = None):
        self.settings = settings or Settings()
        self.sink = sink
        self.global_scope = GlobalScope(args)
        self.stacks: Dict[str, List[bool]] = {name: [] for name in MODE_NAMES}
        self.constants = PiWorker(self.settings.precision, self.settings.rational)
        self._setters = {
            'rational': self._set_rational,
            'debug': self._set_debug,
        }
        if self.settings.debug:
            self._set_debug(True)

    def decimal_context(self) -> Context:
        return Context(prec=self.settings.precision, rounding=ROUND_HALF_EVEN)

    # --- mode stacks ---

    def mode(self, name: str) -> bool:
        return getattr(self.settings, name)

    def set_mode(self, name: str, value: bool):
        setter = self._setters.get(name)
        if setter is not None:
            setter(value)
        else:
            setattr(self.settings, name, value)

    def push_mode(self, name: str, value: bool):
        self.stacks[name].append(getattr(self.settings, name))
        self.set_mode(name, value)

    def pop_mode(self, name: str):
        stack = self.stacks[name]
        if not stack:
            raise CalcExprError(f"No previous value for mode '{name}'")
        self.set_mode(name, stack.pop())

    def _set_rational(self, value: bool):
        self.settings.rational = value
        self.constants.recompute(self.settings.precision, value)

    def _set_debug(self, value: bool):
        self.settings.debug = value
        logging.getLogger("reckon").setLevel(logging.DEBUG if value else logging.NOTSET)

    # --- direct settings ---

    def set_precision(self, digits: int):
        self.settings.precision = validate_precision(digits)
        # The evaluator runs inside a local decimal context; update it too.
        getcontext().prec = digits
        self.constants.recompute(digits, self.settings.rational)

    def set_units(self, units: str):
        if units not in UNIT_MODES:
            raise ConversionError(f"Unknown unit mode '{units}'")
        self.settings.units = units
