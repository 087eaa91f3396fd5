from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Any, List, Optional

import yaml

from reckon.reckon_constants import VERSION
from reckon.reckon_datatypes import Binding, CalcSet, Constant, FunctionDeclaration, Scope
from reckon.reckon_errors import ConversionError
from reckon.reckon_numeric import ComplexNumber, ContinuedFraction, Quaternion, fixup_real
from reckon.reckon_printer import Printer, pformat_source


# --------------------------
# Helpers
# --------------------------

def _to_builtin(obj: Any) -> Any:
    """Convert calculator values to plain JSON/YAML-compatible structures.

    Decimals are kept as Decimal so the writers below can emit every digit.
    """
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise ConversionError(f"Cannot serialize {obj}")
        return obj
    if isinstance(obj, list):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, CalcSet):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (Fraction, ComplexNumber, Quaternion, ContinuedFraction)):
        return Printer().pformat(obj, quote=False)
    if isinstance(obj, FunctionDeclaration):
        return obj.full_name
    return str(obj)


def _from_builtin(obj: Any) -> Any:
    """Convert parsed JSON/YAML data back to calculator values."""
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, Decimal):
        return fixup_real(obj)
    if isinstance(obj, float):
        return fixup_real(Decimal(repr(obj)))
    if isinstance(obj, list):
        return [_from_builtin(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _from_builtin(v) for k, v in obj.items()}
    return str(obj)


def _json_text(obj: Any, indent: Optional[int], level: int = 0) -> str:
    # Same layout as json.dumps, with Decimals written as their exact text.
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, list):
        items = [_json_text(x, indent, level + 1) for x in obj]
        return _json_container('[', ']', items, indent, level)
    if isinstance(obj, dict):
        items = [f"{json.dumps(k, ensure_ascii=False)}: {_json_text(v, indent, level + 1)}"
                 for k, v in obj.items()]
        return _json_container('{', '}', items, indent, level)
    return json.dumps(obj, ensure_ascii=False)


def _json_container(open_: str, close: str, items: List[str], indent: Optional[int], level: int) -> str:
    if not items:
        return open_ + close
    if indent is None:
        return open_ + ", ".join(items) + close
    inner = "\n" + " " * (indent * (level + 1))
    return open_ + inner + ("," + inner).join(items) + "\n" + " " * (indent * level) + close


class _DecimalDumper(yaml.SafeDumper):
    pass


class _DecimalLoader(yaml.SafeLoader):
    pass


def _represent_decimal(dumper: yaml.SafeDumper, value: Decimal) -> yaml.ScalarNode:
    return dumper.represent_scalar('tag:yaml.org,2002:float', str(value))


def _construct_decimal(loader: yaml.SafeLoader, node: yaml.ScalarNode) -> Any:
    text = loader.construct_scalar(node).replace('_', '')
    try:
        value = Decimal(text)
    except InvalidOperation:
        return loader.construct_yaml_float(node)
    return value if value.is_finite() else loader.construct_yaml_float(node)


_DecimalDumper.add_representer(Decimal, _represent_decimal)
_DecimalLoader.add_constructor('tag:yaml.org,2002:float', _construct_decimal)


# --------------------------
# Public API
# --------------------------

def to_json(value: Any, pretty: bool = False) -> str:
    return _json_text(_to_builtin(value), 2 if pretty else None)


def from_json(text: str) -> Any:
    try:
        return _from_builtin(json.loads(text, parse_float=Decimal))
    except json.JSONDecodeError as e:
        raise ConversionError(f"Invalid JSON: {e.msg} (line {e.lineno}, col {e.colno})")


def to_yaml(value: Any) -> str:
    return yaml.dump(_to_builtin(value), Dumper=_DecimalDumper, sort_keys=False, allow_unicode=True)


def from_yaml(text: str) -> Any:
    try:
        return _from_builtin(yaml.load(text, Loader=_DecimalLoader))
    except yaml.YAMLError as e:
        raise ConversionError(f"Invalid YAML: {e}")


# --------------------------
# Save files
# --------------------------

def render_save_file(scope: Scope) -> str:
    """Render the non-predefined bindings of `scope` as re-loadable source.

    The first line is a `$require` directive naming the writing version;
    loading the file is just evaluating it.
    """
    lines: List[str] = [f'$require "{VERSION}"']
    for name in scope.names():
        binding = scope.bindings[name]
        value = binding.value if isinstance(binding, Binding) else binding
        if isinstance(value, FunctionDeclaration):
            lines.append(f"def {value.full_name} = {value.body_text}")
        elif isinstance(binding, Constant):
            lines.append(f"const {name} = {pformat_source(value)}")
        else:
            lines.append(f"{name} = {pformat_source(value)}")
    return "\n".join(lines) + "\n"


__all__ = [
    "to_json",
    "from_json",
    "to_yaml",
    "from_yaml",
    "render_save_file",
]
