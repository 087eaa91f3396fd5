from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from reckon.reckon_errors import CalcExprError, InternalError

# ===================================================================
# Parse tree
# ===================================================================


@dataclass(eq=False)
class Node:
    """One node of the parse tree handed to the evaluator.

    `kind` names the grammar production, `text` carries literal text
    (identifier, operator, literal spelling) and `value` any extra
    payload the transformer attached (a parsed number, a flag, ...).
    """
    kind: str
    children: List[Any] = field(default_factory=list)
    text: Optional[str] = None
    value: Any = None
    loc: Optional[Dict[str, Any]] = None

    @property
    def source(self) -> str:
        return (self.loc or {}).get('text') or (self.text or '')

    def __repr__(self) -> str:
        inner = f" {self.text!r}" if self.text is not None else ""
        kids = f" {self.children!r}" if self.children else ""
        return f"<{self.kind}{inner}{kids}>"


# ===================================================================
# Binding wrappers
# ===================================================================


class Binding:
    """Metadata wrapper stored in a scope in place of a bare value."""
    assignable = True
    listed = True
    clearable = True
    label = "variable"

    def __init__(self, value: Any = None):
        self._value = value

    @property
    def value(self) -> Any:
        return self._value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"


class Constant(Binding):
    assignable = False
    label = "constant"


class EnumMember(Constant):
    label = "enum member"


class Parameter(Binding):
    label = "parameter"


class Predefined(Binding):
    assignable = False
    listed = False
    clearable = False
    label = "predefined value"


class SystemBacked(Predefined):
    """A predefined name whose value is produced on every read."""
    label = "system value"

    def __init__(self, getter: Callable[[], Any]):
        super().__init__(None)
        self.getter = getter

    @property
    def value(self) -> Any:
        return self.getter()


def unwrap(binding: Any) -> Any:
    return binding.value if isinstance(binding, Binding) else binding


# ===================================================================
# Collections
# ===================================================================


def value_key(value: Any) -> Any:
    """Hashable key under which two values are equal iff they are the same value.

    bool is tagged apart from the numbers (True == 1 in Python); the numeric
    kinds share one tag because int, Decimal and Fraction hash consistently.
    """
    if value is None:
        return ('null',)
    if isinstance(value, bool):
        return ('bool', value)
    if isinstance(value, str):
        return ('str', value)
    if isinstance(value, list):
        return ('array', tuple(value_key(v) for v in value))
    if isinstance(value, dict):
        return ('object', frozenset((k, value_key(v)) for k, v in value.items()))
    if isinstance(value, CalcSet):
        return ('set', frozenset(value._items))
    return ('num', value)


class CalcSet:
    """An insertion-ordered set de-duplicated by value equality."""

    def __init__(self, values: Iterable[Any] = ()):
        self._items: Dict[Any, Any] = {}
        for v in values:
            self.add(v)

    def add(self, value: Any):
        self._items.setdefault(value_key(value), value)

    def discard(self, value: Any):
        self._items.pop(value_key(value), None)

    def copy(self) -> 'CalcSet':
        new = CalcSet()
        new._items = dict(self._items)
        return new

    def union(self, other: 'CalcSet') -> 'CalcSet':
        new = self.copy()
        for v in other:
            new.add(v)
        return new

    def intersection(self, other: 'CalcSet') -> 'CalcSet':
        return CalcSet(v for k, v in self._items.items() if k in other._items)

    def difference(self, other: 'CalcSet') -> 'CalcSet':
        return CalcSet(v for k, v in self._items.items() if k not in other._items)

    def symmetric_difference(self, other: 'CalcSet') -> 'CalcSet':
        return self.difference(other).union(other.difference(self))

    def __contains__(self, value: Any) -> bool:
        return value_key(value) in self._items

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other):
        if isinstance(other, CalcSet):
            return set(self._items) == set(other._items)
        return NotImplemented

    def __hash__(self):
        return hash(frozenset(self._items))

    def __repr__(self) -> str:
        return f"CalcSet({list(self._items.values())!r})"


# ===================================================================
# Functions
# ===================================================================


@dataclass
class FunctionParameter:
    name: str
    default: Optional[Node] = None
    rest: bool = False

    def __str__(self) -> str:
        if self.rest:
            return f"{self.name}..."
        if self.default is not None:
            return f"{self.name} = {self.default.source}"
        return self.name


class FunctionDeclaration:
    """A user-defined function bound by `def`."""

    def __init__(self, name: str, params: List[FunctionParameter], body: Node,
                 body_text: str = "", closure: Optional['Scope'] = None, params_given: bool = True):
        self.name = name
        self.params = params
        self.body = body
        self.body_text = body_text
        self.closure = closure
        # `def f = ...` (no parens) still renders without the parameter list.
        self.params_given = params_given

    @property
    def full_name(self) -> str:
        if not self.params_given and not self.params:
            return self.name
        return f"{self.name}({', '.join(str(p) for p in self.params)})"

    def __repr__(self) -> str:
        return f"<function {self.full_name}>"


# ===================================================================
# Control signals
# ===================================================================


class Signal:
    """A non-local exit returned (not raised) up the statement frames."""


@dataclass
class Leave(Signal):
    label: Optional[str] = None
    value: Any = None
    has_value: bool = False


class Next(Signal):
    def __repr__(self) -> str:
        return "Next"


NEXT = Next()


class SignalEscape(Exception):
    """Carries a signal out of a function call made inside an expression.

    The nearest statement frame catches it and turns it back into a
    returned signal.
    """

    def __init__(self, signal: Signal):
        super().__init__(repr(signal))
        self.signal = signal


def is_signal(value: Any) -> bool:
    return isinstance(value, Signal)


def escaped_signal_error(signal: Signal) -> InternalError:
    if isinstance(signal, Leave):
        where = f" '{signal.label}'" if signal.label else ""
        return InternalError(f"leave{where} used outside of any matching loop or function")
    return InternalError("next used outside of any loop or case block")


# ===================================================================
# Scopes
# ===================================================================


class Scope:
    """One frame of the lexical scope chain.

    Lookups walk `enclosing` outward. Every operation takes an
    `ignore_case` flag that mirrors the session's ignore-case mode.
    """
    kind = "nested"

    def __init__(self, enclosing: Optional['Scope'] = None, kind: Optional[str] = None,
                 label: Optional[str] = None):
        self.bindings: Dict[str, Any] = {}
        self.enclosing = enclosing
        if kind:
            self.kind = kind
        self.label = label

    # --- key resolution ---

    def _local_key(self, name: str, ignore_case: bool = False) -> Optional[str]:
        if name in self.bindings:
            return name
        if ignore_case:
            folded = name.casefold()
            for key in self.bindings:
                if key.casefold() == folded:
                    return key
        return None

    def find_owner(self, name: str, ignore_case: bool = False) -> Optional['Scope']:
        scope = self
        while scope is not None:
            if scope._local_key(name, ignore_case) is not None:
                return scope
            scope = scope.enclosing
        return None

    def get_binding(self, name: str, ignore_case: bool = False, default: Any = None) -> Any:
        owner = self.find_owner(name, ignore_case)
        if owner is None:
            return default
        return owner.bindings[owner._local_key(name, ignore_case)]

    def get_value(self, name: str, ignore_case: bool = False, default: Any = None) -> Any:
        owner = self.find_owner(name, ignore_case)
        if owner is None:
            return default
        return unwrap(owner.bindings[owner._local_key(name, ignore_case)])

    def is_defined(self, name: str, ignore_case: bool = False) -> bool:
        return self.find_owner(name, ignore_case) is not None

    def is_defined_locally(self, name: str, ignore_case: bool = False) -> bool:
        return self._local_key(name, ignore_case) is not None

    # --- mutation ---

    def _store(self, key: str, value: Any):
        current = self.bindings.get(key)
        if isinstance(current, Binding) and not current.assignable:
            raise CalcExprError(f"Cannot assign to {current.label} '{key}'")
        if isinstance(current, Parameter):
            value = Parameter(value)
        self.bindings[key] = value

    def set_value(self, name: str, value: Any, ignore_case: bool = False):
        """Assign to the nearest existing binding, else create one here."""
        owner = self.find_owner(name, ignore_case)
        if owner is None:
            self.bindings[name] = value
            return
        owner._store(owner._local_key(name, ignore_case), value)

    def set_value_locally(self, name: str, value: Any, ignore_case: bool = False):
        key = self._local_key(name, ignore_case) or name
        self._store(key, value)

    def define(self, name: str, value: Any, ignore_case: bool = False, replace_functions: bool = False):
        """Bind a new name in this scope (def/const/var/enum)."""
        key = self._local_key(name, ignore_case)
        if key is not None:
            current = self.bindings[key]
            if isinstance(current, Binding) and not current.assignable:
                raise CalcExprError(f"Cannot redefine {current.label} '{key}'")
            if not (replace_functions and isinstance(current, FunctionDeclaration)):
                raise CalcExprError(f"'{key}' is already defined")
            del self.bindings[key]
        self.bindings[name] = value

    def define_predefined(self, name: str, value: Any):
        self.bindings[name] = value if isinstance(value, Predefined) else Predefined(value)

    def remove(self, name: str, ignore_case: bool = False) -> bool:
        key = self._local_key(name, ignore_case)
        if key is None:
            return False
        current = self.bindings[key]
        if isinstance(current, Binding) and not current.clearable:
            raise CalcExprError(f"Cannot clear {current.label} '{key}'")
        del self.bindings[key]
        return True

    def clear(self):
        for key in [k for k, b in self.bindings.items() if not (isinstance(b, Binding) and not b.clearable)]:
            del self.bindings[key]

    def names(self) -> List[str]:
        return [k for k, b in self.bindings.items() if not (isinstance(b, Binding) and not b.listed)]

    def nearest(self, kind: str) -> Optional['Scope']:
        scope = self
        while scope is not None:
            if scope.kind == kind:
                return scope
            scope = scope.enclosing
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.kind} {list(self.bindings)!r}>"


class GlobalScope(Scope):
    kind = "global"

    def __init__(self, args: Optional[List[Any]] = None):
        super().__init__(None)
        self.args: List[Any] = list(args or [])


class FunctionScope(Scope):
    kind = "function"

    def __init__(self, declaration: FunctionDeclaration, args: List[Any], enclosing: Optional[Scope] = None):
        super().__init__(enclosing, label=declaration.name)
        self.declaration = declaration
        self.args = list(args)


class NestedScope(Scope):
    """Scope for a loop, while, if or case block; `kind` says which."""
