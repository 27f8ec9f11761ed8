"""
Defines the core data types for the loopscope execution model.

This module provides the binding environment (Scope), the closure value
type, the binding-strategy switch used by loops, and the single runtime
error raised by variable lookups.
"""

import enum
from typing import Any, Callable, Dict, Iterator, Optional, Sequence
import collections.abc


class UnboundVariable(Exception):
    """Raised when no scope in a lookup chain defines a name."""
    def __init__(self, name: str):
        super().__init__(f"{name} is not defined")
        self.name = name

    def __eq__(self, other):
        if not isinstance(other, UnboundVariable):
            return NotImplemented
        return self.name == other.name

    def __hash__(self):
        return hash(("UnboundVariable", self.name))


class _UndefinedType:
    """Internal helper class for the value of a declared but unassigned variable."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "undefined"

    def __bool__(self):
        return False

# Singleton instance; compare with `is`.
UNDEFINED = _UndefinedType()


# =================================================================
# Core Runtime Types
# =================================================================

class Scope:
    """Represents a lexical scope: a binding map chained to one outer scope.

    Lookups and assignments walk the outer chain until the owning scope is
    found. The outer link is fixed at construction; bindings stay mutable.
    A scope lives as long as anything (the running loop or a closure)
    still references it.
    """
    def __init__(self, outer: Optional['Scope'] = None, kind: str = "scope"):
        self._outer = outer
        # Bindings owned by this scope only.
        self.bindings: Dict[str, Any] = {}
        # Lifecycle point that created the scope (global, loop, iteration, block, call).
        self.kind = kind

    @property
    def outer(self) -> Optional['Scope']:
        """Returns the enclosing scope, or None for a root scope."""
        return self._outer

    def create_variable(self, name: str, initial_value: Any = UNDEFINED):
        """Creates `name` in this scope, shadowing any outer binding.

        Redeclaring a name already bound here simply overwrites its value.
        """
        if not isinstance(name, str):
            raise TypeError(f"Variable name must be a str, not {type(name)}")
        self.bindings[name] = initial_value

    def find_owner(self, name: str) -> Optional['Scope']:
        """Finds the Scope in the chain (self -> outer -> ...) that owns name."""
        scope = self
        while scope is not None:
            if name in scope.bindings:
                return scope
            scope = scope._outer
        return None

    def get(self, name: str) -> Any:
        """Returns the value of the nearest binding of name."""
        owner = self.find_owner(name)
        if owner is None:
            raise UnboundVariable(name)
        return owner.bindings[name]

    def set(self, name: str, value: Any):
        """Updates the nearest binding of name in place. Never creates one."""
        owner = self.find_owner(name)
        if owner is None:
            raise UnboundVariable(name)
        owner.bindings[name] = value

    def __contains__(self, name: Any) -> bool:
        """Checks if a name is bound in this Scope or any outer scope."""
        if isinstance(name, str):
            return self.find_owner(name) is not None
        return False

    def keys(self) -> collections.abc.KeysView:
        """Returns a view of names bound directly in this scope."""
        return self.bindings.keys()

    def chain(self) -> Iterator['Scope']:
        """Yields this scope followed by each outer scope, innermost first."""
        scope = self
        while scope is not None:
            yield scope
            scope = scope._outer

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        outer_id = f", outer=#{id(self._outer)}" if self._outer else ""
        return f"<Scope {self.kind} bindings=[{keys}]{outer_id}>"


class Closure:
    """Represents a function value together with the scope it was created in.

    The definition scope is captured once and never changes. Every call
    builds a fresh call-local scope whose outer scope is the definition
    scope, binds the parameters there, and runs the body against it.
    """
    def __init__(self, body: Callable[..., Any], definition_scope: Scope, params: Sequence[str] = ()):
        if not callable(body):
            raise TypeError(f"Closure body must be callable, not {type(body)}")
        if not isinstance(definition_scope, Scope):
            raise TypeError("Closure requires a Scope to capture")
        self.body = body
        self._definition_scope = definition_scope
        self.params = tuple(params)
        self.meta: Dict[str, Any] = {}

    @property
    def definition_scope(self) -> Scope:
        return self._definition_scope

    def __call__(self, *args: Any) -> Any:
        if len(args) > len(self.params):
            raise TypeError(f"Closure takes {len(self.params)} arguments, got {len(args)}")
        local_scope = Scope(self._definition_scope, kind="call")
        # Missing trailing arguments stay undefined, as in the source language.
        for i, param in enumerate(self.params):
            local_scope.create_variable(param, args[i] if i < len(args) else UNDEFINED)
        return self.body(local_scope, *args)

    def __repr__(self) -> str:
        name = getattr(self.body, "__name__", type(self.body).__name__)
        return f"<Closure {name} params={list(self.params)!r} scope={self._definition_scope.kind}>"


class BindingStrategy(enum.Enum):
    """How a counting loop binds its loop variables."""
    SHARED = "shared"
    PER_ITERATION = "per-iteration"

    @classmethod
    def from_keyword(cls, keyword: str) -> 'BindingStrategy':
        """Maps a declaration keyword (var, let, const) to its strategy."""
        match keyword:
            case "var":
                return cls.SHARED
            case "let" | "const":
                return cls.PER_ITERATION
            case _:
                raise ValueError(f"Unknown declaration keyword: {keyword!r}")
