"""
A pretty-printer for loopscope runtime values.
"""
import collections.abc

from loopscope.loopscope_datatypes import Scope, Closure, UNDEFINED


class Printer:
    """Formats scopes, closures and plain values into readable strings.

    Scopes are labelled with a short stable number (in first-seen order) so
    that a trace of many scopes can show which ones share an outer scope.
    """

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._labels: dict = {}
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def label(self, scope: Scope) -> str:
        """Returns the stable label for a scope, e.g. 'iteration#3'."""
        key = id(scope)
        if key not in self._labels:
            # Keep a reference so the id cannot be reused while labelled.
            self._labels[key] = (len(self._labels), scope)
        return f"{scope.kind}#{self._labels[key][0]}"

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        if obj is UNDEFINED: return self._pformat_undefined

        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Scope): return self._pformat_scope
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Scope: self._pformat_scope,
            Closure: self._pformat_closure,
            dict: self._pformat_dict,
            list: self._pformat_list,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return f"'{obj}'"

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_undefined(self, obj, level):
        return 'undefined'

    def _pformat_list(self, obj, level):
        return "[" + ", ".join(self.pformat(v, level) for v in obj) + "]"

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        items = ", ".join(f"{k}: {self.pformat(v, level)}" for k, v in obj.items())
        return "{ " + items + " }"

    def _pformat_bindings(self, scope, level):
        return self._pformat_dict(scope.bindings, level)

    def _pformat_scope(self, obj, level):
        # Each scope on its own line, outer scopes indented one step further.
        lines = []
        for depth, scope in enumerate(obj.chain()):
            indent = self._indent_char * (level + depth)
            arrow = "" if depth == 0 else "-> "
            lines.append(f"{indent}{arrow}{self.label(scope)} {self._pformat_bindings(scope, level)}")
        return "\n".join(lines)

    def _pformat_closure(self, obj, level):
        name = getattr(obj.body, "__name__", "fn")
        params = ", ".join(obj.params)
        return f"closure {name}({params}) @ {self.label(obj.definition_scope)}"

    def pformat_trace(self, trace) -> str:
        """Formats controller scope-log records, one line per created scope."""
        lines = []
        for rec in trace:
            scope, outer = rec["scope"], rec["outer"]
            # Label the outer scope first so enclosing scopes get the lower numbers.
            outer_label = self.label(outer)
            lines.append(f"{self.label(scope)} <- {outer_label} {self._pformat_bindings(scope, 0)}")
        return "\n".join(lines)
