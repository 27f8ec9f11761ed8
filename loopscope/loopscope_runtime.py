# loopscope_runtime.py

import asyncio
import os
import sys
import collections
import collections.abc
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

import pystache

from loopscope.loopscope_datatypes import Scope, Closure, UnboundVariable, BindingStrategy
from loopscope.loopscope_interpreter import LoopController

# ===================================================================
# 1. Schedulers
# ===================================================================


class Scheduler(ABC):
    """Deferred-callback queue consumed by loop bodies.

    Callbacks run strictly after the synchronous code that registered them,
    in registration order.
    """

    @abstractmethod
    def schedule(self, callback: Callable[[], Any]) -> None: raise NotImplementedError

    @property
    @abstractmethod
    def pending(self) -> int: raise NotImplementedError


class QueueScheduler(Scheduler):
    """A plain FIFO queue that the host drains explicitly with run_pending()."""
    def __init__(self):
        self._queue: collections.deque = collections.deque()

    def schedule(self, callback: Callable[[], Any]) -> None:
        if not callable(callback):
            raise TypeError(f"schedule requires a callable, not {type(callback)}")
        self._queue.append(callback)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def run_pending(self) -> int:
        """Runs queued callbacks, including ones queued meanwhile; returns the count run."""
        count = 0
        while self._queue:
            callback = self._queue.popleft()
            callback()
            count += 1
        return count

    def run_each(self) -> List[BaseException]:
        """Runs every queued callback even when some fail; returns their exceptions.

        The queue is empty afterwards.
        """
        errors: List[BaseException] = []
        while self._queue:
            callback = self._queue.popleft()
            try:
                callback()
            except Exception as e:
                errors.append(e)
        return errors


class AsyncioScheduler(Scheduler):
    """Defers callbacks onto the running asyncio event loop (call_soon is FIFO)."""
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._pending = 0
        # Created by drain() so it belongs to the loop that waits on it.
        self._idle: Optional[asyncio.Event] = None
        # Exceptions raised by callbacks, in the order they happened.
        self.errors: List[BaseException] = []

    @property
    def pending(self) -> int:
        return self._pending

    def schedule(self, callback: Callable[[], Any]) -> None:
        if not callable(callback):
            raise TypeError(f"schedule requires a callable, not {type(callback)}")
        loop = self._loop or asyncio.get_running_loop()
        self._pending += 1
        loop.call_soon(self._run, callback)

    def _run(self, callback: Callable[[], Any]):
        try:
            callback()
        except Exception as e:
            self.errors.append(e)
        finally:
            self._pending -= 1
            if self._pending == 0 and self._idle is not None:
                self._idle.set()

    async def drain(self):
        """Waits until every scheduled callback (and any it schedules) has run."""
        while self._pending:
            self._idle = asyncio.Event()
            await self._idle.wait()
        self._idle = None


# ===================================================================
# 2. Output Sink & Templates
# ===================================================================


class OutputSink:
    """Collects side-effect events for the host application."""
    def __init__(self):
        self.effects: List[Dict[str, Any]] = []

    def emit(self, topic_or_topics, *message_parts):
        topics = topic_or_topics if isinstance(topic_or_topics, list) else [topic_or_topics]
        message = " ".join(map(str, message_parts))
        self.effects.append({"topics": topics, "message": message})
        return None

    def messages(self, topic: str = "stdout") -> List[str]:
        return [e["message"] for e in self.effects if topic in e["topics"]]


class _ScopeContext(dict):
    """Template context resolving every tag through Scope.get."""
    def __init__(self, scope: Scope):
        super().__init__()
        self._scope = scope

    def __contains__(self, key):
        return True

    def __getitem__(self, key):
        value = self._scope.get(key)
        # Match how the printer and console output show a null value.
        return "null" if value is None else value


def render_template(template: str, scope: Scope) -> str:
    """Renders a mustache template against a scope chain.

    Unknown names raise UnboundVariable instead of rendering as empty text.
    """
    renderer = pystache.Renderer(escape=lambda u: u)
    return renderer.render(template, _ScopeContext(scope))


# ===================================================================
# 3. Scenarios
# ===================================================================


class ScenarioError(ValueError):
    """Raised for malformed scenario documents."""
    pass


_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}

_BODY_STEPS = ("emit", "defer", "call", "declare")


@dataclass
class Scenario:
    """A validated loop configuration: declaration, variables, test, afterthought, body."""
    declaration: str
    variables: Dict[str, Any]
    test: Dict[str, Any]
    afterthought: List[Dict[str, Any]] = field(default_factory=list)
    body: List[Dict[str, Any]] = field(default_factory=list)
    globals: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @property
    def strategy(self) -> BindingStrategy:
        return BindingStrategy.from_keyword(self.declaration)

    @classmethod
    def from_mapping(cls, data: Any) -> 'Scenario':
        if not isinstance(data, collections.abc.Mapping):
            raise ScenarioError("scenario must be a mapping")
        unknown = set(data) - {"name", "declaration", "globals", "variables", "test", "afterthought", "body"}
        if unknown:
            raise ScenarioError(f"unknown scenario keys: {', '.join(sorted(map(str, unknown)))}")

        declaration = data.get("declaration", "let")
        try:
            BindingStrategy.from_keyword(declaration)
        except ValueError as e:
            raise ScenarioError(str(e)) from e

        variables = data.get("variables")
        if not isinstance(variables, collections.abc.Mapping) or not variables:
            raise ScenarioError("variables must be a non-empty mapping of name to initial value")

        globals_ = data.get("globals") or {}
        if not isinstance(globals_, collections.abc.Mapping):
            raise ScenarioError("globals must be a mapping")

        test = data.get("test")
        if not isinstance(test, collections.abc.Mapping) or not {"left", "op", "right"} <= set(test):
            raise ScenarioError("test must be a mapping with left, op and right")
        if test["op"] not in _COMPARISONS:
            raise ScenarioError(f"unsupported test operator: {test['op']!r}")

        after = data.get("afterthought") or []
        if isinstance(after, collections.abc.Mapping):
            after = [after]
        for step in after:
            if not isinstance(step, collections.abc.Mapping) or "name" not in step:
                raise ScenarioError("afterthought entries need a name")
            if not isinstance(step.get("step", 1), (int, float)):
                raise ScenarioError("afterthought step must be a number")

        body = data.get("body") or []
        if not isinstance(body, list):
            raise ScenarioError("body must be a list of steps")
        for step in body:
            if not isinstance(step, collections.abc.Mapping) or len(step) != 1:
                raise ScenarioError("each body step must be a single-key mapping")
            (kind, arg), = step.items()
            if kind not in _BODY_STEPS:
                raise ScenarioError(f"unknown body step: {kind!r}")
            if kind == "declare" and not isinstance(arg, collections.abc.Mapping):
                raise ScenarioError("declare expects a mapping of name to value")
            if kind != "declare" and not isinstance(arg, str):
                raise ScenarioError(f"{kind} expects a template string")

        return cls(
            declaration=declaration,
            variables=dict(variables),
            test=dict(test),
            afterthought=[dict(a) for a in after],
            body=[dict(s) for s in body],
            globals=dict(globals_),
            name=data.get("name"),
        )


# ===================================================================
# 4. Scenario Execution
# ===================================================================


@dataclass
class ExecutionResult:
    """The structured result of a scenario run."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)
    iterations: int = 0
    scope_counts: Dict[str, int] = field(default_factory=dict)
    trace: List[Dict[str, Any]] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        """A plain-data view for serialization."""
        return {
            "status": self.status,
            "iterations": self.iterations,
            "outputs": [e["message"] for e in self.side_effects if "stdout" in e["topics"]],
            "globals": self.value,
            "scopes": dict(self.scope_counts),
            "error": self.error_message,
        }


class ScenarioRunner:
    """Builds a LoopController from a scenario, runs it, and drains deferred closures."""

    def __init__(self, scheduler: Optional[Scheduler] = None):
        self.scheduler = scheduler
        self._default_scheduler = scheduler is None
        self.sink = OutputSink()
        self.controller: Optional[LoopController] = None
        self.call_scopes = 0

    def _dbg(self, *parts):
        if os.environ.get("LOOPSCOPE_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    # --- Phase callables ---

    def _make_init(self, scenario: Scenario):
        def init(scope: Scope):
            for name, value in scenario.variables.items():
                scope.set(name, value)
        return init

    def _make_test(self, scenario: Scenario):
        left, op, right = scenario.test["left"], scenario.test["op"], scenario.test["right"]
        compare = _COMPARISONS[op]

        def test(scope: Scope) -> bool:
            rhs = scope.get(right) if isinstance(right, str) else right
            return bool(compare(scope.get(left), rhs))
        return test

    def _make_afterthought(self, scenario: Scenario):
        if not scenario.afterthought:
            return None
        steps = [(a["name"], a.get("step", 1)) for a in scenario.afterthought]

        def afterthought(scope: Scope):
            for name, step in steps:
                scope.set(name, scope.get(name) + step)
        return afterthought

    def _make_closure(self, template: str, scope: Scope) -> Closure:
        sink = self.sink

        def log_template(local_scope: Scope):
            self.call_scopes += 1
            sink.emit("stdout", render_template(template, local_scope))
        return Closure(log_template, scope)

    def _make_body(self, scenario: Scenario):
        if not scenario.body:
            return None
        steps = [next(iter(s.items())) for s in scenario.body]

        def body(scope: Scope):
            for kind, arg in steps:
                match kind:
                    case "emit":
                        self.sink.emit("stdout", render_template(arg, scope))
                    case "declare":
                        for name, value in arg.items():
                            scope.create_variable(name, value)
                    case "call":
                        self._make_closure(arg, scope)()
                    case "defer":
                        closure = self._make_closure(arg, scope)
                        self._dbg("schedule", repr(closure))
                        self.scheduler.schedule(closure)
        return body

    def build_controller(self, scenario: Scenario, global_scope: Scope) -> LoopController:
        for name, value in scenario.globals.items():
            global_scope.create_variable(name, value)
        return LoopController(
            scenario.strategy,
            list(scenario.variables),
            self._make_test(scenario),
            init=self._make_init(scenario),
            afterthought=self._make_afterthought(scenario),
            body=self._make_body(scenario),
            enclosing=global_scope,
        )

    # --- Error formatting ---

    def _format_runtime_error(self, e: Exception) -> str:
        match e:
            case UnboundVariable() as uv:
                return f"UnboundVariable: {uv.name} is not defined"
            case ScenarioError():
                return f"ScenarioError: {e}"
            case _:
                return f"InternalError: {e}"

    def _error_result(self, e: Exception, global_scope: Optional[Scope] = None) -> ExecutionResult:
        msg = self._format_runtime_error(e)
        self.sink.emit("stderr", msg)
        result = ExecutionResult(status='error', error_message=msg, side_effects=self.sink.effects)
        self._fill_stats(result, global_scope)
        return result

    def _fill_stats(self, result: ExecutionResult, global_scope: Optional[Scope]):
        if global_scope is not None:
            result.value = dict(global_scope.bindings)
        if self.controller is None:
            return
        counts: Dict[str, int] = {}
        for rec in self.controller.scope_log:
            counts[rec["kind"]] = counts.get(rec["kind"], 0) + 1
        if self.call_scopes:
            counts["call"] = self.call_scopes
        result.iterations = self.controller.iterations
        result.scope_counts = counts
        result.trace = list(self.controller.scope_log)

    async def handle_scenario(self, scenario: Any) -> ExecutionResult:
        """The main entry point to run a scenario (a Scenario or a plain mapping)."""
        self.sink = OutputSink()
        self.controller = None
        self.call_scopes = 0
        # A default scheduler is built per run so it never outlives its event loop.
        if self._default_scheduler:
            self.scheduler = AsyncioScheduler()

        try:
            if not isinstance(scenario, Scenario):
                scenario = Scenario.from_mapping(scenario)
        except ScenarioError as e:
            return self._error_result(e)

        global_scope = Scope(kind="global")
        failure: Optional[Exception] = None
        try:
            self.controller = self.build_controller(scenario, global_scope)
            self.controller.run()
        except Exception as e:
            failure = e

        # Closures scheduled before a failure still run on their own.
        try:
            deferred_errors = await self._drain()
        except Exception as e:
            deferred_errors = [e]
        if failure is None and deferred_errors:
            failure = deferred_errors[0]
        if failure is not None:
            return self._error_result(failure, global_scope)

        result = ExecutionResult(status='success', side_effects=self.sink.effects)
        self._fill_stats(result, global_scope)
        return result

    async def _drain(self) -> List[BaseException]:
        """Runs every deferred closure; returns exceptions they raised."""
        match self.scheduler:
            case AsyncioScheduler() as s:
                start = len(s.errors)
                await s.drain()
                return s.errors[start:]
            case QueueScheduler() as s:
                return s.run_each()
        return []
