"""
The loopscope interpreter core: the LoopController state machine.

A LoopController drives one counting loop (init, test, body, afterthought)
under one of two binding strategies and records every scope it creates.
"""
import enum
import os
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence

from loopscope.loopscope_datatypes import Scope, BindingStrategy

DEFAULT_MAX_LOOP_ITERS = 100000


class LoopState(enum.Enum):
    INIT = "init"
    TEST = "test"
    BODY = "body"
    AFTERTHOUGHT = "afterthought"
    DONE = "done"


def _max_iters_from_env() -> int:
    raw = os.environ.get("LOOPSCOPE_MAX_LOOP_ITERS")
    if raw is None:
        return DEFAULT_MAX_LOOP_ITERS
    try:
        return int(raw)
    except ValueError:
        return DEFAULT_MAX_LOOP_ITERS


class LoopController:
    """Runs a single counting loop and owns its current-scope pointer.

    Every phase callable receives the scope that governs it as its only
    argument: `init(scope)`, `test(scope) -> bool`, `body(scope)` and
    `afterthought(scope)`. A body of None stands for an empty loop body.
    """
    def __init__(self,
                 strategy: BindingStrategy,
                 variables: Sequence[str],
                 test: Callable[[Scope], Any],
                 init: Optional[Callable[[Scope], Any]] = None,
                 afterthought: Optional[Callable[[Scope], Any]] = None,
                 body: Optional[Callable[[Scope], Any]] = None,
                 *,
                 enclosing: Scope,
                 max_iterations: Optional[int] = None):
        if not isinstance(strategy, BindingStrategy):
            raise TypeError(f"strategy must be a BindingStrategy, not {type(strategy)}")
        if not variables:
            raise ValueError("A loop must declare at least one loop variable.")
        self.strategy = strategy
        self.variables: List[str] = list(variables)
        self.test = test
        self.init = init
        self.afterthought = afterthought
        self.body = body
        self.enclosing = enclosing
        self.max_iterations = max_iterations if max_iterations is not None else _max_iters_from_env()

        self.state = LoopState.INIT
        self.current_scope: Scope = enclosing
        self.iterations = 0
        # One record per scope created by this controller, in creation order.
        self.scope_log: List[Dict[str, Any]] = []

    def _dbg(self, *parts):
        if os.environ.get("LOOPSCOPE_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def _enter(self, state: LoopState):
        self.state = state
        self._dbg("state", state.value, "iteration", self.iterations)

    def _new_scope(self, outer: Scope, kind: str) -> Scope:
        scope = Scope(outer, kind=kind)
        self.scope_log.append({"kind": kind, "scope": scope, "outer": outer})
        self._dbg("new scope", kind, f"#{id(scope)}", "outer", outer.kind, f"#{id(outer)}")
        return scope

    def scopes_of_kind(self, kind: str) -> List[Scope]:
        return [rec["scope"] for rec in self.scope_log if rec["kind"] == kind]

    def run(self) -> int:
        """Runs the loop to completion and returns the number of iterations."""
        self.iterations = 0
        self.current_scope = self.enclosing
        try:
            match self.strategy:
                case BindingStrategy.SHARED:
                    self._run_shared()
                case BindingStrategy.PER_ITERATION:
                    self._run_per_iteration()
        finally:
            # Leave the enclosing scope active on every exit path.
            self.current_scope = self.enclosing
        self._enter(LoopState.DONE)
        return self.iterations

    # --- Shared binding (var) ---

    def _run_shared(self):
        self._enter(LoopState.INIT)
        # The declaration lands in the scope active at loop entry.
        for name in self.variables:
            self.enclosing.create_variable(name)
        if self.init is not None:
            self.init(self.current_scope)

        while True:
            self._enter(LoopState.TEST)
            if not self.test(self.current_scope):
                break
            self._run_body()
            self._enter(LoopState.AFTERTHOUGHT)
            if self.afterthought is not None:
                self.afterthought(self.current_scope)

    # --- Per-iteration binding (let/const) ---

    def _run_per_iteration(self):
        loop_scope = self._new_scope(self.enclosing, "loop")
        for name in self.variables:
            loop_scope.create_variable(name)

        self._enter(LoopState.INIT)
        self.current_scope = loop_scope
        if self.init is not None:
            self.init(loop_scope)

        # From here on the loop scope is only read once, by the first copy.
        self.current_scope = self._copy_iteration_scope(loop_scope)

        while True:
            self._enter(LoopState.TEST)
            if not self.test(self.current_scope):
                break
            self._run_body()
            self.current_scope = self._copy_iteration_scope(self.current_scope)
            self._enter(LoopState.AFTERTHOUGHT)
            if self.afterthought is not None:
                self.afterthought(self.current_scope)

    def _copy_iteration_scope(self, source: Scope) -> Scope:
        """Creates the next iteration scope as a sibling of the loop scope.

        The new scope is parented to the enclosing scope, never to `source`,
        and receives every loop variable's current value in declaration order.
        """
        iteration_scope = self._new_scope(source.outer, "iteration")
        for name in self.variables:
            iteration_scope.create_variable(name, source.get(name))
        return iteration_scope

    # --- Shared helpers ---

    def _run_body(self):
        self._enter(LoopState.BODY)
        if self.iterations >= self.max_iterations:
            raise RuntimeError("for: iteration limit exceeded")
        self.iterations += 1
        if self.body is None:
            return
        block_outer = self.current_scope
        block_scope = self._new_scope(block_outer, "block")
        self.current_scope = block_scope
        try:
            self.body(block_scope)
        finally:
            self.current_scope = block_outer
