import pytest

from loopscope.loopscope_datatypes import Scope, Closure, UnboundVariable, BindingStrategy
from loopscope.loopscope_interpreter import LoopController, LoopState
from loopscope.loopscope_runtime import QueueScheduler

SHARED = BindingStrategy.SHARED
PER_ITERATION = BindingStrategy.PER_ITERATION


def counting_loop(strategy, n, *, body="defer", scheduler=None, observed=None, **kwargs):
    """Builds `for (<decl> i = 0; i < n; i++) { setTimeout(() => observe(i)) }`."""
    scheduler = scheduler if scheduler is not None else QueueScheduler()
    observed = observed if observed is not None else []
    enclosing = kwargs.pop("enclosing", None) or Scope(kind="global")

    def init(scope):
        scope.set("i", 0)

    def test(scope):
        return scope.get("i") < n

    def afterthought(scope):
        scope.set("i", scope.get("i") + 1)

    def defer_body(scope):
        scheduler.schedule(Closure(lambda local: observed.append(local.get("i")), scope))

    loop = LoopController(
        strategy, ["i"], test, init=init, afterthought=afterthought,
        body=defer_body if body == "defer" else body,
        enclosing=enclosing, **kwargs,
    )
    return loop, scheduler, observed


# --- Per-iteration binding ---

@pytest.mark.parametrize("n", [0, 1, 3, 10])
def test_per_iteration_closures_observe_their_own_iteration(n):
    loop, scheduler, observed = counting_loop(PER_ITERATION, n)
    assert loop.run() == n
    assert observed == []
    assert scheduler.run_pending() == n
    assert observed == list(range(n))


@pytest.mark.parametrize("n", [0, 1, 3, 10])
def test_per_iteration_creates_one_iteration_scope_per_check(n):
    loop, _, _ = counting_loop(PER_ITERATION, n)
    loop.run()
    assert len(loop.scopes_of_kind("loop")) == 1
    assert len(loop.scopes_of_kind("iteration")) == n + 1
    assert len(loop.scopes_of_kind("block")) == n


def test_iteration_scopes_are_siblings_of_the_loop_scope():
    enclosing = Scope(kind="global")
    loop, _, _ = counting_loop(PER_ITERATION, 3, enclosing=enclosing)
    loop.run()
    (loop_scope,) = loop.scopes_of_kind("loop")
    assert loop_scope.outer is enclosing
    for it in loop.scopes_of_kind("iteration"):
        assert it.outer is enclosing
    for block in loop.scopes_of_kind("block"):
        assert block.outer.kind == "iteration"
    assert "i" not in enclosing


def test_afterthought_mutates_the_new_iteration_scope():
    loop, _, _ = counting_loop(PER_ITERATION, 3)
    loop.run()
    (loop_scope,) = loop.scopes_of_kind("loop")
    assert loop_scope.get("i") == 0
    assert [s.get("i") for s in loop.scopes_of_kind("iteration")] == [0, 1, 2, 3]


def test_per_iteration_invocation_order_does_not_matter():
    captured = []
    enclosing = Scope(kind="global")

    def body(scope):
        captured.append(Closure(lambda local: local.get("i"), scope))

    loop, _, _ = counting_loop(PER_ITERATION, 4, body=body, enclosing=enclosing)
    loop.run()
    assert [c() for c in reversed(captured)] == [3, 2, 1, 0]
    assert all(c.definition_scope.kind == "block" for c in captured)


def test_empty_body_still_copies_forward():
    loop, scheduler, _ = counting_loop(PER_ITERATION, 3, body=None)
    assert loop.run() == 3
    assert loop.scopes_of_kind("block") == []
    assert len(loop.scopes_of_kind("iteration")) == 4
    assert scheduler.pending == 0


def test_multiple_loop_variables_copied_in_declaration_order():
    enclosing = Scope(kind="global")
    seen = []

    def init(scope):
        scope.set("i", 0)
        scope.set("n", 3)

    loop = LoopController(
        PER_ITERATION, ["i", "n"],
        lambda s: s.get("i") < s.get("n"),
        init=init,
        afterthought=lambda s: s.set("i", s.get("i") + 1),
        body=lambda s: seen.append((s.get("i"), s.get("n"))),
        enclosing=enclosing,
    )
    assert loop.run() == 3
    assert seen == [(0, 3), (1, 3), (2, 3)]
    for it in loop.scopes_of_kind("iteration"):
        assert list(it.keys()) == ["i", "n"]
        assert it.get("n") == 3


def test_body_runs_with_block_scope_current():
    currents = []
    holder = {}

    def body(scope):
        currents.append(holder["loop"].current_scope is scope)

    loop, _, _ = counting_loop(PER_ITERATION, 2, body=body)
    holder["loop"] = loop
    loop.run()
    assert currents == [True, True]
    assert loop.current_scope is loop.enclosing
    assert loop.state is LoopState.DONE


# --- Shared binding ---

@pytest.mark.parametrize("n", [0, 1, 3, 10])
def test_shared_closures_all_observe_final_value(n):
    enclosing = Scope(kind="global")
    loop, scheduler, observed = counting_loop(SHARED, n, enclosing=enclosing)
    loop.run()
    scheduler.run_pending()
    assert observed == [n] * n
    assert enclosing.get("i") == n


def test_shared_creates_no_loop_or_iteration_scopes():
    enclosing = Scope(kind="global")
    loop, _, _ = counting_loop(SHARED, 3, enclosing=enclosing)
    loop.run()
    assert loop.scopes_of_kind("loop") == []
    assert loop.scopes_of_kind("iteration") == []
    blocks = loop.scopes_of_kind("block")
    assert len(blocks) == 3
    assert all(b.outer is enclosing for b in blocks)


def test_shared_closure_sees_later_mutation():
    captured = []
    loop, _, _ = counting_loop(SHARED, 2, body=lambda s: captured.append(Closure(lambda l: l.get("i"), s)))
    loop.run()
    assert [c() for c in captured] == [2, 2]


def test_zero_iterations_run_no_body_or_afterthought():
    calls = []
    for strategy in (SHARED, PER_ITERATION):
        loop = LoopController(
            strategy, ["i"], lambda s: False,
            init=lambda s: s.set("i", 0),
            afterthought=lambda s: calls.append("after"),
            body=lambda s: calls.append("body"),
            enclosing=Scope(),
        )
        assert loop.run() == 0
    assert calls == []


# --- Failures ---

def test_unbound_variable_in_test_propagates_and_restores_scope():
    enclosing = Scope(kind="global")
    loop = LoopController(
        PER_ITERATION, ["i"], lambda s: s.get("i") < s.get("limit"),
        init=lambda s: s.set("i", 0),
        enclosing=enclosing,
    )
    with pytest.raises(UnboundVariable) as exc:
        loop.run()
    assert exc.value.name == "limit"
    assert loop.state is LoopState.TEST
    assert loop.current_scope is enclosing


def test_failure_in_body_keeps_already_scheduled_closures():
    scheduler = QueueScheduler()
    observed = []

    def body(scope):
        scheduler.schedule(Closure(lambda local: observed.append(local.get("i")), scope))
        if scope.get("i") == 1:
            scope.get("missing")

    loop, _, _ = counting_loop(PER_ITERATION, 5, body=body, scheduler=scheduler)
    with pytest.raises(UnboundVariable):
        loop.run()
    assert loop.current_scope is loop.enclosing
    assert loop.iterations == 2
    scheduler.run_pending()
    assert observed == [0, 1]


def test_unbound_variable_in_init_for_shared_loop():
    loop = LoopController(SHARED, ["i"], lambda s: True, init=lambda s: s.set("j", 0), enclosing=Scope())
    with pytest.raises(UnboundVariable):
        loop.run()
    assert loop.state is LoopState.INIT


def test_iteration_limit():
    loop = LoopController(PER_ITERATION, ["i"], lambda s: True, enclosing=Scope(), max_iterations=5)
    with pytest.raises(RuntimeError, match="iteration limit"):
        loop.run()
    assert loop.iterations == 5


def test_iteration_limit_allows_exact_count():
    loop, _, _ = counting_loop(SHARED, 3, max_iterations=3)
    assert loop.run() == 3


def test_iteration_limit_from_env(monkeypatch):
    monkeypatch.setenv("LOOPSCOPE_MAX_LOOP_ITERS", "2")
    loop, _, _ = counting_loop(PER_ITERATION, 3)
    assert loop.max_iterations == 2
    with pytest.raises(RuntimeError):
        loop.run()


def test_contract_violations():
    with pytest.raises(ValueError):
        LoopController(SHARED, [], lambda s: False, enclosing=Scope())
    with pytest.raises(TypeError):
        LoopController("var", ["i"], lambda s: False, enclosing=Scope())


def test_debug_trace_goes_to_stderr(monkeypatch, capsys):
    monkeypatch.setenv("LOOPSCOPE_DEBUG", "1")
    loop, _, _ = counting_loop(PER_ITERATION, 1)
    loop.run()
    err = capsys.readouterr().err
    assert "[DBG] new scope iteration" in err
    assert "[DBG] state done" in err
