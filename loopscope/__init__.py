from loopscope.loopscope_datatypes import Scope, Closure, UnboundVariable, UNDEFINED, BindingStrategy
from loopscope.loopscope_interpreter import LoopController, LoopState
from loopscope.loopscope_runtime import (
    Scheduler, QueueScheduler, AsyncioScheduler, OutputSink, render_template,
    Scenario, ScenarioError, ScenarioRunner, ExecutionResult,
)
