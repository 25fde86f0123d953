"""Agent CLI invocation and output decoding."""

from .decoders import (
    COMPLETION_MARKER,
    ExecutionResult,
    detect_error,
    get_decoder,
    parse_result,
)
from .runner import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    FakeAgentRunner,
    ProcessRegistry,
)
from .steps import Step, StepTracker, detect_step

__all__ = [
    "COMPLETION_MARKER",
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "ExecutionResult",
    "FakeAgentRunner",
    "ProcessRegistry",
    "Step",
    "StepTracker",
    "detect_error",
    "detect_step",
    "get_decoder",
    "parse_result",
]
