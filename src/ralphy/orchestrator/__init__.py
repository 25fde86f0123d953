"""Task loops: sequential, batched-parallel, and the shared run context."""

from .context import OrchestrationContext, RunSummary, Termination, estimate_cost
from .parallel import AgentRun, AgentStatus, ParallelScheduler, plan_batches
from .progress import ProgressDisplay
from .prompts import build_parallel_prompt, build_prompt
from .retry import AttemptOutcome, InvocationError, RetryController
from .sequential import SequentialOrchestrator
from .session import build_context, open_history, run_session

__all__ = [
    "AgentRun",
    "AgentStatus",
    "AttemptOutcome",
    "InvocationError",
    "OrchestrationContext",
    "ParallelScheduler",
    "ProgressDisplay",
    "RetryController",
    "RunSummary",
    "SequentialOrchestrator",
    "Termination",
    "build_context",
    "build_parallel_prompt",
    "build_prompt",
    "estimate_cost",
    "open_history",
    "plan_batches",
    "run_session",
]
