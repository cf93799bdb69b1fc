"""Task execution, output classification and the monitoring loop."""

from auto_resume.orchestrator.context_policy import CompletionReason, should_clear_context
from auto_resume.orchestrator.execution import ExecutionOutcome, ExecutionResult, TaskExecutor
from auto_resume.orchestrator.loop import CycleSummary, LoopState, MonitorLoop, MonitorRunSummary
from auto_resume.orchestrator.output_classifier import ErrorClass, OutputKind, classify_output

__all__ = [
    "CompletionReason",
    "CycleSummary",
    "ErrorClass",
    "ExecutionOutcome",
    "ExecutionResult",
    "LoopState",
    "MonitorLoop",
    "MonitorRunSummary",
    "OutputKind",
    "TaskExecutor",
    "classify_output",
    "should_clear_context",
]
