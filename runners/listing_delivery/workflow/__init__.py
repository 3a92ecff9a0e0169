"""Delivery workflow: the listing state machine and its steps."""

from .context import StepContext, WorkflowTimeouts
from .driver import WorkflowDriver
from .results import ActionsPerformed, WorkflowResult

__all__ = ["ActionsPerformed", "StepContext", "WorkflowDriver", "WorkflowResult", "WorkflowTimeouts"]
