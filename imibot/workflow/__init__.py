"""Multi-step generation workflow."""

from imibot.workflow.orchestration import GenerationWorkflow
from imibot.workflow.steps import Plan, StepBudget, StepContext, Summary, ToolResults, detect_dependencies

__all__ = [
    "GenerationWorkflow",
    "Plan",
    "StepBudget",
    "StepContext",
    "Summary",
    "ToolResults",
    "detect_dependencies",
]
