"""Usage and tool-execution telemetry."""

from imibot.telemetry.recorder import ToolExecutionRecorder, UsageRecorder, estimate_cost

__all__ = ["ToolExecutionRecorder", "UsageRecorder", "estimate_cost"]
