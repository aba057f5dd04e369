"""Workspace-backed persistence for threads, memories, tool sessions and telemetry."""
