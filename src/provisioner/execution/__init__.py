"""Execution control: per-job deadlines and cancellation."""

from provisioner.execution.deadline import CancelToken, Deadline

__all__ = ["CancelToken", "Deadline"]
