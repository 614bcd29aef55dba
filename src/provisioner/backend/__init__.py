"""Execution backends.

Architecture:

    .. code-block:: text

        provisioner.backend
        ├── __init__.py    ← Public API (this file)
        ├── _types.py      ← ExecutionBackend protocol, UnitSpec, UnitState,
        │                    ExecutionUnit, WaitHandle, open_backend()
        ├── docker_cli.py  ← DockerCliBackend (docker CLI subprocess)
        └── memory.py      ← InMemoryBackend (tests, no daemon)
"""

from provisioner.backend._types import (
    BackendFactory,
    ExecutionBackend,
    ExecutionUnit,
    UnitSpec,
    UnitState,
    WaitHandle,
    open_backend,
)
from provisioner.backend.docker_cli import DockerCliBackend
from provisioner.backend.memory import FakeUnit, InMemoryBackend

__all__ = [
    "BackendFactory",
    "DockerCliBackend",
    "ExecutionBackend",
    "ExecutionUnit",
    "FakeUnit",
    "InMemoryBackend",
    "UnitSpec",
    "UnitState",
    "WaitHandle",
    "open_backend",
]
