"""Job pipeline components.

Architecture:

    .. code-block:: text

        provisioner.pipeline
        ├── lifecycle.py  ← UnitLifecycle (create / start / remove), build_unit_spec()
        ├── waiter.py     ← CompletionWaiter → WaitResult
        ├── extractor.py  ← ArtifactExtractor → ExtractedArtifact
        ├── publisher.py  ← DurablePublisher, S3ObjectStore, MemoryObjectStore
        ├── census.py     ← FleetCensus
        └── runner.py     ← ProvisionRunner, JobResult
"""

from provisioner.pipeline.census import FleetCensus
from provisioner.pipeline.extractor import ArtifactExtractor, ExtractedArtifact
from provisioner.pipeline.lifecycle import UnitLifecycle, build_unit_spec, managed_label
from provisioner.pipeline.publisher import (
    DurablePublisher,
    MemoryObjectStore,
    ObjectStore,
    PublishResult,
    S3ObjectStore,
)
from provisioner.pipeline.runner import JobResult, JobStatus, ProvisionRunner
from provisioner.pipeline.waiter import CompletionWaiter, WaitOutcome, WaitResult

__all__ = [
    "ArtifactExtractor",
    "CompletionWaiter",
    "DurablePublisher",
    "ExtractedArtifact",
    "FleetCensus",
    "JobResult",
    "JobStatus",
    "MemoryObjectStore",
    "ObjectStore",
    "ProvisionRunner",
    "PublishResult",
    "S3ObjectStore",
    "UnitLifecycle",
    "WaitOutcome",
    "WaitResult",
    "build_unit_spec",
    "managed_label",
]
