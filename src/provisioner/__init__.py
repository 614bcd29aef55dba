"""scrape-provisioner: run a scraper in a throwaway container, publish its output.

One job = one container: create it with the job's parameters as
environment, wait for it to exit, copy the artifact out of its
filesystem, upload it to object storage, remove the container.

Example:
    >>> from provisioner import Job, ProvisionRunner
    >>> runner = ProvisionRunner.from_settings()
    >>> await runner.run(Job(target_url=url, file_prefix="lausanne",
    ...                      upload_identifier="reviews/lausanne.csv"))
"""

from provisioner.core.errors import ProvisionerError
from provisioner.core.settings import ProvisionerSettings, StorageSettings
from provisioner.jobs import Job
from provisioner.pipeline.runner import JobResult, JobStatus, ProvisionRunner

__version__ = "0.4.0"

__all__ = [
    "Job",
    "JobResult",
    "JobStatus",
    "ProvisionRunner",
    "ProvisionerError",
    "ProvisionerSettings",
    "StorageSettings",
    "__version__",
]
