"""Job model.

A ``Job`` is one scrape request: the location URL to scrape, the prefix
for the local artifact file, and the identifier the artifact is published
under. It is immutable, lives only for one pipeline run, and is never
persisted.

The *work name* (``HOTEL_NAME`` inside the unit, and part of the artifact
path) is derived from the location URL unless given explicitly::

    https://www.tripadvisor.com/Hotel_Review-g188107-d231860-Reviews-Beau_Rivage_Palace-Lausanne_Vaud.html
                                                                     └──────┬─────────┘
                                                                        work_name
"""

from __future__ import annotations

import re
import uuid
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, model_validator

from provisioner.core.errors import InvalidJobError

_SAFE_NAME = r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$"
_PAGE_MARKER_RE = re.compile(r"^or\d+$")
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.\-]")


def location_name_from_url(url: str) -> str:
    """Extract the location name from a review-page URL.

    The name is the segment after ``Reviews`` (skipping an ``orNN`` page
    marker) in the last path component.

    Raises:
        InvalidJobError: The URL carries no recognizable location name.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidJobError(f"Not an http(s) URL: {url!r}")

    last = parsed.path.rstrip("/").rsplit("/", 1)[-1]
    stem = last[:-5] if last.endswith(".html") else last
    parts = stem.split("-")
    try:
        idx = parts.index("Reviews") + 1
    except ValueError:
        raise InvalidJobError(f"URL has no Reviews segment: {url!r}") from None

    while idx < len(parts) and _PAGE_MARKER_RE.match(parts[idx]):
        idx += 1
    if idx >= len(parts) or not parts[idx]:
        raise InvalidJobError(f"URL has no location name: {url!r}")

    name = _UNSAFE_CHARS_RE.sub("_", parts[idx]).lstrip("._-")
    if not name:
        raise InvalidJobError(f"URL has no usable location name: {url!r}")
    return name


class Job(BaseModel):
    """One unit of work for the provisioning pipeline."""

    model_config = ConfigDict(frozen=True)

    target_url: str = Field(min_length=1, description="Location URL the scraper fetches")
    file_prefix: str = Field(pattern=_SAFE_NAME, description="Prefix for the local artifact file")
    upload_identifier: str = Field(min_length=1, description="Key the artifact is published under")
    work_name: str = Field(default="", pattern=_SAFE_NAME, description="Location name (derived)")
    job_id: str = Field(default="", description="Unique job identifier (auto-generated)")

    @model_validator(mode="before")
    @classmethod
    def _derive(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("work_name") and data.get("target_url"):
            data["work_name"] = location_name_from_url(data["target_url"])
        if not data.get("job_id"):
            data["job_id"] = uuid.uuid4().hex[:12]
        return data
