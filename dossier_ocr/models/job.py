"""Job lifecycle primitives.

* ``JobState`` – canonical states; a job only ever moves forward
  (CREATED → UPLOADING → OCR_RUNNING → INDEXING → EXTRACTING → CONSOLIDATING
  → VALIDATING → CLEANING_UP → DONE/FAILED).
* ``CleanupTarget`` – one storage key or prefix the job actually created.
* ``JobContext`` – per-job record populated incrementally as stages finish.
  Every slot is write-once so the cleanup stage can be handed the context from
  any terminal path and trust what it reads.
"""
from __future__ import annotations

import logging
import random
import re
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

LOG = logging.getLogger("pipeline.job")

_SAFE_NAME = re.compile(r"[^a-zA-Z0-9._-]")
_ID_ALPHABET = string.ascii_lowercase + string.digits


class JobState(str, Enum):
    CREATED = "created"
    UPLOADING = "uploading"
    OCR_RUNNING = "ocr-running"
    INDEXING = "indexing"
    EXTRACTING = "extracting"
    CONSOLIDATING = "consolidating"
    VALIDATING = "validating"
    CLEANING_UP = "cleaning-up"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


_ORDER = {state: index for index, state in enumerate(JobState)}
# DONE and FAILED are alternatives, not a sequence.
_ORDER[JobState.FAILED] = _ORDER[JobState.DONE]


class InvalidTransitionError(RuntimeError):
    """Raised when a job would move backwards or out of a terminal state."""


class SlotAlreadySetError(RuntimeError):
    """Raised when a write-once job slot is written a second time."""


def new_job_id() -> str:
    """``<epoch-millis>-<6 base36 chars>``, unique enough to namespace storage keys."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"{int(time.time() * 1000)}-{suffix}"


def safe_file_stem(file_name: str | None) -> str:
    stem = (file_name or "document").strip() or "document"
    if stem.lower().endswith(".pdf"):
        stem = stem[:-4] or "document"
    return _SAFE_NAME.sub("_", stem)


@dataclass(slots=True, frozen=True)
class CleanupTarget:
    kind: Literal["key", "prefix"]
    bucket: str
    path: str

    @property
    def uri(self) -> str:
        return f"gs://{self.bucket}/{self.path}"


@dataclass(slots=True, frozen=True)
class JobRequest:
    """Validated entry-point payload."""

    file_name: str
    source_document_url: str | None = None
    storage_uri: str | None = None
    user_id: str | None = None


@dataclass(slots=True)
class JobContext:
    job_id: str
    file_name: str
    source_ref: str
    state: JobState = JobState.CREATED
    history: list[tuple[JobState, float]] = field(default_factory=list)
    input_uri: str | None = None
    output_uri: str | None = None
    total_pages: int | None = None
    _targets: list[CleanupTarget] = field(default_factory=list)
    released: set[CleanupTarget] = field(default_factory=set)
    cleanup_runs: int = 0

    @classmethod
    def create(cls, request: JobRequest, *, job_id: str | None = None) -> "JobContext":
        source = request.storage_uri or request.source_document_url or ""
        ctx = cls(job_id=job_id or new_job_id(), file_name=request.file_name, source_ref=source)
        ctx.history.append((JobState.CREATED, time.time()))
        return ctx

    # State machine -------------------------------------------------------
    def advance(self, state: JobState) -> None:
        if self.state.terminal:
            raise InvalidTransitionError(f"job {self.job_id} already {self.state.value}")
        if _ORDER[state] <= _ORDER[self.state]:
            raise InvalidTransitionError(
                f"job {self.job_id} cannot move from {self.state.value} to {state.value}"
            )
        LOG.info(
            "job_state_transition",
            extra={"job_id": self.job_id, "state": state.value, "previous": self.state.value},
        )
        self.state = state
        self.history.append((state, time.time()))

    # Write-once slots ----------------------------------------------------
    def set_input_uri(self, uri: str) -> None:
        self._set_once("input_uri", uri)

    def set_output_uri(self, uri: str) -> None:
        self._set_once("output_uri", uri)

    def set_total_pages(self, count: int) -> None:
        self._set_once("total_pages", count)

    def _set_once(self, name: str, value: object) -> None:
        current = getattr(self, name)
        if current is not None and current != value:
            raise SlotAlreadySetError(f"{name} already set for job {self.job_id}")
        setattr(self, name, value)

    # Cleanup bookkeeping -------------------------------------------------
    def register_key(self, bucket: str, key: str) -> CleanupTarget:
        return self._register(CleanupTarget("key", bucket, key))

    def register_prefix(self, bucket: str, prefix: str) -> CleanupTarget:
        return self._register(CleanupTarget("prefix", bucket, prefix.rstrip("/") + "/"))

    def _register(self, target: CleanupTarget) -> CleanupTarget:
        if target not in self._targets:
            self._targets.append(target)
        return target

    @property
    def cleanup_targets(self) -> tuple[CleanupTarget, ...]:
        return tuple(self._targets)

    def pending_targets(self) -> tuple[CleanupTarget, ...]:
        return tuple(target for target in self._targets if target not in self.released)

    def mark_released(self, target: CleanupTarget) -> None:
        self.released.add(target)


__all__ = [
    "CleanupTarget",
    "InvalidTransitionError",
    "JobContext",
    "JobRequest",
    "JobState",
    "SlotAlreadySetError",
    "new_job_id",
    "safe_file_stem",
]
