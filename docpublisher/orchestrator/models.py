"""Orchestrator data models."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..models import Document, PublishResult


class JobState(Enum):
    """Per-document publish state."""
    PENDING = "pending"
    FOLDER_ENSURING = "folder_ensuring"
    UPLOADING = "uploading"
    METADATA_TAGGING = "metadata_tagging"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCESS, JobState.FAILED)


_TRANSITIONS = {
    JobState.PENDING: {JobState.FOLDER_ENSURING, JobState.FAILED},
    JobState.FOLDER_ENSURING: {JobState.UPLOADING, JobState.SUCCESS, JobState.FAILED},
    JobState.UPLOADING: {JobState.METADATA_TAGGING, JobState.SUCCESS, JobState.FAILED},
    JobState.METADATA_TAGGING: {JobState.SUCCESS, JobState.FAILED},
    JobState.SUCCESS: set(),
    JobState.FAILED: set(),
}


@dataclass
class PublishJob:
    """One document moving through the publish pipeline."""
    index: int
    document: Document
    folder_path: str
    state: JobState = JobState.PENDING
    result: Optional[PublishResult] = None

    def advance(self, state: JobState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid job transition {self.state.value} -> {state.value}")
        self.state = state

    def finish(self, result: PublishResult) -> PublishResult:
        self.advance(JobState.SUCCESS if result.success else JobState.FAILED)
        self.result = result
        return result
