"""Orchestrator package - coordinates publish workflows."""
from .batch import BatchOrchestrator
from .core import DocumentPublisher
from .file_collector import DocumentCollector
from .models import JobState, PublishJob

__all__ = ["BatchOrchestrator", "DocumentPublisher", "DocumentCollector", "JobState", "PublishJob"]
