"""Orchestrator package - coordinates explorer workflows."""
from .core import ExplorerSession
from .jobs import ArchiveCreateFamily, ArchiveExtractFamily, JobFamily, JobOrchestrator, ZipExtractFamily
from .move_delete import MoveDeleteCoordinator
from .upload_pipeline import UploadPipeline

__all__ = [
    "ExplorerSession",
    "JobFamily",
    "JobOrchestrator",
    "ZipExtractFamily",
    "ArchiveExtractFamily",
    "ArchiveCreateFamily",
    "MoveDeleteCoordinator",
    "UploadPipeline",
]
