"""
cloudstash - asynchronous client core for a remote object store with
passphrase-encrypted folders and server-side archive jobs.

Usage:
    from cloudstash import ExplorerSession, UploadSource

    async with ExplorerSession(api_url, token, passphrase_provider=ask) as explorer:
        outcome = await explorer.run(lambda: explorer.list_folder("Docs"))

        # Upload into the current folder
        await explorer.run(lambda: explorer.upload([UploadSource.from_path(path)], "Docs"))
        await explorer.uploads.wait()

        # Extract an archive and wait for it
        await explorer.extract_archive("Docs/photos.zip")
        job = await explorer.wait_for_job(JobKind.ARCHIVE_EXTRACT, "Docs/photos.zip")
"""
from .errors import (
    ApiError,
    AuthExpiredError,
    CancelledOperation,
    CloudStashError,
    PartialBulkFailure,
    ServerJobFailure,
    ValidationError,
)
from .models import (
    Blocked,
    DeleteTarget,
    ExplorerConfig,
    Failed,
    Job,
    JobKind,
    JobState,
    Proceeded,
    UploadItem,
    UploadSource,
    UploadStatus,
)
from .orchestrator import ExplorerSession
from .services import CloudApiClient, SessionStore

__version__ = "0.1.0"
__all__ = [
    # Main
    "ExplorerSession",
    "CloudApiClient",
    "SessionStore",
    # Models
    "Blocked",
    "DeleteTarget",
    "ExplorerConfig",
    "Failed",
    "Job",
    "JobKind",
    "JobState",
    "Proceeded",
    "UploadItem",
    "UploadSource",
    "UploadStatus",
    # Errors
    "ApiError",
    "AuthExpiredError",
    "CancelledOperation",
    "CloudStashError",
    "PartialBulkFailure",
    "ServerJobFailure",
    "ValidationError",
]
