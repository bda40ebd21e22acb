"""
Background job tracking: start, poll until terminal, clean up.

One JobOrchestrator per job family. Jobs are tracked by key (the source file
key, or the comma-joined key list for archive creation); each job has its own
polling task and its own one-shot terminal gate, so a stuck job never holds
up another.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from ..errors import ApiError, ServerJobFailure, describe_exception
from ..models import ExplorerConfig, Job, JobKind, JobProgress, JobState
from ..protocols import IJobApi
from ..services.cache import CacheInvalidator
from ..services.session_store import SessionStore
from ..utils.events import JOB_UPDATE, EventEmitter
from ..utils.paths import normalize_folder_path, parent_path

logger = logging.getLogger(__name__)

JobTarget = Union[str, Sequence[str]]


def _compact(body: Dict[str, Any]) -> Dict[str, Any]:
    return {name: value for name, value in body.items() if value is not None}


class JobFamily(ABC):
    """What differs between job families: keys, request bodies, what to invalidate."""

    kind: JobKind

    def job_key(self, target: JobTarget) -> str:
        return str(target)

    def source_key(self, target: JobTarget) -> str:
        """Key whose folder session authorizes the job."""
        return str(target)

    @abstractmethod
    def start_body(self, target: JobTarget, options: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def invalidation_paths(self, job: Job, source_key: str) -> List[str]:
        """Folders whose listings change once the job completes."""
        paths = [parent_path(source_key)]
        if job.output_path:
            paths.append(normalize_folder_path(job.output_path))
        return paths


class ZipExtractFamily(JobFamily):
    kind = JobKind.ZIP_EXTRACT

    def start_body(self, target: JobTarget, options: Dict[str, Any]) -> Dict[str, Any]:
        return {"Key": target}


class ArchiveExtractFamily(JobFamily):
    kind = JobKind.ARCHIVE_EXTRACT

    def start_body(self, target: JobTarget, options: Dict[str, Any]) -> Dict[str, Any]:
        entries = options.get("entries")
        return _compact({"Key": target, "SelectedEntries": list(entries) if entries else None})


class ArchiveCreateFamily(JobFamily):
    kind = JobKind.ARCHIVE_CREATE

    def job_key(self, target: JobTarget) -> str:
        return ",".join(self._keys(target))

    def source_key(self, target: JobTarget) -> str:
        keys = self._keys(target)
        return keys[0] if keys else ""

    def start_body(self, target: JobTarget, options: Dict[str, Any]) -> Dict[str, Any]:
        return _compact({
            "Keys": self._keys(target),
            "Format": options.get("format"),
            "OutputName": options.get("output_name"),
        })

    def invalidation_paths(self, job: Job, source_key: str) -> List[str]:
        paths = [parent_path(source_key)]
        archive_key = job.output_path or job.output_key
        if archive_key:
            paths.append(parent_path(archive_key))
        return paths

    @staticmethod
    def _keys(target: JobTarget) -> List[str]:
        return [target] if isinstance(target, str) else list(target)


class JobOrchestrator:
    """
    Start/poll/cancel state machine for one job family.

    Usage:
        jobs = JobOrchestrator(api, ArchiveExtractFamily(), sessions, invalidator)
        await jobs.start("x.zip")
        job = await jobs.wait("x.zip", raise_on_failure=True)
    """

    def __init__(
        self,
        api: IJobApi,
        family: JobFamily,
        sessions: SessionStore,
        invalidator: CacheInvalidator,
        events: Optional[EventEmitter] = None,
        config: Optional[ExplorerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._api = api
        self._family = family
        self._sessions = sessions
        self._invalidator = invalidator
        self._events = events or EventEmitter()
        self._config = config or ExplorerConfig()
        self._clock = clock

        # Single-key read-merge-write only
        self._jobs: Dict[str, Job] = {}
        self._sources: Dict[str, str] = {}
        self._generations: Dict[str, int] = {}
        self._terminal_seen: Set[str] = set()
        self._results: Dict[str, asyncio.Future] = {}
        self._pollers: Dict[str, asyncio.Task] = {}
        self._cleanups: Dict[str, asyncio.Task] = {}

    @property
    def family(self) -> JobFamily:
        return self._family

    @property
    def jobs(self) -> Dict[str, Job]:
        return dict(self._jobs)

    def get(self, key: str) -> Optional[Job]:
        return self._jobs.get(key)

    def on_update(self, callback: Callable[[Job], None]):
        """Called with the new snapshot whenever a job record changes."""
        self._events.on(JOB_UPDATE, callback)

    # ------------------------------------------------------------------
    # Record updates
    # ------------------------------------------------------------------

    def _write(self, job: Job) -> Job:
        self._jobs[job.key] = job
        self._events.emit_nowait(JOB_UPDATE, job)
        return job

    def _session_token(self, key: str) -> Optional[str]:
        source = self._sources.get(key)
        if source is None:
            return None
        return self._sessions.get_session_token(parent_path(source))

    async def _settle(self, key: str, state: JobState, reason: Optional[str] = None) -> Optional[Job]:
        job = self._jobs.get(key)
        if job is None or job.is_terminal or key in self._terminal_seen:
            # Terminal states are final
            return job
        job = self._write(replace(
            job,
            state=state,
            failed_reason=reason or job.failed_reason,
            updated_at=self._clock(),
        ))
        await self._on_terminal(job)
        return job

    async def _on_terminal(self, job: Job) -> None:
        """Terminal side effects. The gate makes them fire once per job."""
        if job.key in self._terminal_seen:
            return
        self._terminal_seen.add(job.key)

        if job.state is JobState.COMPLETED:
            logger.info(f"{self._family.kind.value} job {job.key} completed")
            for path in self._family.invalidation_paths(job, self._sources.get(job.key, job.key)):
                await self._invalidator.invalidate(path, objects=True, directories=True)
        elif job.state is JobState.FAILED:
            logger.warning(f"{self._family.kind.value} job {job.key} failed: {job.failed_reason}")
        else:
            logger.info(f"{self._family.kind.value} job {job.key} {job.state.value}")

        self._schedule_cleanup(job.key)
        result = self._results.get(job.key)
        if result is not None and not result.done():
            result.set_result(job)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        target: JobTarget,
        options: Optional[Dict[str, Any]] = None,
        progress: Optional[JobProgress] = None,
    ) -> Optional[Job]:
        """
        Start a job and begin polling it.

        The record shows `starting` until the server returns a job id. Start
        failures are logged and recorded as `failed`, not raised.
        """
        options = options or {}
        key = self._family.job_key(target)

        # Restarting a key resets its gate and orphans the old poller/cleanup
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        self._stop_task(self._pollers.pop(key, None))
        self._stop_task(self._cleanups.pop(key, None))
        self._terminal_seen.discard(key)
        previous = self._results.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
        self._results[key] = asyncio.get_running_loop().create_future()
        self._sources[key] = self._family.source_key(target)

        self._write(Job(
            key=key,
            kind=self._family.kind,
            state=JobState.STARTING,
            progress=progress or JobProgress(),
            format=options.get("format"),
            updated_at=self._clock(),
        ))

        try:
            started = await self._api.start_job(
                self._family.kind,
                self._family.start_body(target, options),
                session_token=self._session_token(key),
            )
        except Exception as e:
            logger.error(
                f"Failed to start {self._family.kind.value} job for {key}: {e}",
                exc_info=not isinstance(e, ApiError),
            )
            if self._generations.get(key) != generation:
                return self._jobs.get(key)
            return await self._settle(key, JobState.FAILED, describe_exception(e))

        if self._generations.get(key) != generation:
            return self._jobs.get(key)
        if not started.job_id:
            logger.error(f"Server returned no job id for {self._family.kind.value} job {key}")
            return await self._settle(key, JobState.FAILED, "Server did not return a job id")

        job = self._jobs[key]
        self._write(replace(
            job,
            job_id=started.job_id,
            state=JobState.WAITING,
            format=started.format or job.format,
            output_key=started.output_key or job.output_key,
            updated_at=self._clock(),
        ))
        logger.info(f"Started {self._family.kind.value} job {started.job_id} for {key}")

        await self.poll(key)
        if key not in self._terminal_seen and self._generations.get(key) == generation:
            self._pollers[key] = asyncio.get_running_loop().create_task(self._poll_loop(key, generation))
        return self._jobs.get(key)

    async def poll(self, key: str) -> Optional[Job]:
        """Fetch status once and merge it into the record."""
        job = self._jobs.get(key)
        if job is None or job.job_id is None or key in self._terminal_seen:
            return job
        generation = self._generations.get(key)
        try:
            status = await self._api.job_status(self._family.kind, job.job_id, session_token=self._session_token(key))
        except Exception as e:
            logger.warning(f"Status poll for {self._family.kind.value} job {key} failed: {describe_exception(e)}")
            return self._jobs.get(key)

        current = self._jobs.get(key)
        if current is None or self._generations.get(key) != generation or key in self._terminal_seen:
            return current
        updated = self._write(current.with_status(status, self._clock()))
        logger.debug(f"Polled {key}: {updated.state.value} {updated.progress.as_dict()}")
        if updated.is_terminal:
            await self._on_terminal(updated)
        return updated

    async def _poll_loop(self, key: str, generation: int) -> None:
        while True:
            await asyncio.sleep(self._config.poll_interval)
            if self._generations.get(key) != generation or key in self._terminal_seen or key not in self._jobs:
                return
            await self.poll(key)

    async def cancel(self, key: str) -> bool:
        """Ask the server to cancel; mark the job cancelled once it accepts."""
        job = self._jobs.get(key)
        if job is None or job.job_id is None or job.is_terminal:
            return False
        generation = self._generations.get(key)
        try:
            await self._api.cancel_job(self._family.kind, job.job_id)
        except Exception as e:
            logger.error(f"Failed to cancel {self._family.kind.value} job {key}: {describe_exception(e)}")
            return False
        if self._generations.get(key) != generation or key in self._terminal_seen:
            logger.info(f"{self._family.kind.value} job {key} finished before the cancel was accepted")
            return False
        await self._settle(key, JobState.CANCELLED)
        self._stop_task(self._pollers.pop(key, None))
        return True

    async def wait(self, key: str, raise_on_failure: bool = False) -> Optional[Job]:
        """
        Wait until the job reaches a terminal state and return that snapshot.

        With `raise_on_failure`, a failed job raises ServerJobFailure.
        """
        result = self._results.get(key)
        if result is None:
            return self._jobs.get(key)
        job = await asyncio.shield(result)
        await self._events.drain()
        if raise_on_failure and job.state is JobState.FAILED:
            raise ServerJobFailure(key, job.failed_reason)
        return job

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _schedule_cleanup(self, key: str) -> None:
        generation = self._generations.get(key)
        self._stop_task(self._cleanups.pop(key, None))
        self._cleanups[key] = asyncio.get_running_loop().create_task(self._cleanup_after(key, generation))

    async def _cleanup_after(self, key: str, generation: Optional[int]) -> None:
        await asyncio.sleep(self._config.job_cleanup_delay)
        if self._generations.get(key) != generation:
            return
        self._jobs.pop(key, None)
        self._sources.pop(key, None)
        self._terminal_seen.discard(key)
        self._cleanups.pop(key, None)
        logger.debug(f"Removed finished job {key}")

    @staticmethod
    def _stop_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def close(self) -> None:
        """Stop every polling loop and cleanup timer."""
        tasks = list(self._pollers.values()) + list(self._cleanups.values())
        self._pollers = {}
        self._cleanups = {}
        for task in tasks:
            self._stop_task(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for result in self._results.values():
            if not result.done():
                result.cancel()
