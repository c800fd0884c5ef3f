"""
Service object wiring the cache client, stores, rate limiter and webhooks.

Construct one ``CacheService`` per process and pass it to whatever needs
job state; call ``init()`` before use and ``shutdown()`` on exit, or use it
as a context manager.
"""

import itertools
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .cleanup import cleanup_snapshot_dirs
from .client import CONNECTION_ERRORS, CacheClient
from .config import CacheSettings
from .logger import get_logger
from .ratelimit import RateLimiter, RateLimitResult
from .retry import CircuitBreakerRegistry
from .schema import Job, JobStatus, new_job_id, utc_now
from .storage import (
    atomic_write_records,
    load_snapshot,
    sanitize_filename,
    save_snapshot,
    snapshot_path,
)
from .store import JobResultStore
from .webhooks import DELIVERY_ERRORS, WebhookNotifier

logger = get_logger()


class CacheService:
    def __init__(self, settings: Optional[CacheSettings] = None, client: Optional[CacheClient] = None):
        """
        Args:
            settings: Service settings (default: CacheSettings.from_env())
            client: Pre-built cache client, mainly for tests
        """
        self.settings = settings or CacheSettings.from_env()
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=self.settings.breaker_failure_threshold,
            recovery_timeout=self.settings.breaker_recovery_timeout,
        )
        if client is None:
            client = CacheClient(
                self.settings,
                breaker=self.breakers.get("redis", expected_exception=CONNECTION_ERRORS),
            )
        self.client = client
        self.store = JobResultStore(client)
        self.rate_limiter = RateLimiter(client)
        self.webhooks = WebhookNotifier(
            client,
            self.breakers.get("webhooks", expected_exception=DELIVERY_ERRORS),
        )
        self._initialized = False

    def __enter__(self) -> "CacheService":
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    def init(self) -> bool:
        """
        Connect to Redis and clear temp files left by crashed writers.

        Returns:
            True if Redis is connected; the service also runs without it
        """
        if self._initialized:
            return self.client.connected
        output_dir = self.settings.output_dir
        if self.settings.save_local_files:
            output_dir.mkdir(parents=True, exist_ok=True)
            cleanup_snapshot_dirs(output_dir)
        connected = self.client.connect()
        self._initialized = True
        logger.info(
            "Cache service initialized",
            redis=self.client.state.value,
            output_dir=str(output_dir),
            local_files=self.settings.save_local_files,
        )
        return connected

    def shutdown(self):
        if not self._initialized:
            return
        self.client.close()
        self._initialized = False
        logger.log_metrics_summary()

    # Job lifecycle

    def submit_job(
        self,
        owner_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Create a queued job and list it as active.

        The returned Job is valid even when Redis is down; the state just
        isn't shared with other processes.
        """
        job = Job(job_id=job_id or new_job_id(), owner_id=owner_id, metadata=dict(metadata or {}))
        if not self.store.set_job(job.job_id, job.to_dict()):
            logger.warning("Job state not cached", job_id=job.job_id)
        self.store.set_active_job(job.job_id, self._active_record(job.job_id, job.status))
        logger.info("Job submitted", job_id=job.job_id, owner_id=owner_id)
        return job

    def _active_record(self, job_id: str, status: JobStatus) -> Dict[str, Any]:
        return {"job_id": job_id, "status": status.value, "since": utc_now()}

    def mark_active(self, job_id: str) -> bool:
        self.store.update_job(job_id, status=JobStatus.RUNNING)
        return self.store.set_active_job(job_id, self._active_record(job_id, JobStatus.RUNNING))

    def mark_inactive(self, job_id: str, status: JobStatus = JobStatus.COMPLETED) -> bool:
        """Record the final status, drop the job from the active index and fire ``job.<status>``."""
        status = JobStatus(status)
        record = self.store.update_job(job_id, status=status)
        removed = self.store.remove_active_job(job_id)
        self.webhooks.notify(job_id, f"job.{status.value}", {"status": status.value, "job": record})
        return removed

    # Results

    def _job_dir(self, job_id: str) -> Path:
        return self.settings.output_dir / sanitize_filename(job_id, max_length=64)

    def record_result(self, job_id: str, keyword: str, records: List[Any]) -> Optional[Path]:
        """
        Store one keyword's records remotely and snapshot them locally.

        Returns:
            The snapshot path, or None when local saving is disabled

        Raises:
            AtomicWriteError: If the snapshot write fails. The remote write
                has already been attempted by then.
        """
        if not self.store.batch_set_results(job_id, {keyword: records}):
            logger.warning("Results not cached", job_id=job_id, keyword=keyword)

        if not self.settings.save_local_files:
            return None
        return save_snapshot(records, keyword, self._job_dir(job_id))

    def export_results(self, job_id: str, keyword: str, path: Union[str, Path]) -> int:
        """
        Write one keyword's records to ``path`` as a JSON array.

        Reads the cached partition chunk by chunk; when the cache has no data
        the local snapshot is used instead.

        Returns:
            Number of records written (0 and no file when neither source has data)
        """
        chunks = self.store.iter_result_chunks(job_id, keyword)
        first = next(chunks, None)
        if first is not None:
            count = atomic_write_records(path, itertools.chain([first], chunks))
            logger.info("Results exported", job_id=job_id, keyword=keyword, count=count, source="cache")
            return count

        snapshot = load_snapshot(snapshot_path(keyword, self._job_dir(job_id)))
        if not isinstance(snapshot, list) or not snapshot:
            logger.warning("No results to export", job_id=job_id, keyword=keyword)
            return 0

        count = atomic_write_records(path, [snapshot])
        logger.info("Results exported", job_id=job_id, keyword=keyword, count=count, source="snapshot")
        return count

    # Rate limiting

    def check_rate_limit(
        self,
        identifier: str,
        limit: Optional[int] = None,
        window: Optional[int] = None,
    ) -> RateLimitResult:
        return self.rate_limiter.check_limit(
            identifier,
            self.settings.rate_limit_max if limit is None else limit,
            self.settings.rate_limit_window if window is None else window,
        )

    # Health

    def health(self) -> Dict[str, Any]:
        healthy = self.client.is_healthy()
        return {
            "healthy": healthy,
            "redis": self.client.state.value,
            "memory": self.store.get_memory_usage() if healthy else None,
            "active_jobs": len(self.store.get_active_jobs()) if healthy else 0,
            "breakers": self.breakers.snapshot(),
            "metrics": logger.get_metrics(),
        }
