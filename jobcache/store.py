"""
Job and result store built on the cache client.

Key layout (under the client prefix):

    job:<id>               job record (jobs TTL)
    owner:<owner>:jobs     set of job ids per owner (jobs TTL)
    results:<id>           hash keyword -> records, or one JSON value
    results:<id>:tag       ValueTag telling readers which layout is stored
    active:<id>            short-lived "currently active" record
    index:active           set of active job ids

Writers replace a keyword's partition with a single HSET, and multi-key
writes go through MULTI/EXEC, so readers never see half a partition.
Redis evicts least-recently-used keys under memory pressure: a miss on an
id that was written earlier is a normal outcome.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional

from .client import SCAN_BATCH, CacheClient, encode_value
from .config import TTLTiers
from .errors import InvalidKeyError, SerializationError
from .logger import get_logger
from .schema import ValueTag, utc_now, validate_job, validate_results_by_keyword

logger = get_logger()

DEFAULT_CHUNK_SIZE = 10


def _chunks(records: List[Any], size: int) -> Iterator[List[Any]]:
    for i in range(0, len(records), size):
        yield records[i:i + size]


class JobResultStore:
    """
    Owns the lifecycle of job records, result partitions and the active-job index.

    All operations return a negative result (None, False, [], 0) when Redis
    is unavailable or the input is malformed; nothing raises for those cases.
    """

    def __init__(self, client: CacheClient, ttl: Optional[TTLTiers] = None):
        self.client = client
        self.ttl = ttl or client.settings.ttl
        self._active_index = client.keys.build("index", "active")

    # Keys

    def _job_key(self, job_id: str) -> str:
        return self.client.keys.build("job", job_id)

    def _owner_key(self, owner_id: str) -> str:
        return self.client.keys.build("owner", owner_id, "jobs")

    def _results_key(self, job_id: str) -> str:
        return self.client.keys.build("results", job_id)

    def _tag_key(self, job_id: str) -> str:
        return self.client.keys.build("results", job_id, "tag")

    def _active_key(self, job_id: str) -> str:
        return self.client.keys.build("active", job_id)

    def _pipeline(self):
        return self.client.backend.pipeline(transaction=True)

    # Jobs

    def set_job(self, job_id: str, data: Dict[str, Any]) -> bool:
        """
        Write a job record and index it under its owner.

        Args:
            job_id: Job identifier
            data: JSON job record; ``owner_id`` adds it to the owner index

        Returns:
            True if the write was applied
        """
        errors = validate_job(data)
        if errors:
            logger.error("Invalid job record", job_id=job_id, errors=errors)
            return False

        record = dict(data)
        record.setdefault("job_id", job_id)
        owner_id = record.get("owner_id")
        try:
            key = self._job_key(job_id)
            owner_key = self._owner_key(owner_id) if owner_id else None
            payload = encode_value(record)
        except (InvalidKeyError, SerializationError) as e:
            logger.error("Rejected job record", job_id=repr(job_id), error=str(e))
            return False

        def _write():
            pipe = self._pipeline()
            pipe.set(key, payload, ex=self.ttl.jobs)
            if owner_key:
                pipe.sadd(owner_key, job_id)
                pipe.expire(owner_key, self.ttl.jobs)
            pipe.execute()
            return True

        return bool(self.client.run("set_job", _write, False))

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            key = self._job_key(job_id)
        except InvalidKeyError as e:
            logger.error("Invalid job id", job_id=repr(job_id), error=str(e))
            return None
        return self.client.get(key)

    def update_job(self, job_id: str, **changes: Any) -> Optional[Dict[str, Any]]:
        """
        Merge ``changes`` into an existing job record and refresh ``updated_at``.

        Not atomic: a concurrent writer to the same job may be overwritten.

        Returns:
            The updated record, or None if the job is missing or the write failed
        """
        record = self.get_job(job_id)
        if record is None:
            return None

        metadata = changes.pop("metadata", None)
        if "status" in changes and hasattr(changes["status"], "value"):
            changes["status"] = changes["status"].value
        record.update(changes)
        if metadata:
            record["metadata"] = {**(record.get("metadata") or {}), **metadata}
        record["updated_at"] = utc_now()

        if not self.set_job(job_id, record):
            return None
        return record

    def delete_job(self, job_id: str) -> bool:
        """
        Delete a job and cascade to its results, owner index entry and active entry.

        Returns:
            True if the deletion was applied (also when nothing existed)
        """
        job = self.get_job(job_id)
        try:
            keys = [
                self._job_key(job_id),
                self._results_key(job_id),
                self._tag_key(job_id),
                self._active_key(job_id),
                self.client.keys.build("webhooks", job_id),
            ]
            owner_id = (job or {}).get("owner_id")
            owner_key = self._owner_key(owner_id) if owner_id else None
        except InvalidKeyError as e:
            logger.error("Invalid job id", job_id=repr(job_id), error=str(e))
            return False

        def _delete():
            pipe = self._pipeline()
            pipe.delete(*keys)
            pipe.srem(self._active_index, job_id)
            if owner_key:
                pipe.srem(owner_key, job_id)
            pipe.execute()
            return True

        deleted = bool(self.client.run("delete_job", _delete, False))
        if deleted:
            logger.debug("Job deleted", job_id=job_id, existed=job is not None)
        return deleted

    def get_jobs_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        """Return the owner's live jobs, pruning ids whose record has expired."""
        try:
            owner_key = self._owner_key(owner_id)
        except InvalidKeyError as e:
            logger.error("Invalid owner id", owner_id=repr(owner_id), error=str(e))
            return []
        return self._read_index(owner_key, self._job_key, "get_jobs_by_owner")

    def _read_index(self, index_key: str, record_key: Callable[[str], str], operation: str) -> List[Dict[str, Any]]:
        ids = sorted(self.client.set_members(index_key))
        if not ids:
            return []

        raw_values = self.client.run(
            operation,
            lambda: self.client.backend.mget([record_key(i) for i in ids]),
            None,
        )
        if raw_values is None:
            return []

        live: List[Dict[str, Any]] = []
        stale: List[str] = []
        for member, raw in zip(ids, raw_values):
            if raw is None:
                stale.append(member)
                continue
            value = self.client.decode(record_key(member), raw)
            if value is not None:
                live.append(value)

        if stale:
            self.client.set_remove(index_key, *stale)
            logger.debug("Pruned stale index members", index=index_key, count=len(stale))
        return live

    # Results

    def set_results(self, job_id: str, results: Any) -> bool:
        """
        Store a job's results.

        A mapping of keyword -> records is stored as one hash field per keyword;
        any other JSON value (typically a flat list) is stored as one TTL'd value.
        """
        if isinstance(results, dict):
            return self.batch_set_results(job_id, results)

        try:
            key = self._results_key(job_id)
            tag_key = self._tag_key(job_id)
            payload = encode_value(results)
        except (InvalidKeyError, SerializationError) as e:
            logger.error("Rejected results", job_id=repr(job_id), error=str(e))
            return False

        def _write():
            pipe = self._pipeline()
            pipe.delete(key)
            pipe.set(key, payload, ex=self.ttl.results)
            pipe.set(tag_key, encode_value(ValueTag.SCALAR.value), ex=self.ttl.results)
            pipe.execute()
            return True

        return bool(self.client.run("set_results", _write, False))

    def batch_set_results(self, job_id: str, results_by_keyword: Dict[str, List[Any]]) -> bool:
        """
        Write every keyword partition, the layout tag and the TTLs in one transaction.

        Either all given keywords are updated or none are. On failure the
        caller retries the whole batch.
        """
        errors = validate_results_by_keyword(results_by_keyword)
        if errors:
            logger.error("Invalid results batch", job_id=job_id, errors=errors)
            return False

        try:
            key = self._results_key(job_id)
            tag_key = self._tag_key(job_id)
            fields = {kw: encode_value(records) for kw, records in results_by_keyword.items()}
        except (InvalidKeyError, SerializationError) as e:
            logger.error("Rejected results batch", job_id=repr(job_id), error=str(e))
            return False

        def _apply(pipe):
            # The tag may have been evicted on its own, so check the stored type.
            replace = pipe.type(key) not in ("hash", "none")
            pipe.multi()
            if replace:
                pipe.delete(key)
            if fields:
                pipe.hset(key, mapping=fields)
                pipe.expire(key, self.ttl.results)
            pipe.set(tag_key, encode_value(ValueTag.PARTITIONED.value), ex=self.ttl.results)

        def _write():
            self.client.backend.transaction(_apply, key)
            return True

        ok = bool(self.client.run("batch_set_results", _write, False))
        if ok:
            logger.debug("Results batch stored", job_id=job_id, keywords=len(fields))
        return ok

    def get_results(self, job_id: str, keyword: Optional[str] = None) -> Any:
        """
        Read results.

        Args:
            job_id: Job identifier
            keyword: Return only this keyword's records

        Returns:
            The keyword's records, the full keyword -> records mapping, the
            scalar value, or None when missing or unavailable
        """
        try:
            key = self._results_key(job_id)
            tag_key = self._tag_key(job_id)
        except InvalidKeyError as e:
            logger.error("Invalid job id", job_id=repr(job_id), error=str(e))
            return None

        tag = self.client.get(tag_key)
        if tag is None:
            return None

        if tag == ValueTag.PARTITIONED.value:
            if keyword is not None:
                return self.client.hash_get(key, keyword)
            return self.client.hash_get_all(key)

        if keyword is not None:
            return None
        return self.client.get(key)

    def delete_results(self, job_id: str) -> bool:
        try:
            keys = [self._results_key(job_id), self._tag_key(job_id)]
        except InvalidKeyError as e:
            logger.error("Invalid job id", job_id=repr(job_id), error=str(e))
            return False

        def _delete():
            self.client.backend.delete(*keys)
            return True

        return bool(self.client.run("delete_results", _delete, False))

    def _load_partition(self, job_id: str, keyword: str) -> Optional[List[Any]]:
        records = self.get_results(job_id, keyword)
        if records is None:
            return None
        if not isinstance(records, list):
            logger.error("Partition is not a list", job_id=job_id, keyword=keyword)
            return None
        return records

    def iter_result_chunks(self, job_id: str, keyword: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[List[Any]]:
        """Yield one keyword's records in slices of ``chunk_size``."""
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        records = self._load_partition(job_id, keyword)
        if records is None:
            return
        yield from _chunks(records, chunk_size)

    def stream_results(
        self,
        job_id: str,
        keyword: str,
        chunk_handler: Callable[[List[Any]], Any],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> bool:
        """
        Load one keyword's partition and hand it to ``chunk_handler`` slice by slice.

        Not restartable: a new call re-reads the partition. Exceptions raised
        by the handler propagate.

        Returns:
            True if the partition was found and fully handed over
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        records = self._load_partition(job_id, keyword)
        if records is None:
            return False
        for chunk in _chunks(records, chunk_size):
            chunk_handler(chunk)
        return True

    # Active jobs

    def set_active_job(self, job_id: str, data: Dict[str, Any]) -> bool:
        try:
            key = self._active_key(job_id)
            payload = encode_value(data)
        except (InvalidKeyError, SerializationError) as e:
            logger.error("Rejected active job", job_id=repr(job_id), error=str(e))
            return False

        def _write():
            pipe = self._pipeline()
            pipe.set(key, payload, ex=self.ttl.active_jobs)
            pipe.sadd(self._active_index, job_id)
            # Outlives every member record written so far
            pipe.expire(self._active_index, self.ttl.active_jobs)
            pipe.execute()
            return True

        return bool(self.client.run("set_active_job", _write, False))

    def get_active_jobs(self) -> List[Dict[str, Any]]:
        """Return live active-job records, pruning members whose record expired."""
        return self._read_index(self._active_index, self._active_key, "get_active_jobs")

    def remove_active_job(self, job_id: str) -> bool:
        try:
            key = self._active_key(job_id)
        except InvalidKeyError as e:
            logger.error("Invalid job id", job_id=repr(job_id), error=str(e))
            return False

        def _remove():
            pipe = self._pipeline()
            pipe.delete(key)
            pipe.srem(self._active_index, job_id)
            pipe.execute()
            return True

        return bool(self.client.run("remove_active_job", _remove, False))

    # Operations

    def get_memory_usage(self) -> Optional[Dict[str, Any]]:
        """Report Redis memory use; informational only, writes are not gated on it."""
        info = self.client.run("get_memory_usage", lambda: self.client.backend.info("memory"), None)
        if info is None:
            return None
        return {
            "used": info.get("used_memory"),
            "used_human": info.get("used_memory_human"),
            "max": info.get("maxmemory"),
            "max_human": info.get("maxmemory_human"),
            "policy": info.get("maxmemory_policy"),
            "connected": self.client.connected,
        }

    def cleanup(self) -> int:
        """
        Delete keys under the prefix that have no expiry.

        Every key this store writes carries a TTL, so anything found here is
        left over from a bug or manual tampering.

        Returns:
            Number of keys removed
        """
        redis_client = self.client.backend

        def _drop_persistent(batch: List[str]) -> int:
            pipe = redis_client.pipeline(transaction=False)
            for key in batch:
                pipe.ttl(key)
            ttls = pipe.execute()
            doomed = [key for key, ttl in zip(batch, ttls) if ttl == -1]
            return redis_client.delete(*doomed) if doomed else 0

        def _sweep():
            removed = 0
            batch = []
            for key in redis_client.scan_iter(match=self.client.keys.pattern("*"), count=SCAN_BATCH):
                batch.append(key)
                if len(batch) >= SCAN_BATCH:
                    removed += _drop_persistent(batch)
                    batch = []
            if batch:
                removed += _drop_persistent(batch)
            return removed

        cleaned = self.client.run("cleanup", _sweep, 0)
        if cleaned:
            logger.info(f"Redis cleanup: removed {cleaned} keys without TTL")
        return cleaned
