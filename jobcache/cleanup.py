"""
Maintenance pass for the cache and the local snapshot directory.

Removes Redis keys under the deployment prefix that have no expiry (every
key the store writes carries one) and temp files orphaned by crashed
snapshot writers.
"""

from pathlib import Path
from typing import Tuple, Union

from .logger import get_logger
from .storage import DEFAULT_MAX_AGE, cleanup_stale
from .store import JobResultStore

logger = get_logger()


def cleanup_snapshot_dirs(output_dir: Union[str, Path], max_age: float = DEFAULT_MAX_AGE) -> int:
    """Remove stale temp files from ``output_dir`` and its per-job subdirectories."""
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        logger.debug("Snapshot directory missing, skipping temp cleanup", output_dir=str(output_dir))
        return 0

    removed = cleanup_stale(output_dir, max_age=max_age)
    for job_dir in output_dir.iterdir():
        if job_dir.is_dir():
            removed += cleanup_stale(job_dir, max_age=max_age)
    return removed


def run_maintenance(
    store: JobResultStore,
    output_dir: Union[str, Path],
    max_age: float = DEFAULT_MAX_AGE,
) -> Tuple[int, int]:
    """
    Sweep TTL-less keys and stale temp files.

    Args:
        store: Store whose prefix is swept
        output_dir: Snapshot directory; a missing directory is skipped
        max_age: Minimum temp file age in seconds (default: 1 hour)

    Returns:
        Tuple of (keys_removed, temp_files_removed)
    """
    keys_removed = store.cleanup()
    temp_removed = cleanup_snapshot_dirs(output_dir, max_age=max_age)

    logger.info(
        f"Maintenance complete: {keys_removed} keys, {temp_removed} temp files removed",
        output_dir=str(output_dir),
        max_age=max_age,
    )
    return keys_removed, temp_removed
