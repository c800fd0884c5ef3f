"""
Crash-safe local JSON snapshots.

Writes go to a uniquely named temp file next to the target, are fsynced,
and are then renamed over the target, so readers only ever see the old
file or the complete new one. Temp files orphaned by a crash are removed
by ``cleanup_stale``.
"""

import json
import os
import re
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, TextIO, Union

from .errors import AtomicWriteError
from .logger import get_logger

logger = get_logger()

TMP_SUFFIX = ".tmp"
DEFAULT_MAX_AGE = 60 * 60

_UNSAFE_CHARS = re.compile(r'[\\/*?:"<>|]')
_WHITESPACE = re.compile(r"\s+")
_TEMP_NAME = re.compile(r"^.+\.\d+-[0-9a-f]+\.tmp$")


def _temp_path(path: Path) -> Path:
    stamp = int(time.time() * 1000)
    token = uuid.uuid4().hex[:8]
    return path.with_name(f"{path.name}.{stamp}-{token}{TMP_SUFFIX}")


def _fsync_dir(directory: Path) -> None:
    # Not supported on every platform/filesystem.
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _discard(tmp: Path) -> None:
    try:
        tmp.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove temp file", path=str(tmp), error=str(e))


def _replace_atomically(path: Path, write: Callable[[TextIO], Any]) -> Any:
    tmp = _temp_path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("w", encoding="utf-8") as f:
            result = write(f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except (OSError, TypeError, ValueError) as e:
        _discard(tmp)
        raise AtomicWriteError(f"Atomic write to {path} failed: {e}") from e
    except BaseException:
        _discard(tmp)
        raise

    _fsync_dir(path.parent)
    return result


def atomic_write(path: Union[str, Path], data: Any) -> Path:
    """
    Serialize ``data`` as JSON and atomically replace ``path`` with it.

    Args:
        path: Final file path
        data: JSON-compatible value

    Returns:
        The final path

    Raises:
        AtomicWriteError: If serialization, write, sync, or rename fails.
            ``path`` is left untouched and the temp file is removed.
    """
    path = Path(path)
    try:
        payload = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise AtomicWriteError(f"Atomic write to {path} failed: {e}") from e

    _replace_atomically(path, lambda f: f.write(payload))
    return path


def atomic_write_records(path: Union[str, Path], chunks: Iterable[List[Any]]) -> int:
    """
    Write a JSON array chunk by chunk, with the same guarantees as ``atomic_write``.

    Only one chunk is serialized at a time, so exports of large partitions
    never build the whole document in memory.

    Returns:
        Number of records written
    """
    path = Path(path)

    def _write(f: TextIO) -> int:
        count = 0
        f.write("[")
        for chunk in chunks:
            for record in chunk:
                f.write(",\n  " if count else "\n  ")
                f.write(json.dumps(record, ensure_ascii=False))
                count += 1
        f.write("\n]" if count else "]")
        return count

    return _replace_atomically(path, _write)


def cleanup_stale(directory: Union[str, Path], max_age: float = DEFAULT_MAX_AGE) -> int:
    """
    Delete temp files older than ``max_age`` seconds left behind by crashed writers.

    Only names matching ``<final>.<ms>-<token>.tmp`` are considered. Final
    files, unrelated ``.tmp`` files and temp files of writers still in
    progress are never touched.

    Args:
        directory: Directory to scan
        max_age: Minimum age in seconds (default: 1 hour)

    Returns:
        Number of files removed
    """
    directory = Path(directory)
    if not directory.is_dir():
        return 0

    now = time.time()
    cleaned = 0
    for entry in directory.iterdir():
        if not _TEMP_NAME.match(entry.name):
            continue
        try:
            if not entry.is_file():
                continue
            age = now - entry.stat().st_mtime
            if age > max_age:
                entry.unlink()
                cleaned += 1
        except FileNotFoundError:
            # Renamed or removed by a concurrent writer/cleaner
            continue
        except OSError as e:
            logger.warning("Could not remove stale temp file", path=str(entry), error=str(e))

    if cleaned:
        logger.info(f"Cleaned up {cleaned} old temporary files", directory=str(directory))
    return cleaned


def sanitize_filename(name: str, max_length: int = 50) -> str:
    """Strip path-unsafe characters, collapse whitespace to '_' and cap the length."""
    cleaned = _UNSAFE_CHARS.sub("", name)
    cleaned = _WHITESPACE.sub("_", cleaned.strip())
    cleaned = cleaned[:max_length].strip(".")
    return cleaned or "untitled"


def snapshot_path(keyword: str, output_dir: Union[str, Path]) -> Path:
    return Path(output_dir) / f"{sanitize_filename(keyword)}.json"


def save_snapshot(
    records: Any,
    keyword: str,
    output_dir: Union[str, Path],
    enabled: bool = True,
) -> Path:
    """
    Snapshot one keyword's records to ``<output_dir>/<keyword>.json``.

    When local saving is disabled nothing is written, but the predictable
    path is still returned for callers that report it.

    Raises:
        AtomicWriteError: If the write fails
    """
    final_path = snapshot_path(keyword, output_dir)
    if not enabled:
        logger.warning(
            "Local file saving disabled - data will be handled in cache only",
            keyword=keyword,
        )
        return final_path

    atomic_write(final_path, records)
    logger.record_snapshot()
    logger.debug("Snapshot saved", path=str(final_path))
    return final_path


def load_snapshot(path: Union[str, Path], default: Optional[Any] = None) -> Any:
    path = Path(path)
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as f:
            content = f.read().strip()
            if not content:
                return default
            return json.loads(content)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Unreadable snapshot", path=str(path), error=str(e))
        return default
