import argparse
import json
from pathlib import Path

from . import __version__
from .cleanup import run_maintenance
from .config import CacheSettings
from .env import load_env
from .errors import AtomicWriteError
from .service import CacheService


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _open_service() -> CacheService:
    service = CacheService(CacheSettings.from_env())
    service.init()
    return service


def cmd_health(args: argparse.Namespace) -> None:
    with _open_service() as service:
        report = service.health()
    _print_json(report)
    if not report["healthy"]:
        raise SystemExit(1)


def cmd_memory(args: argparse.Namespace) -> None:
    with _open_service() as service:
        usage = service.store.get_memory_usage()
    if usage is None:
        raise SystemExit("Redis not available.")
    _print_json(usage)


def cmd_active(args: argparse.Namespace) -> None:
    with _open_service() as service:
        jobs = service.store.get_active_jobs()
    if not jobs:
        print("No active jobs.")
        return
    _print_json(jobs)


def cmd_results(args: argparse.Namespace) -> None:
    with _open_service() as service:
        results = service.store.get_results(args.job, args.keyword)
    if results is None:
        raise SystemExit(f"No results for job {args.job}")
    _print_json(results)


def cmd_export(args: argparse.Namespace) -> None:
    output = Path(args.output)
    with _open_service() as service:
        try:
            count = service.export_results(args.job, args.keyword, output)
        except AtomicWriteError as e:
            raise SystemExit(str(e))
    if not count:
        raise SystemExit(f"No results for job {args.job} keyword {args.keyword!r}")
    print(f"Exported {count} records to {output}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    with _open_service() as service:
        output_dir = Path(args.output_dir) if args.output_dir else service.settings.output_dir
        keys_removed, temp_removed = run_maintenance(service.store, output_dir, max_age=args.max_age)
    _print_json({"keys_removed": keys_removed, "temp_files_removed": temp_removed})


def cmd_ratelimit(args: argparse.Namespace) -> None:
    with _open_service() as service:
        result = service.check_rate_limit(args.id, args.limit, args.window)
    _print_json({"allowed": result.allowed, "remaining": result.remaining, "count": result.count})
    if not result.allowed:
        raise SystemExit(2)


def main():
    # Load .env if present (REDIS_URL, REDIS_PREFIX, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="jobcache", description="Job state and result cache")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    hlt = subparsers.add_parser("health", help="Check Redis connectivity, memory and breakers")
    hlt.set_defaults(func=cmd_health)

    mem = subparsers.add_parser("memory", help="Show Redis memory usage")
    mem.set_defaults(func=cmd_memory)

    act = subparsers.add_parser("active", help="List active jobs")
    act.set_defaults(func=cmd_active)

    res = subparsers.add_parser("results", help="Print cached results for a job")
    res.add_argument("--job", required=True, help="Job id")
    res.add_argument("--keyword", help="Only this keyword's records")
    res.set_defaults(func=cmd_results)

    exp = subparsers.add_parser("export", help="Export one keyword's records to a JSON file")
    exp.add_argument("--job", required=True, help="Job id")
    exp.add_argument("--keyword", required=True, help="Keyword partition to export")
    exp.add_argument("--output", required=True, help="Destination JSON file")
    exp.set_defaults(func=cmd_export)

    cln = subparsers.add_parser("cleanup", help="Remove keys without TTL and stale temp files")
    cln.add_argument("--output-dir", help="Snapshot directory (default: OUTPUT_DIR)")
    cln.add_argument("--max-age", type=float, default=3600, help="Temp file age threshold in seconds (default: 3600)")
    cln.set_defaults(func=cmd_cleanup)

    rl = subparsers.add_parser("ratelimit", help="Count one request against a rate limit")
    rl.add_argument("--id", required=True, help="Caller identifier")
    rl.add_argument("--limit", type=int, help="Requests per window (default: RATE_LIMIT_MAX_REQUESTS)")
    rl.add_argument("--window", type=int, help="Window in seconds (default: RATE_LIMIT_WINDOW_SECONDS)")
    rl.set_defaults(func=cmd_ratelimit)

    args = parser.parse_args()

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        args.func(args)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
