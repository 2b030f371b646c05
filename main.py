from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from typing import Optional, Sequence

from ingestflow.app import ServiceContext, build_context
from ingestflow.config import load_config
from ingestflow.errors import ConfigError, PipelineError
from ingestflow.logging_utils import configure_logging
from ingestflow.scheduler import SchedulerError

logger = configure_logging("ingestflow")


def run_once(context: ServiceContext, job_name: str) -> int:
    result = context.scheduler.trigger_job(job_name)
    stats = context.scheduler.get_job_statistics()[job_name]
    if result is None:
        error = stats["last_error"]
        print(f"job={job_name} status={stats['status']} error={error['message'] if error else 'skipped'}")
        return 1

    for source_id, site in result.site_results.items():
        print(
            f"source={source_id} scraped={site.scraped} translated={site.translated} "
            f"stored={site.stored} created={site.created} updated={site.updated} "
            f"skipped={site.duplicates_skipped} errors={len(site.errors)} elapsed_ms={site.elapsed_ms}"
        )
    for error in result.errors:
        print(f"  {error}")
    print(
        f"\nDONE: job={job_name} success={result.success} processed={result.total_processed} "
        f"new={result.new_records} updated={result.updated_records} errors={len(result.errors)}"
    )
    return 0 if result.success else 2


def check_health(context: ServiceContext) -> int:
    result = context.scheduler.perform_health_check()
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.status.value != "unhealthy" else 1


def serve(context: ServiceContext) -> int:
    stopped = threading.Event()

    def _handle_signal(signum, frame) -> None:
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    context.scheduler.start()
    for name, stats in context.scheduler.get_job_statistics().items():
        print(f"job={name} status={stats['status']} next_run={stats['next_run']}")
    while not stopped.wait(timeout=1.0):
        pass
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Scheduled multi-source ingestion pipeline")
    parser.add_argument("--config", default=None, help="Path to YAML config file")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--run-once", metavar="JOB", help="Run one configured job immediately and exit")
    mode.add_argument("--health", action="store_true", help="Run a health check and print the result")
    mode.add_argument("--serve", action="store_true", help="Start the scheduler and run until interrupted")
    mode.add_argument("--status", action="store_true", help="Print the configured jobs")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    context = None
    try:
        context = build_context(config)
        if args.run_once:
            return run_once(context, args.run_once)
        if args.health:
            return check_health(context)
        if args.serve:
            return serve(context)
        if args.status:
            print(json.dumps(context.scheduler.get_status(), indent=2, default=str))
            return 0
    except (SchedulerError, PipelineError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        if context is not None:
            context.close()

    print("Nothing to do. Use --run-once JOB, --health, --status or --serve.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
