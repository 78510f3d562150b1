import argparse
from datetime import UTC, datetime
import logging
from pathlib import Path

from bulkloader.config import get_settings
from bulkloader.database import build_session_factory
from bulkloader.errors import JobConfigError
from bulkloader.job_config import load_job_config
from bulkloader.pipeline import PipelineRunner


logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load CSV records into the resource platform")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="apply one job file")
    run_parser.add_argument("config_path", help="Path to the job config JSON file")
    run_parser.add_argument("--run-key", required=False, help="Idempotency key for this run")
    run_parser.add_argument(
        "--concurrency",
        type=int,
        required=False,
        help="Maximum remote operations in flight (overrides job file and BATCH_CONCURRENCY)",
    )

    return parser.parse_args()


def default_run_key(config_path: str) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"{Path(config_path).stem}-{stamp}"


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.concurrency is not None and args.concurrency < 1:
        raise SystemExit("--concurrency must be >= 1")

    try:
        job_config = load_job_config(args.config_path)
    except JobConfigError as exc:
        logger.error("invalid job config", extra={"config_path": args.config_path})
        print(f"status=failed error={exc}")
        raise SystemExit(1) from exc

    session_factory = build_session_factory(settings.database_url)
    runner = PipelineRunner(settings, session_factory)
    result = runner.run(
        job_config,
        run_key=args.run_key or default_run_key(args.config_path),
        concurrency=args.concurrency,
    )

    print(
        "run_id={run_id} run_key={run_key} status={status} total={total} valid={valid} invalid={invalid} ok={ok} failed={failed} reused={reused} stats={stats}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            status=result.status,
            total=result.total_records,
            valid=result.valid_records,
            invalid=result.invalid_records,
            ok=result.success_count,
            failed=result.failure_count,
            reused=result.reused_existing_run,
            stats=result.stats_path,
        )
    )
    if result.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
