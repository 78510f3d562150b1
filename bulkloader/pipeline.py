import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import TypeVar

from sqlalchemy.orm import Session, sessionmaker

from bulkloader.config import Settings
from bulkloader.db_models import PipelineRun
from bulkloader.errors import ConfigurationError, JobConfigError
from bulkloader.job_config import JobConfig, load_json_file
from bulkloader.mapper import MappingTable
from bulkloader.orchestrator import ProgressSink, load_project, upsert_all_resources
from bulkloader.remote_client import PlatformClient
from bulkloader.retry import RetryPolicy
from bulkloader.run_store import (
    FINISHED_STATUSES,
    create_or_get_run,
    create_step,
    finish_step_failure,
    finish_step_success,
    mark_run_failed,
    mark_run_finished,
    mark_run_running,
    reset_run_state,
    store_dead_letters,
    store_record_outcomes,
)
from bulkloader.schemas import InvalidRecord, MappedResource, OutcomeLedger, RunResult
from bulkloader.step_logic import (
    classify_records,
    console_progress,
    load_csv_rows,
    map_records,
    render_stats,
    write_json,
    write_jsonl,
    write_text,
)


logger = logging.getLogger(__name__)
T = TypeVar("T")

ClientFactory = Callable[[], PlatformClient]


@dataclass(frozen=True)
class LoadedInputs:
    rows: list[dict[str, str]]
    input_schema: dict[str, object]
    mapping: MappingTable
    output_schema: dict[str, object]


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        client_factory: ClientFactory | None = None,
        progress_sink: ProgressSink = console_progress,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.client_factory = client_factory or self._default_client
        self.progress_sink = progress_sink
        self.retry_policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            max_backoff_seconds=settings.retry_max_backoff_seconds,
        )

    def run(self, job_config: JobConfig, *, run_key: str, concurrency: int | None = None) -> RunResult:
        with self.session_factory() as db:
            run, created = create_or_get_run(db, run_key=run_key, job_config=job_config)
            if not created:
                if run.status in FINISHED_STATUSES:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    return self._result_from_run(run, job_config, reused_existing_run=True)
                # Keep the same run key and clear the state of the unfinished attempt.
                logger.info("retrying previous run", extra={"run_key": run_key, "status": run.status})
                reset_run_state(db, run)

            mark_run_running(db, run)

            total_records = 0
            valid_count = 0
            invalid_records: list[InvalidRecord] = []
            ledger: OutcomeLedger | None = None

            try:
                inputs = self._run_step(db, run, "load", lambda: self._load(job_config))
                total_records = len(inputs.rows)

                valid_records, invalid_records = self._run_step(
                    db, run, "classify", lambda: classify_records(inputs.rows, inputs.input_schema)
                )
                valid_count = len(valid_records)
                if invalid_records:
                    logger.warning(
                        "rows rejected by input schema",
                        extra={"run_key": run_key, "invalid_records": len(invalid_records)},
                    )

                resources = self._run_step(db, run, "map", lambda: map_records(valid_records, inputs.mapping))

                ledger = self._run_step(
                    db,
                    run,
                    "apply",
                    lambda: asyncio.run(
                        self._apply(job_config, resources, inputs.output_schema, concurrency)
                    ),
                )

                store_dead_letters(db, run_id=run.id, invalid_records=invalid_records)
                store_record_outcomes(db, run_id=run.id, ledger=ledger)

                self._run_step(
                    db,
                    run,
                    "publish_report",
                    lambda: self._publish_outputs(
                        run_key=run_key,
                        job_config=job_config,
                        invalid_records=invalid_records,
                        ledger=ledger,
                        total_records=total_records,
                    ),
                )

                mark_run_finished(
                    db,
                    run,
                    total_records=total_records,
                    valid_records=valid_count,
                    invalid_records=len(invalid_records),
                    ledger=ledger,
                )
            except Exception as exc:
                mark_run_failed(
                    db,
                    run,
                    error=str(exc),
                    total_records=total_records,
                    valid_records=valid_count,
                    invalid_records=len(invalid_records),
                )
                logger.exception("pipeline run failed", extra={"run_key": run_key})
                try:
                    self._write_stats(job_config, ledger, invalid_records, errors=[str(exc)])
                except OSError:
                    logger.exception("could not write stats file", extra={"stats_file": job_config.stats_file})

            return self._result_from_run(run, job_config, reused_existing_run=False)

    def _run_step(self, db: Session, run: PipelineRun, step_name: str, fn: Callable[[], T]) -> T:
        # Persist each step so failures stay auditable.
        step = create_step(db, run_id=run.id, step_name=step_name)
        try:
            result = fn()
        except Exception as exc:
            finish_step_failure(db, step, str(exc))
            raise
        finish_step_success(db, step)
        return result

    def _load(self, job_config: JobConfig) -> LoadedInputs:
        try:
            rows = load_csv_rows(Path(job_config.input_data))
        except FileNotFoundError as exc:
            raise JobConfigError(str(exc)) from exc

        return LoadedInputs(
            rows=rows,
            input_schema=_load_object(job_config.input_schema),
            mapping=MappingTable.from_dict(_load_object(job_config.output_mapping)),
            output_schema=_load_object(job_config.output_schema),
        )

    async def _apply(
        self,
        job_config: JobConfig,
        resources: list[MappedResource],
        output_schema: dict[str, object],
        concurrency: int | None,
    ) -> OutcomeLedger:
        batch_size = concurrency or job_config.concurrency or self.settings.batch_concurrency
        async with self.client_factory() as client:
            project = await load_project(client, job_config.project_name, self.retry_policy)
            return await upsert_all_resources(
                resources,
                job_config,
                client,
                project,
                output_schema,
                concurrency=batch_size,
                retry_policy=self.retry_policy,
                progress_sink=self.progress_sink,
            )

    def _default_client(self) -> PlatformClient:
        if not self.settings.operator_api_key:
            raise ConfigurationError("export OPERATOR_API_KEY")
        return PlatformClient(
            self.settings.api_url,
            self.settings.operator_api_key,
            timeout_seconds=self.settings.request_timeout_seconds,
        )

    def _publish_outputs(
        self,
        *,
        run_key: str,
        job_config: JobConfig,
        invalid_records: list[InvalidRecord],
        ledger: OutcomeLedger,
        total_records: int,
    ) -> None:
        output_root = Path(self.settings.output_dir)
        dead_letter_path = output_root / "dead-letter" / f"{run_key}.jsonl"
        report_path = self._report_path(run_key)

        self._write_stats(job_config, ledger, invalid_records)
        write_jsonl(
            dead_letter_path,
            [
                {
                    "record_index": invalid.record_index,
                    "reason": invalid.reason,
                    "record": invalid.record,
                }
                for invalid in invalid_records
            ]
            + [
                {
                    "record_index": outcome.ordinal,
                    "reason": outcome.reason,
                    "name": outcome.name,
                }
                for outcome in ledger.failures()
            ],
        )
        write_json(
            report_path,
            {
                "run_key": run_key,
                "input_data": job_config.input_data,
                "project_name": job_config.project_name,
                "resource_type": job_config.resource_type,
                "total_records": total_records,
                "invalid_records": len(invalid_records),
                "success_count": ledger.success_count,
                "failure_count": ledger.failure_count,
                "failure_messages": ledger.failure_messages,
                "warnings": [warning for outcome in ledger.outcomes.values() for warning in outcome.warnings],
                "dead_letter_output": str(dead_letter_path),
                "stats_file": job_config.stats_file,
            },
        )

    def _write_stats(
        self,
        job_config: JobConfig,
        ledger: OutcomeLedger | None,
        invalid_records: list[InvalidRecord],
        errors: list[str] | None = None,
    ) -> None:
        text = render_stats(job_config.input_data, ledger, invalid_records, errors or [])
        write_text(Path(job_config.stats_file), text)

    def _report_path(self, run_key: str) -> Path:
        return Path(self.settings.output_dir) / "reports" / f"{run_key}.json"

    def _result_from_run(self, run: PipelineRun, job_config: JobConfig, reused_existing_run: bool) -> RunResult:
        report_path = self._report_path(run.run_key)
        return RunResult(
            run_id=run.id,
            run_key=run.run_key,
            status=run.status,
            total_records=run.total_records,
            valid_records=run.valid_records,
            invalid_records=run.invalid_records,
            success_count=run.success_count,
            failure_count=run.failure_count,
            stats_path=job_config.stats_file,
            report_path=str(report_path) if report_path.exists() else None,
            reused_existing_run=reused_existing_run,
        )


def _load_object(path: str) -> dict[str, object]:
    data = load_json_file(path)
    if not isinstance(data, dict):
        raise JobConfigError(f"expected a JSON object in {path}")
    return data
