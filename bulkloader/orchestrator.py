import asyncio
from collections.abc import Callable, Mapping, Sequence
import logging
from typing import Any

from bulkloader.errors import SetupError
from bulkloader.executor import RemoteClient, UpsertExecutor
from bulkloader.job_config import JobConfig
from bulkloader.retry import RetryExhaustedError, RetryPolicy, run_with_retries
from bulkloader.schemas import MappedResource, OutcomeLedger, UpsertOutcome
from bulkloader.step_logic import console_progress


logger = logging.getLogger(__name__)

ProgressSink = Callable[[str, int, int], None]
PROGRESS_LABEL = "Creating/updating resources"


class BatchOrchestrator:
    """Apply resources chunk by chunk, at most ``concurrency`` in flight.

    A chunk is dispatched only after the previous one has fully settled.
    The input sequence is never consumed; ``ledger.processed`` is the index
    of the next unapplied resource, so a later run can resume from it.
    """

    def __init__(self, executor: UpsertExecutor, concurrency: int, progress_sink: ProgressSink = console_progress) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.executor = executor
        self.concurrency = concurrency
        self.progress_sink = progress_sink

    async def run(self, resources: Sequence[MappedResource], *, start_index: int = 0) -> OutcomeLedger:
        total = len(resources)
        if not 0 <= start_index <= total:
            raise ValueError(f"start_index {start_index} outside 0..{total}")
        if len({resource.ordinal for resource in resources}) != total:
            raise ValueError("resources must have distinct ordinals")

        ledger = OutcomeLedger(total=total)
        ledger.advance(start_index)

        if start_index == total:
            self.progress_sink(PROGRESS_LABEL, total, total)
            ledger.close()
            return ledger

        try:
            for chunk_start in range(start_index, total, self.concurrency):
                chunk = resources[chunk_start:chunk_start + self.concurrency]
                await asyncio.gather(*(self._apply_and_record(resource, ledger) for resource in chunk))

                ledger.advance(chunk_start + len(chunk))
                self.progress_sink(PROGRESS_LABEL, ledger.processed, total)
        finally:
            ledger.close()

        logger.info(
            "resources applied",
            extra={"total": total, "succeeded": ledger.success_count, "failed": ledger.failure_count},
        )
        return ledger

    async def _apply_and_record(self, resource: MappedResource, ledger: OutcomeLedger) -> None:
        try:
            outcome = await self.executor.apply(resource)
        except Exception as exc:
            logger.exception("unexpected error applying resource", extra={"ordinal": resource.ordinal})
            outcome = UpsertOutcome.failure(resource.ordinal, resource.name, f"{resource.name}: {exc}")
        ledger.record(outcome)


async def load_project(client: RemoteClient, project_name: str, retry_policy: RetryPolicy) -> dict[str, Any]:
    """Upsert the run's project by name; the one failure that aborts a run."""
    try:
        project = await run_with_retries(
            lambda: client.upsert("project", {"name": project_name}, project_name),
            policy=retry_policy,
        )
    except RetryExhaustedError as exc:
        raise SetupError(f"could not load project '{project_name}': {exc}") from exc

    logger.info("using project", extra={"project_id": project.get("id"), "project_name": project_name})
    return project


async def upsert_all_resources(
    resources: Sequence[MappedResource],
    job_config: JobConfig,
    client: RemoteClient,
    project: Mapping[str, Any],
    output_schema: Mapping[str, object],
    *,
    concurrency: int,
    retry_policy: RetryPolicy,
    progress_sink: ProgressSink = console_progress,
) -> OutcomeLedger:
    executor = UpsertExecutor(job_config, client, project, output_schema, retry_policy)
    orchestrator = BatchOrchestrator(executor, concurrency, progress_sink)
    return await orchestrator.run(resources)
