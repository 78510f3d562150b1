from dataclasses import dataclass, field


@dataclass(frozen=True)
class SourceRecord:
    ordinal: int
    record: dict[str, str]


@dataclass(frozen=True)
class InvalidRecord:
    record_index: int
    record: dict[str, str]
    reason: str


@dataclass(frozen=True)
class MappedResource:
    ordinal: int
    document: dict[str, object]

    @property
    def name(self) -> str:
        return str(self.document.get("name", ""))


@dataclass(frozen=True)
class UpsertOutcome:
    ordinal: int
    name: str
    status: str
    remote_id: str | None = None
    reason: str | None = None
    short_id: str | None = None
    artifact_path: str | None = None
    warnings: tuple[str, ...] = ()
    attempts: dict[str, int] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def success(cls, ordinal: int, name: str, remote_id: str, **kwargs) -> "UpsertOutcome":
        return cls(ordinal=ordinal, name=name, status="succeeded", remote_id=remote_id, **kwargs)

    @classmethod
    def failure(cls, ordinal: int, name: str, reason: str, **kwargs) -> "UpsertOutcome":
        return cls(ordinal=ordinal, name=name, status="failed", reason=reason, **kwargs)


class OutcomeLedger:
    """Aggregate success/failure record for one run.

    Only ``record`` writes to the ledger. It never awaits, so concurrent
    executor completions on one event loop cannot interleave inside it.
    Failure messages keep completion order; ``outcomes`` is keyed by the
    source record ordinal.
    """

    def __init__(self, total: int = 0) -> None:
        self.total = total
        self.success_count = 0
        self.failure_count = 0
        self.failure_messages: list[str] = []
        self.outcomes: dict[int, UpsertOutcome] = {}
        self.processed = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def record(self, outcome: UpsertOutcome) -> None:
        if self._closed:
            raise RuntimeError("ledger is closed")
        if outcome.ordinal in self.outcomes:
            raise ValueError(f"outcome already recorded for record {outcome.ordinal}")

        self.outcomes[outcome.ordinal] = outcome
        if outcome.succeeded:
            self.success_count += 1
        else:
            self.failure_count += 1
            self.failure_messages.append(outcome.reason or "unknown error")

    def advance(self, processed: int) -> None:
        if processed < self.processed:
            raise ValueError("processed count cannot go backwards")
        self.processed = processed

    def close(self) -> None:
        self._closed = True

    def failures(self) -> list[UpsertOutcome]:
        return [self.outcomes[ordinal] for ordinal in sorted(self.outcomes) if not self.outcomes[ordinal].succeeded]


@dataclass(frozen=True)
class RunResult:
    run_id: int
    run_key: str
    status: str
    total_records: int
    valid_records: int
    invalid_records: int
    success_count: int
    failure_count: int
    stats_path: str | None
    report_path: str | None
    reused_existing_run: bool
