import asyncio
from collections.abc import Generator
import json
from pathlib import Path
from typing import Any

import pytest

from bulkloader.config import Settings
from bulkloader.database import build_session_factory
from bulkloader.job_config import JobConfig
from bulkloader.pipeline import PipelineRunner


class FakePlatformClient:
    """In-memory stand-in for PlatformClient.

    ``failures`` maps ``(method, resource_name)`` to exceptions raised on
    successive calls before the call starts succeeding.
    """

    def __init__(self, *, delay: float = 0, failures: dict[tuple[str, str], list[Exception]] | None = None) -> None:
        self.delay = delay
        self.failures = failures or {}
        self.calls: list[tuple[str, str]] = []
        self.resources: dict[str, dict[str, Any]] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def __aenter__(self) -> "FakePlatformClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    async def upsert(self, resource_type: str, document: dict[str, Any], match_key: Any) -> dict[str, Any]:
        key = json.dumps(match_key, sort_keys=True)
        await self._enter("upsert", str(document.get("name")))
        try:
            existing = self.resources.get(key)
            resource_id = existing["id"] if existing else f"{resource_type}-{len(self.resources) + 1}"
            self.resources[key] = {**document, "id": resource_id}
            return self.resources[key]
        finally:
            self.in_flight -= 1

    async def update_scope(self, resource_type: str, resource_id: str, project_id: str) -> dict[str, Any]:
        await self._enter("update_scope", resource_id)
        self.in_flight -= 1
        return {"id": resource_id, "scopes": {"projects": [project_id]}}

    async def upsert_secondary(self, resource_type: str, resource_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        await self._enter("upsert_secondary", resource_id)
        self.in_flight -= 1
        return {"shortId": f"s{resource_id}", "shortDomain": "tn.gg", **payload}

    async def fetch_bytes(self, url: str) -> bytes:
        await self._enter("fetch_bytes", url)
        self.in_flight -= 1
        return b"\x89PNG fake"

    async def _enter(self, method: str, subject: str) -> None:
        self.calls.append((method, subject))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(self.delay)

        planned = self.failures.get((method, subject))
        if planned:
            self.in_flight -= 1
            raise planned.pop(0)


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="bulkloader",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        operator_api_key="test-key",
        api_url="https://api.example.test",
        batch_concurrency=2,
        max_attempts=2,
        retry_backoff_seconds=0,
        retry_max_backoff_seconds=0,
        request_timeout_seconds=5,
    )


@pytest.fixture()
def make_client() -> type[FakePlatformClient]:
    return FakePlatformClient


@pytest.fixture()
def fake_client() -> FakePlatformClient:
    return FakePlatformClient()


@pytest.fixture()
def runner(test_settings: Settings, fake_client: FakePlatformClient) -> Generator[PipelineRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)
    yield PipelineRunner(test_settings, session_factory, client_factory=lambda: fake_client, progress_sink=lambda *args: None)


@pytest.fixture()
def job_config(temp_workspace: Path) -> JobConfig:
    data_dir = temp_workspace / "data"
    (data_dir / "input.schema.json").write_text(
        json.dumps(
            {
                "type": "object",
                "required": ["Name"],
                "properties": {
                    "Name": {"type": "string", "minLength": 1},
                    "Colour": {"type": "string"},
                    "Batch": {"type": "string"},
                },
            }
        ),
        encoding="utf-8",
    )
    (data_dir / "mapping.json").write_text(
        json.dumps({"Name": "name", "Colour": "customFields.colour", "Batch": "tags[0]"}),
        encoding="utf-8",
    )
    (data_dir / "output.schema.json").write_text(
        json.dumps({"type": "object", "required": ["name"], "properties": {"name": {"type": "string"}}}),
        encoding="utf-8",
    )
    return JobConfig(
        input_data=str(data_dir / "input.csv"),
        input_schema=str(data_dir / "input.schema.json"),
        output_mapping=str(data_dir / "mapping.json"),
        output_schema=str(data_dir / "output.schema.json"),
        resource_type="product",
        project_name="Spring Range",
        stats_file=str(temp_workspace / "outputs" / "stats.txt"),
    )
