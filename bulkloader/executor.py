"""Apply one mapped resource document to the platform."""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import logging
from pathlib import Path
import re
from typing import Any, Protocol, TypeVar

from bulkloader.errors import RecordValidationError
from bulkloader.job_config import JobConfig
from bulkloader.retry import RetryExhaustedError, RetryPolicy, run_with_retries
from bulkloader.schemas import MappedResource, UpsertOutcome
from bulkloader.validation import Validator, ensure_valid, validate


logger = logging.getLogger(__name__)
T = TypeVar("T")

REDIRECTION_FIELD = "redirection"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class RemoteClient(Protocol):
    async def upsert(self, resource_type: str, document: dict[str, Any], match_key: str | dict[str, str]) -> dict[str, Any]: ...

    async def update_scope(self, resource_type: str, resource_id: str, project_id: str) -> dict[str, Any]: ...

    async def upsert_secondary(self, resource_type: str, resource_id: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    async def fetch_bytes(self, url: str) -> bytes: ...


class UpsertExecutor:
    def __init__(
        self,
        job_config: JobConfig,
        client: RemoteClient,
        project: Mapping[str, Any],
        output_schema: Mapping[str, object],
        retry_policy: RetryPolicy,
        validator: Validator = validate,
    ) -> None:
        self.job_config = job_config
        self.client = client
        self.project_id = str(project["id"])
        self.output_schema = output_schema
        self.retry_policy = retry_policy
        self.validator = validator

    async def apply(self, resource: MappedResource) -> UpsertOutcome:
        name = resource.name
        attempts: dict[str, int] = {}

        try:
            ensure_valid(self.output_schema, resource.document, f"record {resource.ordinal} ({name})", self.validator)
            match_key = self.update_key(resource.document)
        except (RecordValidationError, ValueError) as exc:
            logger.warning("resource rejected before upsert", extra={"ordinal": resource.ordinal, "error": str(exc)})
            return UpsertOutcome.failure(resource.ordinal, name, str(exc), attempts=attempts)

        resource_type = self.job_config.resource_type
        payload = {key: value for key, value in resource.document.items() if key != REDIRECTION_FIELD}

        try:
            remote = await self._call(
                "upsert", attempts, lambda: self.client.upsert(resource_type, payload, match_key)
            )
            remote_id = str(remote["id"])
            await self._call(
                "scope", attempts, lambda: self.client.update_scope(resource_type, remote_id, self.project_id)
            )
        except RetryExhaustedError as exc:
            logger.warning(
                "resource upsert failed",
                extra={"ordinal": resource.ordinal, "attempts": exc.attempts, "error": str(exc)},
            )
            return UpsertOutcome.failure(resource.ordinal, name, f"{name}: {exc}", attempts=attempts)

        redirect_url = resource.document.get(REDIRECTION_FIELD) or self.job_config.default_redirect_url
        if not redirect_url:
            return UpsertOutcome.success(resource.ordinal, name, remote_id, attempts=attempts)

        try:
            redirector = await self._call(
                "redirector",
                attempts,
                lambda: self.client.upsert_secondary(
                    resource_type, remote_id, {"defaultRedirectUrl": redirect_url}
                ),
            )
        except RetryExhaustedError as exc:
            return UpsertOutcome.failure(
                resource.ordinal,
                name,
                f"{name}: redirector failed: {exc}",
                remote_id=remote_id,
                attempts=attempts,
            )

        short_id = redirector.get("shortId")
        warnings: list[str] = []
        artifact_path = None
        if short_id and self.job_config.qr_codes:
            try:
                artifact_path = await self._save_qr_code(name, short_id, redirector.get("shortDomain"))
            except Exception as exc:
                # The upsert already stands; a missing QR image is only reported.
                logger.warning("qr code download failed", extra={"ordinal": resource.ordinal, "error": str(exc)})
                warnings.append(f"{name}: qr code download failed: {exc}")

        return UpsertOutcome.success(
            resource.ordinal,
            name,
            remote_id,
            short_id=short_id,
            artifact_path=artifact_path,
            warnings=tuple(warnings),
            attempts=attempts,
        )

    def update_key(self, document: Mapping[str, Any]) -> str | dict[str, str]:
        """Name for name-keyed jobs, otherwise ``{update_key: identifiers[update_key]}``."""
        if self.job_config.updates_by_name:
            return str(document["name"])

        key = self.job_config.update_key
        identifiers = document.get("identifiers") or {}
        if not identifiers.get(key):
            raise ValueError(f"resource has no identifiers.{key} to update by")
        return {key: identifiers[key]}

    async def _call(self, step: str, attempts: dict[str, int], fn: Callable[[], Awaitable[T]]) -> T:
        async def attempt_once() -> T:
            attempts[step] = attempts.get(step, 0) + 1
            return await fn()

        return await run_with_retries(
            attempt_once,
            policy=self.retry_policy,
            on_attempt_failure=lambda attempt, exc: logger.debug(
                "remote call attempt failed", extra={"step": step, "attempt": attempt, "error": str(exc)}
            ),
        )

    async def _save_qr_code(self, name: str, short_id: str, short_domain: str | None) -> str:
        options = self.job_config.qr_codes
        domain = short_domain or "tn.gg"
        url = f"https://{domain}/{short_id}.png?w={options.size}&h={options.size}"
        image = await self.client.fetch_bytes(url)

        safe_name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("_") or "resource"
        target = Path(options.directory) / f"{safe_name}-{short_id}.png"
        await asyncio.to_thread(_write_artifact, target, image)
        return str(target)


def _write_artifact(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
