"""Job file loading: which CSV to read and how to apply it to the platform."""

from dataclasses import dataclass
import json
from pathlib import Path

from bulkloader.errors import JobConfigError
from bulkloader.validation import validate


RESOURCE_TYPES = ("product", "thng")

CONFIG_SCHEMA: dict[str, object] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["input", "output", "statsFile"],
    "properties": {
        "input": {
            "type": "object",
            "additionalProperties": False,
            "required": ["data", "schema"],
            "properties": {
                "data": {"type": "string", "minLength": 1},
                "schema": {"type": "string", "minLength": 1},
            },
        },
        "output": {
            "type": "object",
            "additionalProperties": False,
            "required": ["mapping", "schema", "type", "projectName"],
            "properties": {
                "mapping": {"type": "string", "minLength": 1},
                "schema": {"type": "string", "minLength": 1},
                "type": {"type": "string", "enum": list(RESOURCE_TYPES)},
                "projectName": {"type": "string", "minLength": 1},
                "updateKey": {"type": "string", "minLength": 1},
                "defaultRedirectUrl": {"type": "string", "minLength": 1},
                "qrCodes": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["directory"],
                    "properties": {
                        "directory": {"type": "string", "minLength": 1},
                        "size": {"type": "integer", "minimum": 1},
                    },
                },
            },
        },
        "statsFile": {"type": "string", "minLength": 1},
        "concurrency": {"type": "integer", "minimum": 1},
    },
}


@dataclass(frozen=True)
class QrCodeOptions:
    directory: str
    size: int = 300


@dataclass(frozen=True)
class JobConfig:
    input_data: str
    input_schema: str
    output_mapping: str
    output_schema: str
    resource_type: str
    project_name: str
    stats_file: str
    update_key: str = "name"
    default_redirect_url: str | None = None
    qr_codes: QrCodeOptions | None = None
    concurrency: int | None = None

    @property
    def updates_by_name(self) -> bool:
        return self.update_key == "name"

    @classmethod
    def from_dict(cls, raw: dict[str, object], base_dir: Path | None = None) -> "JobConfig":
        violations = validate(CONFIG_SCHEMA, raw)
        if violations:
            raise JobConfigError("invalid job config:\n" + "\n".join(f"- {v}" for v in violations))

        base = base_dir or Path(".")
        source = raw["input"]
        output = raw["output"]
        qr_codes = output.get("qrCodes")

        return cls(
            input_data=str(base / source["data"]),
            input_schema=str(base / source["schema"]),
            output_mapping=str(base / output["mapping"]),
            output_schema=str(base / output["schema"]),
            resource_type=output["type"],
            project_name=output["projectName"],
            stats_file=str(base / raw["statsFile"]),
            update_key=output.get("updateKey", "name"),
            default_redirect_url=output.get("defaultRedirectUrl"),
            qr_codes=QrCodeOptions(
                directory=str(base / qr_codes["directory"]),
                size=qr_codes.get("size", 300),
            ) if qr_codes else None,
            concurrency=raw.get("concurrency"),
        )


def load_json_file(path: str | Path) -> object:
    file_path = Path(path)
    if not file_path.exists():
        raise JobConfigError(f"file not found: {file_path}")
    try:
        with file_path.open("r", encoding="utf-8") as infile:
            return json.load(infile)
    except json.JSONDecodeError as exc:
        raise JobConfigError(f"failed to parse {file_path}: {exc}") from exc


def load_job_config(path: str | Path) -> JobConfig:
    """Load and validate a job file; relative paths resolve against its directory."""
    config_path = Path(path)
    raw = load_json_file(config_path)
    if not isinstance(raw, dict):
        raise JobConfigError(f"job config must be a JSON object: {config_path}")
    return JobConfig.from_dict(raw, base_dir=config_path.parent)
