import json
from pathlib import Path

import pytest

from bulkloader.errors import JobConfigError
from bulkloader.job_config import QrCodeOptions, load_job_config


def write_config(tmp_path: Path, payload: dict) -> Path:
    path = tmp_path / "job.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def base_payload() -> dict:
    return {
        "input": {"data": "data/input.csv", "schema": "data/input.schema.json"},
        "output": {
            "mapping": "data/mapping.json",
            "schema": "data/output.schema.json",
            "type": "product",
            "projectName": "Spring Range",
        },
        "statsFile": "stats.txt",
    }


def test_load_job_config_resolves_paths_against_config_dir(tmp_path: Path) -> None:
    config = load_job_config(write_config(tmp_path, base_payload()))

    assert config.input_data == str(tmp_path / "data" / "input.csv")
    assert config.stats_file == str(tmp_path / "stats.txt")
    assert config.update_key == "name"
    assert config.updates_by_name
    assert config.qr_codes is None


def test_optional_output_settings(tmp_path: Path) -> None:
    payload = base_payload()
    payload["output"].update(
        {
            "updateKey": "gs1:01",
            "defaultRedirectUrl": "https://example.com/{shortId}",
            "qrCodes": {"directory": "qr", "size": 512},
        }
    )
    payload["concurrency"] = 4

    config = load_job_config(write_config(tmp_path, payload))

    assert not config.updates_by_name
    assert config.default_redirect_url == "https://example.com/{shortId}"
    assert config.qr_codes == QrCodeOptions(directory=str(tmp_path / "qr"), size=512)
    assert config.concurrency == 4


def test_unknown_resource_type_is_rejected(tmp_path: Path) -> None:
    payload = base_payload()
    payload["output"]["type"] = "widget"

    with pytest.raises(JobConfigError, match="widget"):
        load_job_config(write_config(tmp_path, payload))


def test_missing_section_is_rejected(tmp_path: Path) -> None:
    payload = base_payload()
    del payload["statsFile"]

    with pytest.raises(JobConfigError, match="statsFile"):
        load_job_config(write_config(tmp_path, payload))


def test_missing_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(JobConfigError, match="file not found"):
        load_job_config(tmp_path / "missing.json")


def test_malformed_json_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "job.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(JobConfigError, match="failed to parse"):
        load_job_config(path)
