"""End-to-end runs through the registered platform adapters."""

import json
from pathlib import Path

import pytest
import yaml

from platform_runner.cli import main


def write_config(path: Path, python_settings: dict[str, str]) -> Path:
    config = path / "platform_test.yaml"
    config.write_text(
        yaml.safe_dump(
            {
                "platforms": ["vm", "chromium"],
                "timeout": 10,
                "grace_period": 1,
                "define_platforms": [
                    {"name": "Chromium", "identifier": "chromium", "extends": "chrome"}
                ],
                "platform_settings": {
                    "chrome": {
                        **python_settings,
                        "arguments": ["-m", "platform_runner.remote.host"],
                    }
                },
            }
        )
    )
    return config


def test_runs_suites_on_every_platform(
    tmp_path: Path,
    suite_path: Path,
    python_settings: dict[str, str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Each suite runs on the VM and in a custom browser platform."""
    config = write_config(tmp_path, python_settings)

    with pytest.raises(SystemExit) as exc_info:
        main([str(suite_path), "--config", str(config)])

    assert exc_info.value.code == 1
    output = json.loads(capsys.readouterr().out)
    assert output["passed"] == 4
    assert output["failed"] == 2
    assert output["skipped"] == 2
    assert {r["platform"] for r in output["results"]} == {"vm", "chromium"}


def test_suite_selector_limits_platforms(
    tmp_path: Path,
    python_settings: dict[str, str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    """A suite marked for the VM only never starts a browser."""
    config = write_config(tmp_path, python_settings)
    suite = tmp_path / "vm_only_test.py"
    suite.write_text('TEST_ON = "vm"\n\n\ndef test_vm():\n    pass\n')

    with pytest.raises(SystemExit) as exc_info:
        main([str(suite), "--config", str(config)])

    assert exc_info.value.code == 0
    output = json.loads(capsys.readouterr().out)
    assert [(r["platform"], r["test"]) for r in output["results"]] == [
        ("vm", "test_vm")
    ]
