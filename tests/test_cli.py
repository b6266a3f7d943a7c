"""Tests for the click CLI using CliRunner."""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from boxzero.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_config(temp_config_dir: Path, data_dir: Path) -> Path:
    path = temp_config_dir / "config.yaml"
    path.write_text(yaml.dump({"storage": {"db_path": str(data_dir / "cli.db")}}))
    return path


def test_validate_config_ok(runner: CliRunner, config_file: Path):
    result = runner.invoke(cli, ["validate-config", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "Configuration valid" in result.output


def test_validate_config_invalid(runner: CliRunner, temp_config_dir: Path):
    bad = temp_config_dir / "bad.yaml"
    bad.write_text("ensemble:\n  llm_fallback_threshold: 3\n")

    result = runner.invoke(cli, ["validate-config", "--config", str(bad)])

    assert result.exit_code == 1
    assert "llm_fallback_threshold" in result.output


def test_trust_stages_table(runner: CliRunner, cli_config: Path):
    result = runner.invoke(cli, ["trust-stages", "--config", str(cli_config)])
    assert result.exit_code == 0
    assert "training_wheels" in result.output
    assert "earned_autonomy" in result.output


def test_predict_without_llm(runner: CliRunner, cli_config: Path, tmp_path: Path):
    emails = tmp_path / "emails.json"
    emails.write_text(json.dumps({"emails": [{"id": "m1", "from": "new@example.com", "subject": "Hi"}]}))

    result = runner.invoke(cli, ["predict", str(emails), "--user-id", "u1", "--no-llm", "--config", str(cli_config)])

    assert result.exit_code == 0, result.output
    assert "keep" in result.output
    assert "1 predictions" in result.output


def test_predict_rejects_bad_json(runner: CliRunner, cli_config: Path, tmp_path: Path):
    emails = tmp_path / "emails.json"
    emails.write_text("{not json")

    result = runner.invoke(cli, ["predict", str(emails), "--user-id", "u1", "--no-llm", "--config", str(cli_config)])

    assert result.exit_code == 1
    assert "Could not read" in result.output
