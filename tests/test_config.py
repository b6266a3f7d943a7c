"""Tests for the config loader and schema validation.

Covers loading from disk, defaults when no file exists, actionable
validation messages, the trust stage chain and hot reload.
"""

import os
from pathlib import Path

import pytest
import yaml

from boxzero.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    reset_config,
    validate_config_file,
)
from boxzero.config_schema import AppConfig, EnsembleWeights, TrustConfig
from boxzero.core.errors import ConfigLoadError, ConfigValidationError

# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_load_valid_file(config_file: Path):
    config = load_config(config_file)

    assert config.ensemble.max_concurrent_llm == 2
    assert config.llm.model == "claude-haiku-4-5-20251001"
    assert config.llm.request_timeout_seconds == 5
    # Sections absent from the file keep their defaults
    assert config.ensemble.default_weights.tier1 == 0.5
    assert config.trust.stages["training_wheels"].auto_approve_threshold == 0.95


def test_missing_default_file_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("BOXZERO_CONFIG_PATH", raising=False)

    config = load_config()

    assert config == AppConfig()
    assert config.ensemble.auto_execute_threshold == 0.85


def test_missing_explicit_file_raises(tmp_path: Path):
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "nope.yaml")


def test_missing_env_file_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BOXZERO_CONFIG_PATH", str(tmp_path / "nope.yaml"))
    with pytest.raises(ConfigLoadError):
        get_config()


def test_empty_file_uses_defaults(temp_config_dir: Path):
    path = temp_config_dir / "config.yaml"
    path.write_text("")
    assert load_config(path) == AppConfig()


def test_invalid_yaml_raises(temp_config_dir: Path):
    path = temp_config_dir / "config.yaml"
    path.write_text("ensemble: [unclosed")
    with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
        load_config(path)


def test_non_mapping_raises(temp_config_dir: Path):
    path = temp_config_dir / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigLoadError, match="must be a YAML mapping"):
        load_config(path)


# ---------------------------------------------------------------------------
# Validation messages
# ---------------------------------------------------------------------------


def _write(temp_config_dir: Path, data: dict) -> Path:
    path = temp_config_dir / "config.yaml"
    path.write_text(yaml.dump(data, default_flow_style=False))
    return path


def test_out_of_range_reports_field_path(temp_config_dir: Path):
    path = _write(temp_config_dir, {"ensemble": {"llm_fallback_threshold": 1.5}})

    with pytest.raises(ConfigValidationError) as exc_info:
        load_config(path)

    message = str(exc_info.value)
    assert "ensemble.llm_fallback_threshold" in message
    assert "out of range" in message


def test_wrong_type_reports_field_path(temp_config_dir: Path):
    path = _write(temp_config_dir, {"queue": {"expire_after_days": "soon"}})

    with pytest.raises(ConfigValidationError, match="queue.expire_after_days' must be an integer"):
        load_config(path)


def test_newer_schema_version_rejected(temp_config_dir: Path):
    path = _write(temp_config_dir, {"schema_version": 99})
    with pytest.raises(ConfigValidationError, match="newer than supported"):
        load_config(path)


def test_db_path_traversal_rejected(temp_config_dir: Path):
    path = _write(temp_config_dir, {"storage": {"db_path": "../outside.db"}})
    with pytest.raises(ConfigValidationError, match="path traversal"):
        load_config(path)


def test_all_zero_weights_rejected():
    with pytest.raises(ValueError, match="At least one ensemble weight"):
        EnsembleWeights(tier1=0, tier2=0, tier3=0)


# ---------------------------------------------------------------------------
# Trust stage chain
# ---------------------------------------------------------------------------


def _stages(**overrides: dict) -> dict:
    stages = {name: row.model_dump() for name, row in TrustConfig().stages.items()}
    for name, row in overrides.items():
        stages[name].update(row)
    return {"stages": stages}


def test_default_stage_chain_is_valid():
    trust = TrustConfig()
    assert trust.stages["training_wheels"].next == "building_confidence"
    assert trust.stages["building_confidence"].required_interactions == 200
    assert trust.stages["earned_autonomy"].next is None


def test_backward_stage_rejected():
    with pytest.raises(ValueError, match="may only advance forward"):
        TrustConfig(**_stages(building_confidence={"next": "training_wheels"}))


def test_missing_stage_rejected():
    data = _stages()
    del data["stages"]["earned_autonomy"]
    with pytest.raises(ValueError, match="missing from table"):
        TrustConfig(**data)


def test_next_without_requirement_rejected():
    with pytest.raises(ValueError, match="no required_interactions"):
        TrustConfig(**_stages(training_wheels={"required_interactions": None}))


# ---------------------------------------------------------------------------
# Singleton and reload
# ---------------------------------------------------------------------------


def test_get_config_is_cached(set_config_env):
    first = get_config()
    assert get_config() is first

    reset_config()
    assert get_config() is not first


def test_reload_picks_up_changes(set_config_env, config_file: Path):
    assert get_config().ensemble.max_concurrent_llm == 2
    assert reload_config_if_changed() is False

    config_file.write_text("ensemble:\n  max_concurrent_llm: 7\n")
    mtime = config_file.stat().st_mtime + 10
    os.utime(config_file, (mtime, mtime))

    assert reload_config_if_changed() is True
    assert get_config().ensemble.max_concurrent_llm == 7


def test_reload_keeps_old_config_when_invalid(set_config_env, config_file: Path):
    original = get_config()

    config_file.write_text("ensemble:\n  max_concurrent_llm: 0\n")
    mtime = config_file.stat().st_mtime + 10
    os.utime(config_file, (mtime, mtime))

    assert reload_config_if_changed() is False
    assert get_config() is original


def test_validate_config_file(config_file: Path, temp_config_dir: Path):
    ok, message = validate_config_file(config_file)
    assert ok is True
    assert "Max concurrent LLM calls: 2" in message

    bad = _write(temp_config_dir, {"ensemble": {"max_concurrent_llm": 0}})
    ok, message = validate_config_file(bad)
    assert ok is False
    assert message.startswith("Validation error")
