import pytest
import structlog

from evmlift.config import AnalysisConfig, load_config
from evmlift.logs import configure_logging


def test_defaults():
    config = AnalysisConfig()
    assert config.max_blocks == 10000
    assert config.workers == 1
    assert not config.solver_pruning
    assert config.to_dict()["max_expression_length"] == 240


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="bogus"):
        AnalysisConfig.from_mapping({"bogus": 1})


def test_limits_must_be_positive():
    with pytest.raises(ValueError):
        AnalysisConfig(max_blocks=0)
    with pytest.raises(ValueError):
        AnalysisConfig(max_loop_widenings=-1)
    assert AnalysisConfig(max_loop_widenings=0).max_loop_widenings == 0


def test_from_env():
    config = AnalysisConfig.from_env(
        {"EVMLIFT_MAX_BLOCKS": "500", "EVMLIFT_SOLVER_PRUNING": "yes", "EVMLIFT_WORKERS": "0x4", "HOME": "/root"}
    )
    assert config.max_blocks == 500
    assert config.solver_pruning
    assert config.workers == 4


def test_from_env_rejects_bad_values():
    with pytest.raises(ValueError):
        AnalysisConfig.from_env({"EVMLIFT_SOLVER_PRUNING": "maybe"})
    with pytest.raises(ValueError):
        AnalysisConfig.from_env({"EVMLIFT_MAX_BLOCKS": "many"})


def test_replace_returns_a_new_config():
    config = AnalysisConfig()
    smaller = config.replace(max_blocks=5)
    assert smaller.max_blocks == 5
    assert config.max_blocks == 10000
    with pytest.raises(ValueError):
        config.replace(max_blocks=True)


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "evmlift.yaml"
    path.write_text("analysis:\n  max_blocks: 7\n  workers: 2\n")
    config = load_config(str(path))
    assert config.max_blocks == 7
    assert config.workers == 2

    flat = tmp_path / "flat.yaml"
    flat.write_text("max_statements: 12\n")
    assert load_config(str(flat)).max_statements == 12


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_load_config_without_path_reads_environment(monkeypatch):
    monkeypatch.setenv("EVMLIFT_MAX_FORK_DEPTH", "9")
    assert load_config().max_fork_depth == 9


def test_configure_logging():
    configure_logging("WARNING", json=True, force=True)
    try:
        assert structlog.is_configured()
        # A second call without force keeps the existing setup
        configure_logging("DEBUG")
        assert structlog.is_configured()
    finally:
        structlog.reset_defaults()
