"""Unit tests for the iecv_survival.main command line."""
import argparse
import logging
import sys
import pytest
from iecv_survival.config import ExecutionMode, IECVConfig
from iecv_survival.main import build_config, main


def _args(**overrides):
    defaults = dict(
        config=None, run_type="sample", execution_mode=None, n_jobs=-1, verbose=0,
        seed=None, horizon=None, mlflow=False, abort_on_convergence_failure=False,
    )
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


class TestBuildConfig:
    """Tests for build_config function."""

    def test_run_type_preset(self):
        config = build_config(_args(run_type="production"))
        assert config.run_type == "production"
        assert config.hyperparameters.n_alphas == 50

    def test_overrides(self):
        config = build_config(_args(
            execution_mode="mp", n_jobs=2, seed=7, horizon=1825.0,
            mlflow=True, abort_on_convergence_failure=True,
        ))

        assert config.execution.mode is ExecutionMode.MULTIPROCESSING
        assert config.execution.n_jobs == 2
        assert config.analysis.random_state == 7
        assert config.analysis.prediction_horizon == 1825.0
        assert config.analysis.track_mlflow
        assert config.analysis.abort_on_convergence_failure

    def test_pandas_mode_forces_sequential(self):
        config = build_config(_args(execution_mode="pandas", n_jobs=8))
        assert not config.execution.is_parallel()

    def test_config_file(self, tmp_path):
        path = tmp_path / "config.json"
        IECVConfig(description="from file").save(str(path))

        config = build_config(_args(config=str(path), run_type="production"))

        assert config.description == "from file"
        assert config.run_type == "production"


class TestMain:
    """Tests for the console entry point."""

    def test_missing_input_exit_code(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", [
            "iecv-survival", "--input", str(tmp_path / "absent.csv"),
            "--output-dir", str(tmp_path / "out"), "--log-level", "ERROR",
        ])
        try:
            assert main() == 1
            assert list((tmp_path / "out" / "logs").glob("main_*.log"))
        finally:
            log = logging.getLogger("iecv_survival")
            for handler in list(log.handlers):
                handler.close()
            log.handlers.clear()
            log.propagate = True

    def test_input_required(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["iecv-survival"])
        with pytest.raises(SystemExit):
            main()
