"""Unit tests for iecv_survival.tracking module."""
import logging
import mlflow
import pytest
import numpy as np
from iecv_survival.tracking import (
    EXPERIMENT_NAME,
    safe_log_artifact,
    safe_log_metrics,
    safe_log_params,
    start_run,
)
from iecv_survival.train import track_run


class TestSafeLogging:
    """MLflow wrappers never raise."""

    def test_metrics_and_params(self, tmp_path):
        with start_run("unit", tags={"run_type": "sample"}, tracking_dir=str(tmp_path)) as run:
            assert safe_log_params({"fold_l1_ratio": 0.05, "clusters": ["East", "West"]})
            assert safe_log_metrics({"pooled_concordance": 0.71, "brier": np.nan})

        data = mlflow.get_run(run.info.run_id).data
        assert data.metrics == {"pooled_concordance": 0.71}
        assert data.params["clusters"] == "['East', 'West']"
        assert data.tags["run_type"] == "sample"

    def test_missing_artifact(self, tmp_path, caplog):
        logger = logging.getLogger("tracking_test")
        with caplog.at_level(logging.WARNING, logger="tracking_test"):
            assert not safe_log_artifact(str(tmp_path / "absent.csv"), logger=logger)
        assert "Artifact not found" in caplog.text


@pytest.mark.integration
class TestTrackRun:
    """Tests for track_run function."""

    def test_run_logged(self, fast_config, cohort, tmp_path):
        from iecv_survival.train import run_iecv, write_outputs

        result = run_iecv(cohort, fast_config)
        outputs = write_outputs(result, str(tmp_path / "artifacts"))
        track_run(result, outputs, tracking_dir=str(tmp_path / "mlruns"))

        experiment = mlflow.get_experiment_by_name(EXPERIMENT_NAME)
        runs = mlflow.search_runs(experiment_ids=[experiment.experiment_id])
        assert len(runs) == 1
        assert runs["params.n_clusters"].iloc[0] == "3"
        assert 0.5 < runs["metrics.pooled_concordance"].iloc[0] < 1.0
