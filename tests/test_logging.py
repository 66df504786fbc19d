"""Unit tests for iecv_survival.logging_config and iecv_survival.timing modules."""
import logging
import warnings
import pytest
from iecv_survival.logging_config import (
    ProgressLogger,
    WarningLogger,
    capture_warnings,
    log_performance,
    setup_logging,
)
from iecv_survival.timing import Timer, log_execution_time


@pytest.fixture
def logger(tmp_path):
    log = setup_logging(run_type="sample", console_output=False, log_dir=str(tmp_path))
    yield log
    for handler in list(log.handlers):
        handler.close()
    log.handlers.clear()
    log.propagate = True


def _read(tmp_path, prefix):
    files = list(tmp_path.glob(f"{prefix}_*.log"))
    assert len(files) == 1
    for handler in logging.getLogger("iecv_survival").handlers:
        handler.flush()
    return files[0].read_text(encoding="utf-8")


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_three_log_files(self, logger, tmp_path):
        names = sorted(p.name.split("_")[0] for p in tmp_path.glob("*.log"))
        assert names == ["main", "performance", "warnings"]

    def test_module_loggers_propagate(self, logger, tmp_path):
        logging.getLogger("iecv_survival.train").warning("Fold North failed")

        assert "Fold North failed" in _read(tmp_path, "main")
        assert "Fold North failed" in _read(tmp_path, "warnings")
        assert "Fold North failed" not in _read(tmp_path, "performance")

    def test_performance_routed(self, logger, tmp_path):
        log_performance(logger, "Fold East completed", concordance=0.712345, n_test=120)

        text = _read(tmp_path, "performance")
        assert "Fold East completed | concordance=0.7123 | n_test=120" in text

    def test_repeated_setup_replaces_handlers(self, logger, tmp_path):
        again = setup_logging(run_type="sample", console_output=False, log_dir=str(tmp_path / "second"))
        assert len(again.handlers) == 3


class TestWarningCapture:
    """Tests for WarningLogger and capture_warnings."""

    @pytest.mark.parametrize("message,category", [
        ("Optimization did not converge", "convergence"),
        ("overflow encountered in exp", "numerical"),
        ("Perfect separation detected", "separation"),
        ("2 constant column(s) will get a zero coefficient", "data"),
        ("something unexpected", "other"),
    ])
    def test_categorize(self, message, category):
        assert WarningLogger(logging.getLogger("test")).categorize_warning(message) == category

    def test_capture_counts(self, logger, tmp_path):
        with capture_warnings(logger) as captured:
            warnings.warn("overflow encountered in exp", RuntimeWarning)
            warnings.warn("Newton-Raphson did not converge")

        assert captured.summary() == {"numerical": 1, "convergence": 1}
        assert "[NUMERICAL] RuntimeWarning: overflow" in _read(tmp_path, "warnings")

    def test_showwarning_restored(self, logger):
        before = warnings.showwarning
        with capture_warnings(logger):
            pass
        assert warnings.showwarning is before


class TestTiming:
    """Tests for Timer and log_execution_time."""

    def test_timer_duration(self, logger, tmp_path):
        with Timer(logger, "Fold West") as timer:
            assert timer.elapsed() >= 0.0

        assert timer.duration >= 0.0
        assert "Completed: Fold West" in _read(tmp_path, "performance")

    def test_timer_reraises(self, logger, tmp_path):
        with pytest.raises(RuntimeError):
            with Timer(logger, "Broken fold"):
                raise RuntimeError("boom")
        assert "Broken fold failed" in _read(tmp_path, "warnings")

    def test_decorator(self, logger, tmp_path):
        @log_execution_time(logger)
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
        assert "Completed: add" in _read(tmp_path, "performance")

    def test_progress_logger(self, logger, tmp_path):
        progress = ProgressLogger(logger, total=3, desc="IECV folds")
        progress.update(1, metrics={"fold": "North", "concordance": 0.71})

        assert "IECV folds: 1/3 (33.3%) | fold=North, concordance=0.7100" in _read(tmp_path, "main")
