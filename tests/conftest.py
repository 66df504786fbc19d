"""Pytest configuration and shared fixtures for IECV tests.

The synthetic cohort generator lives here so that test data never ships with the
package. Cohorts are fully determined by their seed.
"""
import pytest
import pandas as pd
import numpy as np

from iecv_survival.config import AnalysisConfig, IECVConfig, ModelHyperparameters


REGIONS = ("East", "North", "West")
SEXES = ("F", "M")
SMOKING = ("current", "former", "never")
QUINTILES = (1, 2, 3, 4, 5)


def make_cohort(
    n: int = 1000,
    regions=REGIONS,
    seed: int = 0,
    missing_rate: float = 0.03,
) -> pd.DataFrame:
    """Synthetic cohort with primary and competing events and administrative follow-up.

    Every categorical level is present in every region, so no held-out region
    can present a level unseen in the others.

    Args:
        n: Number of subjects
        regions: Cluster labels
        seed: Random seed
        missing_rate: Share of missing values in bmi, systolic_bp and smoking_status

    Returns:
        DataFrame in the default DataConfig layout, event coded 0/1/2
    """
    rng = np.random.default_rng(seed)
    region = rng.choice(np.asarray(regions), size=n)
    sex = rng.choice(np.asarray(SEXES), size=n)
    smoking = rng.choice(np.asarray(SMOKING), size=n, p=[0.2, 0.3, 0.5])
    quintile = rng.choice(np.asarray(QUINTILES), size=n)

    for r in regions:
        members = np.flatnonzero(region == r)
        for levels, column in ((SEXES, sex), (SMOKING, smoking), (QUINTILES, quintile)):
            column[members[:len(levels)]] = levels

    age = rng.normal(60, 10, size=n)
    bmi = rng.normal(27, 4, size=n)
    sbp = rng.normal(135, 18, size=n)
    chol = rng.normal(4.2, 1.0, size=n)

    region_effect = {r: e for r, e in zip(regions, np.linspace(-0.2, 0.2, len(regions)))}
    lp = (
        0.05 * (age - 60)
        + 0.03 * (bmi - 27)
        + 0.01 * (sbp - 135)
        + 0.2 * (chol - 4.2)
        + 0.3 * (sex == "M")
        + 0.6 * (smoking == "current")
        + 0.2 * (smoking == "former")
        + 0.1 * (quintile - 3)
        + np.array([region_effect[r] for r in region])
    )
    t_event = rng.exponential(1.0 / (1e-4 * np.exp(lp)))
    t_competing = rng.exponential(1.0 / 5e-5, size=n)
    t_censor = rng.uniform(365, 3000, size=n)

    times = np.column_stack([t_event, t_competing, t_censor])
    first = times.argmin(axis=1)
    time = np.ceil(times.min(axis=1))
    event = np.select([first == 0, first == 1], [1, 2], default=0)

    df = pd.DataFrame({
        "patient_id": np.arange(1, n + 1),
        "region": region,
        "time_days": time,
        "event": event,
        "age": age,
        "bmi": bmi,
        "systolic_bp": sbp,
        "cholesterol_ratio": chol,
        "sex": sex,
        "smoking_status": smoking.astype(object),
        "deprivation_quintile": quintile,
    })
    for col in ("bmi", "systolic_bp", "smoking_status"):
        mask = rng.random(n) < missing_rate
        df.loc[mask, col] = np.nan
    return df


@pytest.fixture(scope="session")
def cohort():
    """1000 subjects, 3 regions, events coded {0, 1, 2}, some missing covariates."""
    return make_cohort()


@pytest.fixture
def cohort_factory():
    """Access to the generator for tests that need a variant cohort."""
    return make_cohort


@pytest.fixture
def fast_config():
    """Default configuration with a short regularization path for quick fits."""
    return IECVConfig(
        hyperparameters=ModelHyperparameters(n_alphas=10),
        analysis=AnalysisConfig(inner_cv_folds=3),
    )


@pytest.fixture
def sample_structured_y():
    """Small structured survival array.

    Returns:
        np.ndarray: Structured array with dtype=[('event', bool), ('time', float)]
    """
    return np.array(
        [(True, 120.0), (False, 2190.0), (True, 60.0), (False, 1800.0), (True, 900.0)],
        dtype=[("event", bool), ("time", float)]
    )


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """Reset the MLflow tracking URI after each test."""
    import mlflow
    yield
    mlflow.set_tracking_uri(None)


@pytest.fixture(scope="session")
def design(cohort):
    """Prepared, imputed and encoded cohort.

    Returns:
        dict with subjects, schema, X (DataFrame) and y (structured array)
    """
    from iecv_survival.config import DataConfig
    from iecv_survival.data import prepare_subjects, to_structured_y
    from iecv_survival.encoding import fit_schema, transform
    from iecv_survival.imputation import SimpleImputationAdapter

    data = DataConfig()
    subjects = prepare_subjects(cohort).reset_index(drop=True)
    adapter = SimpleImputationAdapter(data.continuous_features, data.categorical_features)
    subjects = adapter.complete(subjects)
    schema = fit_schema(subjects, data.continuous_features, data.categorical_features)
    return {
        "subjects": subjects,
        "schema": schema,
        "X": transform(schema, subjects),
        "y": to_structured_y(subjects, data),
    }


@pytest.fixture(scope="session")
def fitted_model(design):
    """Lasso Cox model fitted once on the whole synthetic cohort."""
    from iecv_survival.models import PenalizedCoxTrainer

    trainer = PenalizedCoxTrainer(l1_ratio=1.0, n_alphas=10, inner_cv_folds=3)
    return trainer.fit(design["X"], design["y"], design["schema"], seed=11)
