from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional
import logging
import numpy as np
import pandas as pd
from sklearn.model_selection import StratifiedKFold

from iecv_survival.errors import DataIntegrityError


logger = logging.getLogger("iecv_survival.validation")


@dataclass
class CVConfig:
    """Configuration for the internal cross-validation of the trainer.

    Attributes:
        n_splits: Number of folds for cross-validation. Defaults to 5
        random_state: Random seed for reproducibility. Defaults to 42
        shuffle: Whether to shuffle data before splitting. Defaults to True
    """
    n_splits: int = 5
    random_state: int = 42
    shuffle: bool = True


def event_balanced_splitter(y_struct, cfg: CVConfig):
    """Create stratified K-fold splits balanced on event indicator.

    Generates cross-validation splits that maintain the proportion of events
    (vs censored observations) in each fold.

    Args:
        y_struct: Structured array with dtype=[('event', bool), ('time', float)]
        cfg: CVConfig instance with cross-validation parameters

    Returns:
        List of (train_indices, test_indices) tuples for each fold

    Example:
        >>> cfg = CVConfig(n_splits=5, random_state=42)
        >>> splits = event_balanced_splitter(y, cfg)
        >>> for fold_idx, (train_idx, test_idx) in enumerate(splits):
        ...     print(f"Fold {fold_idx}: {len(train_idx)} train, {len(test_idx)} test")
    """
    events = y_struct["event"].astype(int)
    skf = StratifiedKFold(
        n_splits=cfg.n_splits, shuffle=cfg.shuffle, random_state=cfg.random_state
    )
    return list(skf.split(np.zeros_like(events), events))


def derive_seed(base_seed: int, fold_index: int) -> int:
    """Fold-specific seed, independent of the order folds are executed in.

    Example:
        >>> derive_seed(42, 0) == derive_seed(42, 0)
        True
        >>> derive_seed(42, 0) != derive_seed(42, 1)
        True
    """
    state = np.random.SeedSequence([int(base_seed), int(fold_index)]).generate_state(1)
    return int(state[0])


@dataclass(frozen=True, eq=False)
class Fold:
    """One leave-one-cluster-out split.

    Attributes:
        index: Position of the fold in the results table
        cluster: Held-out cluster label, None for the full-data fold
        train_idx: Row positions of training subjects
        test_idx: Row positions of held-out subjects (empty for the full-data fold)
        seed: Fold-specific derived seed
    """
    index: int
    cluster: Optional[str]
    train_idx: np.ndarray
    test_idx: np.ndarray
    seed: int

    @property
    def is_final(self) -> bool:
        return self.cluster is None

    @property
    def label(self) -> str:
        return "full_data" if self.is_final else str(self.cluster)


def cluster_folds(subjects: pd.DataFrame, cluster_column: str, base_seed: int = 42) -> List[Fold]:
    """Enumerate one fold per distinct cluster value.

    Clusters are taken in sorted order so fold indices and seeds do not depend on
    row order. Train is the complement of the held-out cluster.

    Args:
        subjects: Prepared subject records
        cluster_column: Column holding the cluster identifier
        base_seed: Seed from which fold seeds are derived

    Returns:
        List of Fold, one per cluster

    Raises:
        DataIntegrityError: If the cluster id is missing or there are fewer than two clusters
    """
    labels = subjects[cluster_column]
    if labels.isna().any():
        raise DataIntegrityError(
            "Cluster identifier missing", column=cluster_column,
            n_missing=int(labels.isna().sum()), n_rows=len(subjects)
        )
    labels = labels.astype(str).to_numpy()
    clusters = sorted(pd.unique(labels))
    if len(clusters) < 2:
        raise DataIntegrityError(
            "Leave-one-cluster-out needs at least two clusters",
            column=cluster_column, clusters=clusters
        )

    positions = np.arange(len(labels))
    folds = []
    for i, cluster in enumerate(clusters):
        in_cluster = labels == cluster
        folds.append(Fold(
            index=i,
            cluster=cluster,
            train_idx=positions[~in_cluster],
            test_idx=positions[in_cluster],
            seed=derive_seed(base_seed, i),
        ))
    logger.info(f"Built {len(folds)} cluster folds: {clusters}")
    return folds


def full_data_fold(n_subjects: int, n_clusters: int, base_seed: int = 42) -> Fold:
    """The extra fold fitting the deployable model on every subject."""
    return Fold(
        index=n_clusters,
        cluster=None,
        train_idx=np.arange(n_subjects),
        test_idx=np.array([], dtype=int),
        seed=derive_seed(base_seed, n_clusters),
    )


def check_fold(fold: Fold, y_struct: np.ndarray) -> None:
    """Refuse folds whose training set cannot support a Cox fit.

    Raises:
        DataIntegrityError: If the training subjects have no event or no censored subject
    """
    y_train = y_struct[fold.train_idx]
    n_events = int(np.sum(y_train["event"]))
    n_censored = int(len(y_train) - n_events)
    if n_events == 0 or n_censored == 0:
        raise DataIntegrityError(
            "Degenerate fold: training set needs at least one event and one censored subject",
            fold=fold.label, n_rows=len(y_train), n_events=n_events, n_censored=n_censored
        )
