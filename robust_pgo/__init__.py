"""robust_pgo: outlier-robust multi-robot pose-graph backend.

This package provides:
- Data models for keys, measurements and initial guesses
- A pose-graph store with all-or-nothing batch ingestion
- Pairwise Consistent Measurement (PCM) checks on intra- and inter-robot loop closures
- An incremental maximum-clique selector over the consistency graph
- A solver facade delegating optimization to GTSAM (LM or iSAM2)
- A g2o loader and a CLI entry point (see main.py)
"""
from .errors import (
    AlreadyLoadedError, IllConditionedError, InvalidGraphError, NotLoadedError,
    RobustPGOError, SolverDivergedError, SolverStateError, UnknownAnchorError,
)
from .models import (
    BetweenFactorPose3, InitEntry, Measurement, MeasurementKind, PoseKey,
    PriorFactorPose3, Quaternion, Translation,
)
from .params import RobustSolverParams, Verbosity
from .solver import RobustSolver, SolverState

__all__ = [
    "AlreadyLoadedError", "BetweenFactorPose3", "IllConditionedError", "InitEntry",
    "InvalidGraphError", "Measurement", "MeasurementKind", "NotLoadedError", "PoseKey",
    "PriorFactorPose3", "Quaternion", "RobustPGOError", "RobustSolver", "RobustSolverParams",
    "SolverDivergedError", "SolverState", "SolverStateError", "Translation",
    "UnknownAnchorError", "Verbosity",
]
__version__ = "0.1.0"
