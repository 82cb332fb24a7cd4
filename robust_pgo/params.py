from dataclasses import dataclass
from enum import Enum
import logging
import math


class Verbosity(str, Enum):
    QUIET = "quiet"
    INFO = "info"
    DEBUG = "debug"

    @property
    def level(self) -> int:
        return {"quiet": logging.WARNING, "info": logging.INFO, "debug": logging.DEBUG}[self.value]


@dataclass
class RobustSolverParams:
    """Settings of a RobustSolver, fixed when the solver is constructed.

    Thresholds are bounds on squared Mahalanobis norms (the candidate passes
    when the norm is strictly below). An odometry threshold of 0 rejects every
    loop closure while odometry, priors and links are still used.
    """
    odom_threshold: float = 10.0
    lc_threshold: float = 10.0
    verbosity: Verbosity = Verbosity.INFO
    solver: str = "batch"  # "batch" (Levenberg-Marquardt) | "isam2"
    max_iters: int = 100
    relinearize_threshold: float = 0.1
    relinearize_skip: int = 10
    isam2_extra_updates: int = 1
    # std-dev of the gauge prior put on robots no real prior reaches
    anchor_sigma: float = 1e-3

    def set_pcm_3d_params(self, odom_threshold: float, lc_threshold: float,
                          verbosity: Verbosity = Verbosity.QUIET) -> "RobustSolverParams":
        self.odom_threshold = odom_threshold
        self.lc_threshold = lc_threshold
        self.verbosity = verbosity
        self.validate()
        return self

    def validate(self) -> None:
        for name in ("odom_threshold", "lc_threshold"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or math.isnan(value) or value < 0:
                raise ValueError(f"{name} must be a float >= 0, got {value!r}")
        self.verbosity = Verbosity(self.verbosity)
        if self.solver not in ("batch", "isam2"):
            raise ValueError(f"Unsupported solver: {self.solver}")
        if self.max_iters <= 0:
            raise ValueError("max_iters must be positive")
        if self.isam2_extra_updates < 0:
            raise ValueError("isam2_extra_updates must be >= 0")
        if self.anchor_sigma <= 0:
            raise ValueError("anchor_sigma must be positive")

    def apply_verbosity(self) -> None:
        logging.getLogger("robust_pgo").setLevel(self.verbosity.level)
