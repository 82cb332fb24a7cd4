"""Exception taxonomy for the robust backend.

Ingestion errors are raised while staging a batch, before the store is
touched. Optimizer errors wrap the gtsam failure they came from.
"""


class RobustPGOError(Exception):
    """Base class for every error raised by robust_pgo."""


class InvalidGraphError(RobustPGOError):
    """Malformed batch: unknown or duplicate keys, extra priors, bad covariances."""


class UnknownAnchorError(RobustPGOError):
    """The bridge of an add_graph call does not touch any key already stored."""


class SolverStateError(RobustPGOError):
    """Operation not allowed in the solver's current state."""


class AlreadyLoadedError(SolverStateError):
    pass


class NotLoadedError(SolverStateError):
    pass


class OptimizationError(RobustPGOError):
    """Raised when the delegated nonlinear solve fails."""


class SolverDivergedError(OptimizationError):
    pass


class IllConditionedError(OptimizationError):
    pass
