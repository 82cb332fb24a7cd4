import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Chained covariances can come out nearly singular (e.g. a zero-length
    chain), and both the Mahalanobis test and GTSAM need a Cholesky factor.
    """
    cov = np.array(cov, dtype=float)
    cov = 0.5 * (cov + cov.T)
    eye = np.eye(cov.shape[0])
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + eye * jitter)
            return cov + eye * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    # Last resort
    return cov + eye * jitter


def gaussian_from_covariance(cov: np.ndarray):
    """Full-covariance gtsam noise model for one pose measurement.

    The matrix is jittered to SPD first and handed over as a C-ordered
    float64 array, which is what the gtsam binding copies from.
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = make_spd(cov)
    cov = np.array(cov, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)


def isotropic_covariance(sigma: float, dim: int = 6) -> np.ndarray:
    return np.eye(dim) * float(sigma) ** 2
