from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union, Tuple
import string

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import InvalidGraphError


@dataclass(frozen=True, order=True)
class PoseKey:
    """A robot's pose at a sequence index, e.g. ``PoseKey("a", 12)``.

    The robot id is a single letter so the key maps one-to-one onto a gtsam
    symbol; the estimate returned by the solver is keyed by ``symbol()``.
    """
    robot: str
    index: int

    def __post_init__(self):
        if not (isinstance(self.robot, str) and len(self.robot) == 1
                and self.robot in string.ascii_letters):
            raise InvalidGraphError(f"Robot id must be a single letter, got {self.robot!r}")
        if not isinstance(self.index, int) or self.index < 0:
            raise InvalidGraphError(f"Pose index must be a non-negative int, got {self.index!r}")

    def symbol(self) -> int:
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build keys")
        return int(gtsam.symbol(self.robot, self.index))

    @classmethod
    def from_symbol(cls, key: int) -> "PoseKey":
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot decode keys")
        sym = gtsam.Symbol(int(key))
        c = sym.chr()
        # Some wheels return the character as an int
        return cls(c if isinstance(c, str) else chr(c), int(sym.index()))

    @classmethod
    def parse(cls, text: str) -> "PoseKey":
        s = str(text).strip()
        if len(s) < 2 or s[0] not in string.ascii_letters or not s[1:].isdigit():
            raise InvalidGraphError(f"Cannot parse pose key {text!r}; expected e.g. 'a12'")
        return cls(s[0], int(s[1:]))

    def __str__(self) -> str:
        return f"{self.robot}{self.index}"


KeyLike = Union[PoseKey, str, int]


def as_pose_key(key: KeyLike) -> PoseKey:
    if isinstance(key, PoseKey):
        return key
    if isinstance(key, bool):
        raise InvalidGraphError(f"Invalid pose key {key!r}")
    if isinstance(key, int):
        return PoseKey.from_symbol(key)
    return PoseKey.parse(key)


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order, as gtsam.Rot3.Quaternion takes it."""
    w: float
    x: float
    y: float
    z: float


@dataclass
class Translation:
    x: float
    y: float
    z: float


@dataclass
class InitEntry:
    key: KeyLike
    rotation: Quaternion
    translation: Translation
    type: str = "Pose3"


@dataclass
class PriorFactorPose3:
    key: KeyLike
    rotation: Quaternion  # prior rotation
    translation: Translation  # prior translation
    covariance: np.ndarray  # 6x6, [rx, ry, rz, tx, ty, tz]
    stamp: float = 0.0


@dataclass
class BetweenFactorPose3:
    key1: KeyLike
    key2: KeyLike
    rotation: Quaternion  # measurement rotation
    translation: Translation  # measurement translation
    covariance: np.ndarray  # 6x6, [rx, ry, rz, tx, ty, tz]
    stamp: float = 0.0


class MeasurementKind(str, Enum):
    ODOMETRY = "odometry"
    PRIOR = "prior"
    LOOP_CLOSURE = "loop_closure"
    BRIDGE = "bridge"
    LINK = "link"


@dataclass(frozen=True)
class Measurement:
    """Stored measurement. ``mid`` is its arena index (arrival order).

    Priors carry the absolute pose in ``pose`` and leave ``key2`` empty.
    """
    mid: int
    kind: MeasurementKind
    key1: PoseKey
    key2: Optional[PoseKey]
    pose: "gtsam.Pose3"
    covariance: np.ndarray = field(compare=False, repr=False)
    stamp: float = 0.0

    @property
    def is_candidate(self) -> bool:
        return self.kind in (MeasurementKind.LOOP_CLOSURE, MeasurementKind.BRIDGE)

    @property
    def robots(self) -> Tuple[str, ...]:
        if self.key2 is None:
            return (self.key1.robot,)
        return (self.key1.robot, self.key2.robot)


def classify_between(key1: PoseKey, key2: PoseKey) -> MeasurementKind:
    if key1.robot != key2.robot:
        return MeasurementKind.BRIDGE
    if abs(key1.index - key2.index) == 1:
        return MeasurementKind.ODOMETRY
    return MeasurementKind.LOOP_CLOSURE


def to_covariance(cov_list: Union[List[float], np.ndarray]) -> np.ndarray:
    """Convert a flat list (36) or nested list (6x6) to a 6x6 ndarray."""
    arr = np.asarray(cov_list, dtype=float)
    if arr.size == 36 and arr.ndim == 1:
        return arr.reshape(6, 6)
    if arr.size == 36 and arr.ndim == 2 and arr.shape == (6, 6):
        return arr
    raise ValueError(f"Expected 36 elements for a 6x6 covariance, got shape {arr.shape} size {arr.size}")
