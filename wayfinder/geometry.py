from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

Vec3 = Tuple[float, float, float]

ZERO: Vec3 = (0.0, 0.0, 0.0)
FORWARD: Vec3 = (0.0, 0.0, 1.0)


def vec3(values: Sequence[float]) -> Vec3:
    if len(values) != 3:
        raise ValueError(f"Expected 3 components, got {len(values)}.")
    return float(values[0]), float(values[1]), float(values[2])


def as_array(v: Sequence[float]) -> np.ndarray:
    return np.asarray(v, dtype=np.float64)


def to_vec3(arr: np.ndarray) -> Vec3:
    return float(arr[0]), float(arr[1]), float(arr[2])


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(np.linalg.norm(as_array(a) - as_array(b)))


def horizontal_distance(a: Sequence[float], b: Sequence[float]) -> float:
    # Y is the vertical axis; the walking plane is X/Z.
    return math.hypot(float(a[0]) - float(b[0]), float(a[2]) - float(b[2]))


def normalize(v: Sequence[float]) -> Vec3:
    arr = as_array(v)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not math.isfinite(norm):
        return ZERO
    return to_vec3(arr / norm)


def direction(a: Sequence[float], b: Sequence[float]) -> Vec3:
    return normalize(as_array(b) - as_array(a))


def angle_between(u: Sequence[float], v: Sequence[float]) -> float:
    """Angle in radians between two direction vectors."""
    a = as_array(normalize(u))
    b = as_array(normalize(v))
    if not np.any(a) or not np.any(b):
        return 0.0
    return float(math.acos(clip(float(np.dot(a, b)), -1.0, 1.0)))


def vertical_cross(u: Sequence[float], v: Sequence[float]) -> float:
    """Vertical (Y) component of u x v; positive means v turns left of u."""
    return float(np.cross(as_array(u), as_array(v))[1])


def point_segment_distance(p: Sequence[float], a: Sequence[float], b: Sequence[float]) -> float:
    pa = as_array(p)
    sa = as_array(a)
    sb = as_array(b)
    seg = sb - sa
    length_sq = float(np.dot(seg, seg))
    if length_sq == 0.0:
        return float(np.linalg.norm(pa - sa))
    t = clip(float(np.dot(pa - sa, seg)) / length_sq, 0.0, 1.0)
    return float(np.linalg.norm(pa - (sa + t * seg)))


def segment_clearances(a: Sequence[float], b: Sequence[float], centers: np.ndarray) -> np.ndarray:
    """Distance from every row of ``centers`` (N x 3) to the segment a-b."""
    if centers.size == 0:
        return np.zeros((0,), dtype=np.float64)
    sa = as_array(a)
    seg = as_array(b) - sa
    length_sq = float(np.dot(seg, seg))
    if length_sq == 0.0:
        return np.linalg.norm(centers - sa, axis=1)
    t = np.clip(((centers - sa) @ seg) / length_sq, 0.0, 1.0)
    closest = sa + t[:, None] * seg
    return np.linalg.norm(centers - closest, axis=1)


def volume(size: Sequence[float]) -> float:
    return float(size[0]) * float(size[1]) * float(size[2])


def clip(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))
