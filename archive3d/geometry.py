"""
Transform math for data entry placement.

Entries carry `_parameters` with a position, an XYZ Euler rotation in
radians and a uniform or per-axis scale. These helpers turn that into
4x4 matrices for a scene sink.
"""

import numpy as np
from typing import Sequence, Union

from archive3d.manifest import Transform

Scale = Union[float, Sequence[float]]


def euler_to_matrix(rotation: Sequence[float]) -> np.ndarray:
    """
    Convert XYZ Euler angles (radians) to a 3x3 rotation matrix.

    Rotation order is X then Y then Z applied to the object, i.e.
    R = Rx @ Ry @ Rz, the same convention three.js uses for "XYZ".

    Args:
        rotation: (rx, ry, rz) in radians

    Returns:
        3x3 rotation matrix
    """
    rx, ry, rz = (float(v) for v in rotation)
    cx, sx = np.cos(rx), np.sin(rx)
    cy, sy = np.cos(ry), np.sin(ry)
    cz, sz = np.cos(rz), np.sin(rz)

    r_x = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    r_y = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    r_z = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return r_x @ r_y @ r_z


def scale_vector(scale: Scale) -> np.ndarray:
    """Expand a uniform scale to (s, s, s)."""
    if isinstance(scale, (int, float)):
        return np.full(3, float(scale))
    values = np.asarray(scale, dtype=np.float64)
    if values.shape != (3,):
        raise ValueError(f"Scale must be a scalar or 3-vector, got shape {values.shape}")
    return values


def transform_to_matrix(transform: Transform) -> np.ndarray:
    """
    Compose a 4x4 matrix (translate @ rotate @ scale) from an entry transform.

    Args:
        transform: Entry transform; missing fields were already identity

    Returns:
        4x4 float64 matrix
    """
    matrix = np.eye(4)
    matrix[:3, :3] = euler_to_matrix(transform.rotation) * scale_vector(transform.scale)
    matrix[:3, 3] = np.asarray(transform.position, dtype=np.float64)
    return matrix


def apply_transform(points: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Apply a 4x4 transform to Nx3 points.

    Args:
        points: Nx3 array of coordinates
        matrix: 4x4 transform

    Returns:
        Transformed Nx3 array
    """
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"Expected Nx3 points, got shape {points.shape}")
    return points @ matrix[:3, :3].T + matrix[:3, 3]


def is_identity_matrix(matrix: np.ndarray, atol: float = 1e-9) -> bool:
    return bool(np.allclose(matrix, np.eye(4), atol=atol))
