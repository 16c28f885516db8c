from __future__ import annotations

"""Rotation, projection and pose-averaging helpers shared by the models and the filter."""

import numpy as np

from .model import POSE_DIMENSION, CameraIntrinsics


def rotation_vectors_to_matrices(rotation_vectors: np.ndarray) -> np.ndarray:
    """Rodrigues formula for (..., 3) rotation vectors -> (..., 3, 3) matrices."""
    rotvec = np.asarray(rotation_vectors, dtype=np.float64)
    if rotvec.shape[-1] != 3:
        raise ValueError("rotation vectors must have 3 components")

    theta = np.linalg.norm(rotvec, axis=-1, keepdims=True)
    axis = rotvec / np.where(theta < 1e-12, 1.0, theta)
    x, y, z = axis[..., 0], axis[..., 1], axis[..., 2]
    zeros = np.zeros_like(x)
    skew = np.stack(
        [
            np.stack([zeros, -z, y], axis=-1),
            np.stack([z, zeros, -x], axis=-1),
            np.stack([-y, x, zeros], axis=-1),
        ],
        axis=-2,
    )
    sin = np.sin(theta)[..., None]
    cos = np.cos(theta)[..., None]
    identity = np.broadcast_to(np.eye(3), skew.shape)
    return identity + sin * skew + (1.0 - cos) * (skew @ skew)


def rotation_vectors_to_quaternions(rotation_vectors: np.ndarray) -> np.ndarray:
    """(..., 3) rotation vectors -> (..., 4) unit quaternions ordered (w, x, y, z)."""
    rotvec = np.asarray(rotation_vectors, dtype=np.float64)
    theta = np.linalg.norm(rotvec, axis=-1, keepdims=True)
    half = 0.5 * theta
    # sin(theta/2)/theta tends to 1/2 for small angles
    scale = np.where(theta < 1e-12, 0.5, np.sin(half) / np.where(theta < 1e-12, 1.0, theta))
    return np.concatenate([np.cos(half), rotvec * scale], axis=-1)


def quaternions_to_rotation_vectors(quaternions: np.ndarray) -> np.ndarray:
    quat = np.asarray(quaternions, dtype=np.float64)
    quat = quat / np.linalg.norm(quat, axis=-1, keepdims=True)
    quat = np.where(quat[..., :1] < 0.0, -quat, quat)
    w = quat[..., :1]
    vec = quat[..., 1:]
    vec_norm = np.linalg.norm(vec, axis=-1, keepdims=True)
    angle = 2.0 * np.arctan2(vec_norm, w)
    scale = np.where(vec_norm < 1e-12, 2.0, angle / np.where(vec_norm < 1e-12, 1.0, vec_norm))
    return vec * scale


def average_quaternions(quaternions: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted quaternion mean: principal eigenvector of sum(w * q q^T)."""
    quat = np.asarray(quaternions, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    accumulator = np.einsum("n,ni,nj->ij", w, quat, quat)
    _, eigenvectors = np.linalg.eigh(accumulator)
    mean = eigenvectors[:, -1]
    if mean[0] < 0.0:
        mean = -mean
    return mean / np.linalg.norm(mean)


def weighted_pose_mean(states: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted mean of (N, 6k) rigid-body states.

    Positions are averaged linearly, orientations via quaternion averaging so
    the result does not depend on the rotation-vector branch of each particle.
    """
    states = np.asarray(states, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    if states.ndim != 2 or states.shape[1] % POSE_DIMENSION != 0:
        raise ValueError("states must be (N, 6k)")
    total = float(weights.sum())
    if total <= 0.0:
        weights = np.full(len(states), 1.0 / len(states))
    else:
        weights = weights / total

    mean = np.empty(states.shape[1], dtype=np.float64)
    for offset in range(0, states.shape[1], POSE_DIMENSION):
        mean[offset : offset + 3] = weights @ states[:, offset : offset + 3]
        quats = rotation_vectors_to_quaternions(states[:, offset + 3 : offset + 6])
        mean_quat = average_quaternions(quats, weights)
        mean[offset + 3 : offset + 6] = quaternions_to_rotation_vectors(mean_quat)
    return mean


def interpolate_states(start: np.ndarray, end: np.ndarray, fraction: float) -> np.ndarray:
    """Blend two rigid-body states; fraction 0 keeps ``start``, 1 returns ``end``."""
    pair = np.stack([np.asarray(start, dtype=np.float64), np.asarray(end, dtype=np.float64)])
    return weighted_pose_mean(pair, np.asarray([1.0 - fraction, fraction], dtype=np.float64))


def transform_points(states: np.ndarray, points: np.ndarray, offset: int) -> np.ndarray:
    """Object-frame (P, 3) points -> camera-frame (N, P, 3) for the pose at ``offset``."""
    rotations = rotation_vectors_to_matrices(states[:, offset + 3 : offset + 6])
    translations = states[:, offset : offset + 3]
    return np.einsum("nij,pj->npi", rotations, points) + translations[:, None, :]


def project_points(
    points_camera: np.ndarray,
    intrinsics: CameraIntrinsics,
    *,
    min_depth_m: float = 1e-6,
) -> tuple[np.ndarray, np.ndarray]:
    """Pixel indices and depths for (..., 3) camera-frame points.

    Returns ``(flat_pixel_index, depth)``; points behind the camera or outside
    the image get index -1.
    """
    z = points_camera[..., 2]
    visible = z > min_depth_m
    safe_z = np.where(visible, z, 1.0)
    u = intrinsics.fx_px * points_camera[..., 0] / safe_z + intrinsics.cx_px
    v = intrinsics.fy_px * points_camera[..., 1] / safe_z + intrinsics.cy_px
    col = np.floor(u)
    row = np.floor(v)
    inside = (
        visible
        & np.isfinite(u)
        & np.isfinite(v)
        & (col >= 0)
        & (col < intrinsics.width_px)
        & (row >= 0)
        & (row < intrinsics.height_px)
    )
    row_index = np.where(inside, row, 0.0).astype(np.int64)
    col_index = np.where(inside, col, 0.0).astype(np.int64)
    flat = np.where(inside, row_index * intrinsics.width_px + col_index, -1)
    return flat, z
