from __future__ import annotations

"""Shared data model and component interfaces for rigid-body pose tracking."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence

import numpy as np

POSE_DIMENSION = 6


class ComputeBackend(str, Enum):
    HOST = "host"
    ACCELERATED = "accelerated"


@dataclass(frozen=True)
class CameraIntrinsics:
    width_px: int
    height_px: int
    fx_px: float
    fy_px: float
    cx_px: float
    cy_px: float

    def __post_init__(self) -> None:
        if self.width_px <= 0 or self.height_px <= 0:
            raise ValueError("CameraIntrinsics requires a positive resolution")
        if self.fx_px <= 0.0 or self.fy_px <= 0.0:
            raise ValueError("CameraIntrinsics requires positive focal lengths")

    def scaled(self, factor: int) -> "CameraIntrinsics":
        """Intrinsics of the image subsampled by ``factor`` in both axes."""
        return CameraIntrinsics(
            width_px=self.width_px // factor,
            height_px=self.height_px // factor,
            fx_px=self.fx_px / factor,
            fy_px=self.fy_px / factor,
            cx_px=self.cx_px / factor,
            cy_px=self.cy_px / factor,
        )


@dataclass(frozen=True)
class CameraData:
    """Sensor handle passed through to the observation model unchanged."""

    intrinsics: CameraIntrinsics
    downsampling_factor: int = 1

    def __post_init__(self) -> None:
        if self.downsampling_factor < 1:
            raise ValueError("CameraData requires downsampling_factor >= 1")
        if (
            self.intrinsics.width_px < self.downsampling_factor
            or self.intrinsics.height_px < self.downsampling_factor
        ):
            raise ValueError("downsampling_factor exceeds the camera resolution")

    @property
    def scaled_intrinsics(self) -> CameraIntrinsics:
        return self.intrinsics.scaled(self.downsampling_factor)

    @property
    def resolution(self) -> tuple[int, int]:
        """(height, width) of the downsampled depth image."""
        scaled = self.scaled_intrinsics
        return (scaled.height_px, scaled.width_px)

    @property
    def pixel_count(self) -> int:
        height, width = self.resolution
        return height * width


@dataclass(frozen=True)
class ObjectResourceIdentifier:
    directory: str
    meshes: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.meshes:
            raise ValueError("ObjectResourceIdentifier requires at least one mesh")

    @property
    def count_meshes(self) -> int:
        return len(self.meshes)


@dataclass(frozen=True, eq=False)
class ObjectModel:
    """Vertex clouds of the tracked objects, each in its own object frame."""

    names: tuple[str, ...]
    vertices: tuple[np.ndarray, ...]

    def __post_init__(self) -> None:
        if len(self.names) != len(self.vertices):
            raise ValueError("ObjectModel requires one name per vertex array")
        if not self.vertices:
            raise ValueError("ObjectModel requires at least one object")
        for name, points in zip(self.names, self.vertices, strict=True):
            if points.ndim != 2 or points.shape[1] != 3 or len(points) == 0:
                raise ValueError(f"object '{name}' must have a non-empty Nx3 vertex array")

    @property
    def count_parts(self) -> int:
        return len(self.vertices)

    @property
    def state_dimension(self) -> int:
        return POSE_DIMENSION * self.count_parts


@dataclass(frozen=True)
class ObjectPose:
    """Object-to-camera pose: position in metres, orientation as a rotation vector."""

    position: tuple[float, float, float]
    rotation_vector: tuple[float, float, float] = (0.0, 0.0, 0.0)

    def to_vector(self) -> np.ndarray:
        return np.asarray((*self.position, *self.rotation_vector), dtype=np.float64)

    @staticmethod
    def from_vector(vector: Sequence[float]) -> "ObjectPose":
        values = np.asarray(vector, dtype=np.float64)
        if values.shape != (POSE_DIMENSION,):
            raise ValueError("pose vector must have 6 entries")
        return ObjectPose(
            position=(float(values[0]), float(values[1]), float(values[2])),
            rotation_vector=(float(values[3]), float(values[4]), float(values[5])),
        )


def poses_to_state(poses: Sequence[ObjectPose]) -> np.ndarray:
    if not poses:
        raise ValueError("at least one pose is required")
    return np.concatenate([pose.to_vector() for pose in poses])


def state_to_poses(state: np.ndarray) -> tuple[ObjectPose, ...]:
    values = np.asarray(state, dtype=np.float64)
    if values.ndim != 1 or values.size % POSE_DIMENSION != 0:
        raise ValueError("state must be a flat vector with 6 entries per object")
    return tuple(
        ObjectPose.from_vector(values[offset : offset + POSE_DIMENSION])
        for offset in range(0, values.size, POSE_DIMENSION)
    )


class TransitionModel(ABC):
    @property
    @abstractmethod
    def state_dimension(self) -> int:
        """Length of the flat state vector."""

    @property
    @abstractmethod
    def input_dimension(self) -> int:
        """Length of the control input vector."""

    @abstractmethod
    def predict(
        self,
        states: np.ndarray,
        noise: np.ndarray,
        control: np.ndarray | None = None,
    ) -> np.ndarray:
        """Map (N, D) states and (N, D) unit noise to the next (N, D) states."""


class ObservationModel(ABC):
    @property
    @abstractmethod
    def backend(self) -> ComputeBackend:
        """Which compute variant this model runs on."""

    @abstractmethod
    def set_observation(self, depth_image: np.ndarray) -> None:
        """Set the depth frame scored by subsequent log_likelihoods calls."""

    @abstractmethod
    def reset_occlusions(self) -> None:
        """Forget the per-particle occlusion memory."""

    @abstractmethod
    def log_likelihoods(
        self,
        states: np.ndarray,
        occlusion_indices: np.ndarray,
        *,
        commit: bool = False,
    ) -> np.ndarray:
        """Log-likelihood per particle against the current observation.

        ``occlusion_indices[i]`` selects the occlusion memory row of particle i.
        After a committing call row i belongs to particle i.
        """

    @abstractmethod
    def evaluate(self, state: np.ndarray, depth_image: np.ndarray) -> float:
        """Memoryless log-likelihood of one state against one depth frame."""

    def close(self) -> None:
        """Release backend resources."""


class Resampler(ABC):
    @abstractmethod
    def resample(self, weights: np.ndarray, count: int, rng: np.random.Generator) -> np.ndarray:
        """Ancestor indices drawn according to the normalized ``weights``."""


@dataclass(frozen=True)
class FilterStepResult:
    mean_state: np.ndarray
    sample_counts: tuple[int, ...]
    kl_divergences: tuple[float, ...]
    resample_count: int
    effective_sample_size: float


@dataclass(frozen=True)
class TrackResult:
    frame_index: int
    object_names: tuple[str, ...]
    poses: tuple[ObjectPose, ...]
    raw_poses: tuple[ObjectPose, ...]
    sample_count: int
    diagnostics: Mapping[str, float] = field(default_factory=dict)

    @property
    def poses_by_name(self) -> Mapping[str, ObjectPose]:
        return dict(zip(self.object_names, self.poses, strict=True))
