from __future__ import annotations

"""Rigid-object tracker driving the adaptive coordinate particle filter frame by frame."""

import logging
from typing import Sequence

import numpy as np

from .errors import TrackerNotInitialized
from .model import (
    POSE_DIMENSION,
    ComputeBackend,
    ObjectModel,
    ObjectPose,
    TrackResult,
    poses_to_state,
    state_to_poses,
)
from .particle_filter import AdaptiveCoordinateParticleFilter
from .vision import interpolate_states

logger = logging.getLogger("posetrack.tracker")


class ObjectTracker:
    """Owns a filter and turns depth frames into smoothed per-object poses.

    ``update_rate`` blends every new filter estimate into a moving average of
    poses: 1.0 reports the raw estimate, smaller values smooth the output.
    """

    def __init__(
        self,
        *,
        particle_filter: AdaptiveCoordinateParticleFilter,
        object_model: ObjectModel,
        update_rate: float,
        initial_position_std_m: float,
        initial_rotation_std_rad: float,
        rng: np.random.Generator,
    ) -> None:
        if not 0.0 < update_rate <= 1.0:
            raise ValueError("update_rate must be in (0, 1]")
        self._filter = particle_filter
        self._object_model = object_model
        self._update_rate = float(update_rate)
        self._initial_position_std = float(initial_position_std_m)
        self._initial_rotation_std = float(initial_rotation_std_rad)
        self._rng = rng

        self._moving_average: np.ndarray | None = None
        self._last_raw: np.ndarray | None = None
        self._control = np.zeros(object_model.state_dimension, dtype=np.float64)
        self._frame_index = 0

    def __enter__(self) -> "ObjectTracker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def filter(self) -> AdaptiveCoordinateParticleFilter:
        return self._filter

    @property
    def object_model(self) -> ObjectModel:
        return self._object_model

    @property
    def backend(self) -> ComputeBackend:
        return self._filter.observation_model.backend

    @property
    def sampling_blocks(self) -> tuple[Sequence[int], ...]:
        return self._filter.sampling_blocks

    @property
    def update_rate(self) -> float:
        return self._update_rate

    @property
    def initialized(self) -> bool:
        return self._moving_average is not None

    def initialize(self, initial_poses: Sequence[ObjectPose]) -> tuple[ObjectPose, ...]:
        if len(initial_poses) != self._object_model.count_parts:
            raise ValueError(
                f"expected {self._object_model.count_parts} initial poses, got {len(initial_poses)}"
            )
        state = poses_to_state(initial_poses)
        count = self._filter.parameters.evaluation_count
        scale = np.tile(
            [self._initial_position_std] * 3 + [self._initial_rotation_std] * 3,
            len(initial_poses),
        )
        particles = state[None, :] + self._rng.standard_normal((count, state.size)) * scale[None, :]
        particles[0] = state
        self._filter.set_particles(particles)

        self._moving_average = state.copy()
        self._last_raw = state.copy()
        self._control = np.zeros_like(state)
        self._frame_index = 0
        logger.info(f"Tracker initialized with {count} particles for {len(initial_poses)} objects")
        return state_to_poses(state)

    def track(self, depth_image: np.ndarray, *, control: np.ndarray | None = None) -> TrackResult:
        if self._moving_average is None or self._last_raw is None:
            raise TrackerNotInitialized()

        step_control = self._control if control is None else np.asarray(control, dtype=np.float64)
        step = self._filter.filter(depth_image, step_control)
        raw = step.mean_state

        self._control = self._displacement(self._last_raw, raw)
        self._last_raw = raw
        self._moving_average = interpolate_states(self._moving_average, raw, self._update_rate)

        result = TrackResult(
            frame_index=self._frame_index,
            object_names=self._object_model.names,
            poses=state_to_poses(self._moving_average),
            raw_poses=state_to_poses(raw),
            sample_count=self._filter.sample_count,
            diagnostics={
                "max_block_sample_count": float(max(step.sample_counts)),
                "max_kl_divergence": float(max(step.kl_divergences)),
                "resample_count": float(step.resample_count),
                "effective_sample_size": float(step.effective_sample_size),
            },
        )
        self._frame_index += 1
        return result

    @staticmethod
    def _displacement(previous: np.ndarray, current: np.ndarray) -> np.ndarray:
        delta = current - previous
        # rotation-vector difference is only meaningful for small inter-frame motion
        for offset in range(3, delta.size, POSE_DIMENSION):
            angle = float(np.linalg.norm(delta[offset : offset + 3]))
            if angle > np.pi:
                delta[offset : offset + 3] = 0.0
        return delta

    def close(self) -> None:
        self._filter.observation_model.close()
