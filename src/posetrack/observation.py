from __future__ import annotations

"""Depth-image observation models with host (numpy) and accelerated (torch) backends.

Each particle is rendered by projecting the object vertices into the
downsampled depth image with a z-buffer. Rendered pixels are scored with a
robust depth-pixel model mixed with a per-pixel occlusion probability that is
carried along with every particle (the Rao-Blackwellized part of the state).
"""

import importlib.util
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Sequence

import numpy as np

from .config import ObservationModelParameters
from .errors import BackendUnavailable
from .model import (
    POSE_DIMENSION,
    CameraData,
    CameraIntrinsics,
    ComputeBackend,
    ObjectModel,
    ObjectPose,
    ObservationModel,
    poses_to_state,
)
from .vision import project_points, transform_points

logger = logging.getLogger("posetrack.observation")

REFERENCE_FRAME_TIME_S = 1.0 / 30.0
DEFAULT_SCORE_BATCH_SIZE = 64
_SQRT_2PI = math.sqrt(2.0 * math.pi)


def _detect_accelerated_backend() -> bool:
    available = importlib.util.find_spec("torch") is not None
    if not available:
        logger.debug("torch not importable; accelerated observation model disabled")
    return available


ACCELERATED_BACKEND_AVAILABLE = _detect_accelerated_backend()


def _normalize_worker_count(worker_count: int) -> int:
    if worker_count > 0:
        return int(worker_count)
    return max(1, int(os.cpu_count() or 1))


def _particle_batches(count: int, batch_size: int) -> list[np.ndarray]:
    """Index arrays of at most `batch_size` particles; scoring memory scales with the batch."""
    if batch_size <= 0:
        raise ValueError("score_batch_size must be > 0")
    return [np.arange(start, min(start + batch_size, count)) for start in range(0, count, batch_size)]


def _occlusion_transition(params: ObservationModelParameters) -> tuple[float, float]:
    """(factor, stationary) so that p_next = stationary + factor * (p - stationary)."""
    contraction = max(0.0, params.p_occluded_occluded - params.p_occluded_visible)
    if contraction >= 1.0 - 1e-12:
        return (1.0, 0.0)
    stationary = params.p_occluded_visible / (1.0 - contraction)
    factor = contraction ** (params.delta_time / REFERENCE_FRAME_TIME_S)
    return (factor, stationary)


def _check_states(states: np.ndarray, dimension: int) -> np.ndarray:
    arr = np.asarray(states, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2 or arr.shape[1] != dimension:
        raise ValueError(f"states must be (N, {dimension})")
    return arr


def _prepare_depth_image(
    depth_image: np.ndarray,
    camera_data: CameraData,
    params: ObservationModelParameters,
) -> np.ndarray:
    """Downsample a full-resolution depth frame and flatten it; invalid depths become NaN."""
    image = np.asarray(depth_image, dtype=np.float64)
    full = camera_data.intrinsics
    height, width = camera_data.resolution
    if image.shape == (full.height_px, full.width_px):
        factor = camera_data.downsampling_factor
        image = image[::factor, ::factor][:height, :width]
    elif image.shape != (height, width):
        raise ValueError(
            f"depth image must be {full.height_px}x{full.width_px} "
            f"or downsampled {height}x{width}, got {image.shape}"
        )
    invalid = ~np.isfinite(image) | (image <= 0.0) | (image > params.max_depth_m)
    return np.where(invalid, np.nan, image).reshape(-1)


def render_depth_images(
    states: np.ndarray,
    vertices: Sequence[np.ndarray],
    intrinsics: CameraIntrinsics,
) -> np.ndarray:
    """Z-buffered depth of every state: (N, 6k) -> (N, H * W), inf where nothing renders."""
    count = len(states)
    pixel_count = intrinsics.height_px * intrinsics.width_px
    flats: list[np.ndarray] = []
    depths: list[np.ndarray] = []
    for part_index, points in enumerate(vertices):
        camera_points = transform_points(states, points, part_index * POSE_DIMENSION)
        flat, z = project_points(camera_points, intrinsics)
        flats.append(flat)
        depths.append(z)

    flat = np.concatenate(flats, axis=1)
    z = np.concatenate(depths, axis=1)
    valid = flat >= 0
    offsets = (np.arange(count, dtype=np.int64) * pixel_count)[:, None]

    image = np.full(count * pixel_count, np.inf, dtype=np.float64)
    np.minimum.at(image, (flat + offsets)[valid], z[valid])
    return image.reshape(count, pixel_count)


def render_depth_image(
    object_model: ObjectModel,
    poses: Sequence[ObjectPose],
    camera_data: CameraData,
    *,
    background_depth_m: float | None = None,
) -> np.ndarray:
    """Full-resolution synthetic depth frame of the objects at ``poses``.

    Pixels without an object get ``background_depth_m`` or NaN.
    """
    if len(poses) != object_model.count_parts:
        raise ValueError("one pose per object is required")
    intrinsics = camera_data.intrinsics
    state = poses_to_state(poses)[None, :]
    depth = render_depth_images(state, object_model.vertices, intrinsics)[0]
    fill = np.nan if background_depth_m is None else float(background_depth_m)
    depth = np.where(np.isfinite(depth), depth, fill)
    return depth.reshape(intrinsics.height_px, intrinsics.width_px)


def _pixel_log_ratio(
    predicted: np.ndarray,
    observed: np.ndarray,
    occlusion: np.ndarray,
    params: ObservationModelParameters,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-pixel log(p(y | x) / p_background(y)) and occlusion posterior.

    All inputs must already be finite; masking happens in the caller.
    """
    tail = params.tail_weight / params.max_depth_m
    sigma = params.model_sigma + params.sigma_factor * predicted**2
    residual = (observed - predicted) / sigma
    gaussian = np.exp(-0.5 * residual**2) / (_SQRT_2PI * sigma)
    p_visible = (1.0 - params.tail_weight) * gaussian + tail
    p_occluded = np.where(observed < predicted, (1.0 - params.tail_weight) / predicted, 0.0) + tail
    p_occluded_part = occlusion * p_occluded
    likelihood = np.maximum(p_occluded_part + (1.0 - occlusion) * p_visible, 1e-300)
    log_ratio = np.log(likelihood) + math.log(params.max_depth_m)
    return log_ratio, p_occluded_part / likelihood


class HostDepthObservationModel(ObservationModel):
    """Numpy depth likelihood; particles can be scored across worker threads."""

    def __init__(
        self,
        object_model: ObjectModel,
        camera_data: CameraData,
        params: ObservationModelParameters,
        *,
        score_workers: int = 1,
        score_batch_size: int = DEFAULT_SCORE_BATCH_SIZE,
    ) -> None:
        if score_batch_size <= 0:
            raise ValueError("score_batch_size must be > 0")
        self._object_model = object_model
        self._camera_data = camera_data
        self._params = params
        self._intrinsics = camera_data.scaled_intrinsics
        self._pixel_count = camera_data.pixel_count
        self._vertices = tuple(np.asarray(points, dtype=np.float64) for points in object_model.vertices)
        self._state_dimension = object_model.state_dimension
        self._score_workers = _normalize_worker_count(score_workers)
        self._score_batch_size = int(score_batch_size)
        self._occlusion_factor, self._occlusion_stationary = _occlusion_transition(params)
        self._observation: np.ndarray | None = None
        self._occlusions = self._initial_occlusions()
        self._closed = False

    @property
    def backend(self) -> ComputeBackend:
        return ComputeBackend.HOST

    @property
    def camera_data(self) -> CameraData:
        return self._camera_data

    @property
    def occlusions(self) -> np.ndarray:
        return self._occlusions

    def _initial_occlusions(self) -> np.ndarray:
        return np.full((1, self._pixel_count), self._params.initial_occlusion_prob, dtype=np.float64)

    def _require_open(self) -> None:
        if self._closed:
            raise ValueError("observation model has been closed")

    def set_observation(self, depth_image: np.ndarray) -> None:
        self._require_open()
        self._observation = _prepare_depth_image(depth_image, self._camera_data, self._params)

    def reset_occlusions(self) -> None:
        self._require_open()
        self._occlusions = self._initial_occlusions()

    def _score_chunk(
        self,
        states: np.ndarray,
        occlusion: np.ndarray,
        observation: np.ndarray,
        *,
        with_posterior: bool,
    ) -> tuple[np.ndarray, np.ndarray | None]:
        predicted = render_depth_images(states, self._vertices, self._intrinsics)
        observed = np.broadcast_to(observation[None, :], predicted.shape)
        valid = np.isfinite(predicted) & np.isfinite(observed)

        log_ratio, posterior = _pixel_log_ratio(
            np.where(valid, predicted, 1.0),
            np.where(valid, observed, 1.0),
            occlusion,
            self._params,
        )
        log_likelihoods = np.where(valid, log_ratio, 0.0).sum(axis=1)
        if not with_posterior:
            return (log_likelihoods, None)
        return (log_likelihoods, np.where(valid, posterior, occlusion))

    def log_likelihoods(
        self,
        states: np.ndarray,
        occlusion_indices: np.ndarray,
        *,
        commit: bool = False,
    ) -> np.ndarray:
        self._require_open()
        if self._observation is None:
            raise ValueError("set_observation must be called before scoring particles")
        states = _check_states(states, self._state_dimension)
        indices = np.asarray(occlusion_indices, dtype=np.int64)
        if indices.shape != (len(states),):
            raise ValueError("occlusion_indices must hold one entry per particle")
        if len(states) == 0:
            return np.empty((0,), dtype=np.float64)

        observation = self._observation
        occlusions = self._occlusions
        batches = _particle_batches(len(states), self._score_batch_size)

        def _score(batch: np.ndarray) -> tuple[np.ndarray, np.ndarray | None]:
            return self._score_chunk(
                states[batch],
                occlusions[indices[batch]],
                observation,
                with_posterior=commit,
            )

        worker_count = min(self._score_workers, len(batches))
        if worker_count > 1:
            with ThreadPoolExecutor(max_workers=worker_count) as executor:
                results = list(executor.map(_score, batches))
        else:
            results = [_score(batch) for batch in batches]

        log_likelihoods = np.concatenate([result[0] for result in results])
        if commit:
            posterior = np.concatenate([result[1] for result in results], axis=0)
            self._occlusions = self._occlusion_stationary + self._occlusion_factor * (
                posterior - self._occlusion_stationary
            )
        return log_likelihoods

    def evaluate(self, state: np.ndarray, depth_image: np.ndarray) -> float:
        self._require_open()
        states = _check_states(state, self._state_dimension)
        observation = _prepare_depth_image(depth_image, self._camera_data, self._params)
        log_likelihoods, _ = self._score_chunk(
            states,
            self._initial_occlusions(),
            observation,
            with_posterior=False,
        )
        return float(log_likelihoods[0])

    def close(self) -> None:
        self._observation = None
        self._occlusions = np.empty((0, self._pixel_count), dtype=np.float64)
        self._closed = True


class AcceleratedDepthObservationModel(ObservationModel):
    """Torch depth likelihood; runs on CUDA when available, otherwise on torch CPU."""

    def __init__(
        self,
        object_model: ObjectModel,
        camera_data: CameraData,
        params: ObservationModelParameters,
        *,
        prefer_cuda: bool = True,
        score_batch_size: int = DEFAULT_SCORE_BATCH_SIZE,
    ) -> None:
        if score_batch_size <= 0:
            raise ValueError("score_batch_size must be > 0")
        try:
            import torch
        except ImportError as exc:
            raise ImportError("torch is required for the accelerated observation model") from exc

        self._torch: Any = torch
        use_cuda = bool(prefer_cuda and torch.cuda.is_available())
        self._device = torch.device("cuda" if use_cuda else "cpu")
        self._dtype = torch.float32

        self._score_batch_size = int(score_batch_size)
        self._camera_data = camera_data
        self._params = params
        self._intrinsics = camera_data.scaled_intrinsics
        self._pixel_count = camera_data.pixel_count
        self._state_dimension = object_model.state_dimension
        self._vertices = [
            torch.as_tensor(np.asarray(points), dtype=self._dtype, device=self._device)
            for points in object_model.vertices
        ]
        self._occlusion_factor, self._occlusion_stationary = _occlusion_transition(params)
        self._observation: Any = None
        self._occlusions: Any = self._initial_occlusions()
        self._closed = False
        logger.info(f"Accelerated observation model on device {self._device}")

    @property
    def backend(self) -> ComputeBackend:
        return ComputeBackend.ACCELERATED

    @property
    def device(self) -> Any:
        return self._device

    @property
    def occlusions(self) -> np.ndarray:
        return self._occlusions.detach().cpu().numpy().astype(np.float64, copy=False)

    def _initial_occlusions(self) -> Any:
        return self._torch.full(
            (1, self._pixel_count),
            self._params.initial_occlusion_prob,
            dtype=self._dtype,
            device=self._device,
        )

    def _require_open(self) -> None:
        if self._closed:
            raise ValueError("observation model has been closed")

    def _to_tensor(self, values: np.ndarray) -> Any:
        return self._torch.as_tensor(
            np.asarray(values, dtype=np.float32), dtype=self._dtype, device=self._device
        )

    def set_observation(self, depth_image: np.ndarray) -> None:
        self._require_open()
        self._observation = self._to_tensor(
            _prepare_depth_image(depth_image, self._camera_data, self._params)
        )

    def reset_occlusions(self) -> None:
        self._require_open()
        self._occlusions = self._initial_occlusions()

    def _rotation_matrices(self, rotation_vectors: Any) -> Any:
        torch = self._torch
        theta = torch.linalg.norm(rotation_vectors, dim=-1, keepdim=True)
        axis = rotation_vectors / torch.where(theta < 1e-12, torch.ones_like(theta), theta)
        x, y, z = axis[:, 0], axis[:, 1], axis[:, 2]
        zeros = torch.zeros_like(x)
        skew = torch.stack(
            [
                torch.stack([zeros, -z, y], dim=-1),
                torch.stack([z, zeros, -x], dim=-1),
                torch.stack([-y, x, zeros], dim=-1),
            ],
            dim=-2,
        )
        sin = torch.sin(theta)[..., None]
        cos = torch.cos(theta)[..., None]
        identity = torch.eye(3, dtype=self._dtype, device=self._device).expand_as(skew)
        return identity + sin * skew + (1.0 - cos) * (skew @ skew)

    def _render(self, states_t: Any) -> Any:
        torch = self._torch
        intr = self._intrinsics
        count = int(states_t.shape[0])
        image = torch.full(
            (count * self._pixel_count,), float("inf"), dtype=self._dtype, device=self._device
        )
        offsets = torch.arange(count, device=self._device, dtype=torch.int64) * self._pixel_count
        for part_index, points in enumerate(self._vertices):
            offset = part_index * POSE_DIMENSION
            rotations = self._rotation_matrices(states_t[:, offset + 3 : offset + 6])
            camera_points = torch.einsum("nij,pj->npi", rotations, points) + states_t[
                :, None, offset : offset + 3
            ]
            z = camera_points[..., 2]
            visible = z > 1e-6
            safe_z = torch.where(visible, z, torch.ones_like(z))
            col = torch.floor(intr.fx_px * camera_points[..., 0] / safe_z + intr.cx_px)
            row = torch.floor(intr.fy_px * camera_points[..., 1] / safe_z + intr.cy_px)
            inside = (
                visible
                & torch.isfinite(col)
                & torch.isfinite(row)
                & (col >= 0)
                & (col < intr.width_px)
                & (row >= 0)
                & (row < intr.height_px)
            )
            flat = (
                torch.where(inside, row, torch.zeros_like(row)).to(torch.int64) * intr.width_px
                + torch.where(inside, col, torch.zeros_like(col)).to(torch.int64)
                + offsets[:, None]
            )
            image.scatter_reduce_(0, flat[inside], z[inside], reduce="amin", include_self=True)
        return image.reshape(count, self._pixel_count)

    def _score(self, states_t: Any, occlusion: Any, observation: Any) -> tuple[Any, Any]:
        torch = self._torch
        params = self._params
        predicted = self._render(states_t)
        observed = observation[None, :].expand_as(predicted)
        valid = torch.isfinite(predicted) & torch.isfinite(observed)
        ones = torch.ones_like(predicted)
        predicted = torch.where(valid, predicted, ones)
        observed = torch.where(valid, observed, ones)

        tail = params.tail_weight / params.max_depth_m
        sigma = params.model_sigma + params.sigma_factor * predicted**2
        residual = (observed - predicted) / sigma
        gaussian = torch.exp(-0.5 * residual**2) / (_SQRT_2PI * sigma)
        p_visible = (1.0 - params.tail_weight) * gaussian + tail
        p_occluded = (
            torch.where(
                observed < predicted,
                (1.0 - params.tail_weight) / predicted,
                torch.zeros_like(predicted),
            )
            + tail
        )
        p_occluded_part = occlusion * p_occluded
        likelihood = torch.clamp(p_occluded_part + (1.0 - occlusion) * p_visible, min=1e-30)
        log_ratio = torch.log(likelihood) + math.log(params.max_depth_m)
        log_likelihoods = torch.where(valid, log_ratio, torch.zeros_like(log_ratio)).sum(dim=1)
        posterior = torch.where(valid, p_occluded_part / likelihood, occlusion)
        return log_likelihoods, posterior

    def log_likelihoods(
        self,
        states: np.ndarray,
        occlusion_indices: np.ndarray,
        *,
        commit: bool = False,
    ) -> np.ndarray:
        self._require_open()
        if self._observation is None:
            raise ValueError("set_observation must be called before scoring particles")
        states = _check_states(states, self._state_dimension)
        indices = np.asarray(occlusion_indices, dtype=np.int64)
        if indices.shape != (len(states),):
            raise ValueError("occlusion_indices must hold one entry per particle")
        if len(states) == 0:
            return np.empty((0,), dtype=np.float64)

        torch = self._torch
        states_t = self._to_tensor(states)
        index_t = torch.as_tensor(indices, dtype=torch.int64, device=self._device)
        scores: list[Any] = []
        posteriors: list[Any] = []
        with torch.no_grad():
            for start in range(0, len(states), self._score_batch_size):
                stop = min(start + self._score_batch_size, len(states))
                batch_scores, batch_posterior = self._score(
                    states_t[start:stop],
                    self._occlusions[index_t[start:stop]],
                    self._observation,
                )
                scores.append(batch_scores)
                if commit:
                    posteriors.append(batch_posterior)
            if commit:
                posterior = torch.cat(posteriors, dim=0)
                self._occlusions = self._occlusion_stationary + self._occlusion_factor * (
                    posterior - self._occlusion_stationary
                )
        return torch.cat(scores).detach().cpu().numpy().astype(np.float64)

    def evaluate(self, state: np.ndarray, depth_image: np.ndarray) -> float:
        self._require_open()
        states = _check_states(state, self._state_dimension)
        observation = self._to_tensor(
            _prepare_depth_image(depth_image, self._camera_data, self._params)
        )
        with self._torch.no_grad():
            log_likelihoods, _ = self._score(
                self._to_tensor(states), self._initial_occlusions(), observation
            )
        return float(log_likelihoods[0].item())

    def close(self) -> None:
        if self._closed:
            return
        self._vertices = []
        self._observation = None
        self._occlusions = None
        self._closed = True
        if self._device.type == "cuda":
            self._torch.cuda.empty_cache()


def create_observation_model(
    use_accelerated_backend: bool,
    object_model: ObjectModel,
    camera_data: CameraData,
    params: ObservationModelParameters,
    *,
    accelerated_available: bool | None = None,
    score_workers: int = 1,
    score_batch_size: int = DEFAULT_SCORE_BATCH_SIZE,
    prefer_cuda: bool = True,
) -> ObservationModel:
    if not use_accelerated_backend:
        return HostDepthObservationModel(
            object_model,
            camera_data,
            params,
            score_workers=score_workers,
            score_batch_size=score_batch_size,
        )

    available = (
        ACCELERATED_BACKEND_AVAILABLE if accelerated_available is None else accelerated_available
    )
    if not available:
        raise BackendUnavailable()
    return AcceleratedDepthObservationModel(
        object_model,
        camera_data,
        params,
        prefer_cuda=prefer_cuda,
        score_batch_size=score_batch_size,
    )
