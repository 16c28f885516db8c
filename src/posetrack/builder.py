from __future__ import annotations

"""Tracker construction: configuration in, ready-to-run ObjectTracker out."""

import logging
from typing import Callable, Sequence

import numpy as np

from .config import TrackerConfig, TrackerParameters
from .model import (
    POSE_DIMENSION,
    CameraData,
    ObjectModel,
    ObjectResourceIdentifier,
    ObservationModel,
    TransitionModel,
)
from .object_model import load_object_model
from .observation import create_observation_model
from .particle_filter import AdaptiveCoordinateParticleFilter, build_resampler
from .sampling import create_sampling_blocks
from .tracker import ObjectTracker
from .transition import create_transition_model

logger = logging.getLogger("posetrack.builder")

ObjectModelLoader = Callable[[ObjectResourceIdentifier], ObjectModel]


def create_object_model(
    ori: ObjectResourceIdentifier,
    loader: ObjectModelLoader = load_object_model,
) -> ObjectModel:
    return loader(ori)


def select_tracker_parameters(config: TrackerConfig, use_accelerated_backend: bool) -> TrackerParameters:
    if use_accelerated_backend:
        return config.accelerated_backend_tracker_params
    return config.default_backend_tracker_params


def create_filter(
    *,
    transition_model: TransitionModel,
    observation_model: ObservationModel,
    sampling_blocks: Sequence[Sequence[int]],
    parameters: TrackerParameters,
    config: TrackerConfig,
    rng: np.random.Generator,
) -> AdaptiveCoordinateParticleFilter:
    return AdaptiveCoordinateParticleFilter(
        transition_model=transition_model,
        observation_model=observation_model,
        sampling_blocks=sampling_blocks,
        parameters=parameters,
        resampler=build_resampler(config.resampler),
        rng=rng,
        sample_growth_factor=config.sample_growth_factor,
        resample_ess_ratio=config.resample_ess_ratio,
    )


def build_tracker(
    config: TrackerConfig,
    camera_data: CameraData,
    *,
    object_model_loader: ObjectModelLoader = load_object_model,
    accelerated_available: bool | None = None,
) -> ObjectTracker:
    """Build a tracker or raise; no partially built tracker is ever returned.

    Errors from the object model loader and observation model factory
    (including ``BackendUnavailable``) propagate unchanged. If a step after the
    observation model fails, the observation model is closed first.
    """
    object_model = create_object_model(config.object_resource_identifier, object_model_loader)
    state_dimension = object_model.state_dimension
    transition_model = create_transition_model(config, state_dimension, state_dimension)

    observation_model = create_observation_model(
        config.use_accelerated_backend,
        object_model,
        camera_data,
        config.observation,
        accelerated_available=accelerated_available,
        score_workers=config.score_workers,
        score_batch_size=config.score_batch_size,
    )
    try:
        sampling_blocks = create_sampling_blocks(object_model.count_parts, POSE_DIMENSION)
        parameters = select_tracker_parameters(config, config.use_accelerated_backend)
        rng = np.random.default_rng(config.seed)
        particle_filter = create_filter(
            transition_model=transition_model,
            observation_model=observation_model,
            sampling_blocks=sampling_blocks,
            parameters=parameters,
            config=config,
            rng=rng,
        )
        tracker = ObjectTracker(
            particle_filter=particle_filter,
            object_model=object_model,
            update_rate=parameters.update_rate,
            initial_position_std_m=config.initial_position_std_m,
            initial_rotation_std_rad=config.initial_rotation_std_rad,
            rng=rng,
        )
    except BaseException:
        observation_model.close()
        raise

    logger.info(
        f"Built tracker: {object_model.count_parts} objects, backend={observation_model.backend.value}, "
        f"transition={config.active_transition}, evaluation_count={parameters.evaluation_count}, "
        f"max_sample_count={parameters.max_sample_count}, "
        f"max_kl_divergence={parameters.max_kl_divergence}"
    )
    return tracker
