"""posetrack -- Rigid-object 6-DoF pose tracking from depth frames.

Core modules:
  - model:            Data model (CameraData, ObjectModel, ObjectPose, ...) and interfaces
  - config:           Frozen tracker configuration with dict/JSON loading
  - object_model:     PLY/OBJ vertex-cloud loading
  - transition:       Brownian and object (kinematic) transition models
  - observation:      Host (numpy) and accelerated (torch) depth likelihoods
  - sampling:         Sampling block partitioning of the joint state
  - particle_filter:  Adaptive coordinate particle filter and resamplers
  - tracker:          ObjectTracker frame loop with moving-average output
  - builder:          build_tracker, configuration -> ready-to-run tracker
"""

from .builder import (
    build_tracker,
    create_filter,
    create_object_model,
    select_tracker_parameters,
)
from .config import (
    BrownianTransitionParameters,
    ObjectTransitionParameters,
    ObservationModelParameters,
    TrackerConfig,
    TrackerParameters,
    load_tracker_config,
)
from .errors import BackendUnavailable, PoseTrackError, TrackerNotInitialized
from .model import (
    CameraData,
    CameraIntrinsics,
    ComputeBackend,
    FilterStepResult,
    ObjectModel,
    ObjectPose,
    ObjectResourceIdentifier,
    ObservationModel,
    Resampler,
    TrackResult,
    TransitionModel,
)
from .object_model import load_mesh_vertices, load_object_model
from .observation import (
    ACCELERATED_BACKEND_AVAILABLE,
    AcceleratedDepthObservationModel,
    HostDepthObservationModel,
    create_observation_model,
    render_depth_image,
)
from .particle_filter import (
    AdaptiveCoordinateParticleFilter,
    MultinomialResampler,
    StratifiedResampler,
    SystematicResampler,
    build_resampler,
)
from .sampling import create_sampling_blocks, validate_sampling_blocks
from .tracker import ObjectTracker
from .transition import (
    BrownianMotionModel,
    ObjectTransitionModel,
    create_brownian_transition_model,
    create_object_transition_model,
    create_transition_model,
)

__all__ = [
    "ACCELERATED_BACKEND_AVAILABLE",
    "AcceleratedDepthObservationModel",
    "AdaptiveCoordinateParticleFilter",
    "BackendUnavailable",
    "BrownianMotionModel",
    "BrownianTransitionParameters",
    "CameraData",
    "CameraIntrinsics",
    "ComputeBackend",
    "FilterStepResult",
    "HostDepthObservationModel",
    "MultinomialResampler",
    "ObjectModel",
    "ObjectPose",
    "ObjectResourceIdentifier",
    "ObjectTracker",
    "ObjectTransitionModel",
    "ObjectTransitionParameters",
    "ObservationModel",
    "ObservationModelParameters",
    "PoseTrackError",
    "Resampler",
    "StratifiedResampler",
    "SystematicResampler",
    "TrackResult",
    "TrackerConfig",
    "TrackerNotInitialized",
    "TrackerParameters",
    "TransitionModel",
    "build_resampler",
    "build_tracker",
    "create_brownian_transition_model",
    "create_filter",
    "create_object_model",
    "create_object_transition_model",
    "create_observation_model",
    "create_sampling_blocks",
    "create_transition_model",
    "load_mesh_vertices",
    "load_object_model",
    "load_tracker_config",
    "render_depth_image",
    "select_tracker_parameters",
    "validate_sampling_blocks",
]
