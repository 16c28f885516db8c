from __future__ import annotations

"""Tracker configuration: frozen dataclasses plus dict/JSON loading."""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Sequence

from .model import ObjectResourceIdentifier

TRANSITION_CHOICES = ("object", "brownian")


@dataclass(frozen=True)
class TrackerParameters:
    evaluation_count: int = 100
    max_sample_count: int = 1000
    update_rate: float = 1.0
    max_kl_divergence: float = 1.0

    def __post_init__(self) -> None:
        if self.evaluation_count <= 0:
            raise ValueError("evaluation_count must be > 0")
        if self.max_sample_count < self.evaluation_count:
            raise ValueError("max_sample_count must be >= evaluation_count")
        if not 0.0 < self.update_rate <= 1.0:
            raise ValueError("update_rate must be in (0, 1]")
        if self.max_kl_divergence <= 0.0:
            raise ValueError("max_kl_divergence must be > 0")


@dataclass(frozen=True)
class ObservationModelParameters:
    # depth pixel noise
    tail_weight: float = 0.01
    model_sigma: float = 0.003
    sigma_factor: float = 0.00142478
    max_depth_m: float = 6.0
    # occlusion memory
    initial_occlusion_prob: float = 0.1
    p_occluded_visible: float = 0.1
    p_occluded_occluded: float = 0.7
    delta_time: float = 1.0 / 30.0

    def __post_init__(self) -> None:
        for name in (
            "tail_weight",
            "initial_occlusion_prob",
            "p_occluded_visible",
            "p_occluded_occluded",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be a probability")
        if self.model_sigma <= 0.0:
            raise ValueError("model_sigma must be > 0")
        if self.sigma_factor < 0.0:
            raise ValueError("sigma_factor must be >= 0")
        if self.max_depth_m <= 0.0:
            raise ValueError("max_depth_m must be > 0")
        if self.delta_time <= 0.0:
            raise ValueError("delta_time must be > 0")


@dataclass(frozen=True)
class ObjectTransitionParameters:
    linear_sigma_x: float = 0.002
    linear_sigma_y: float = 0.002
    linear_sigma_z: float = 0.002
    angular_sigma_x: float = 0.01
    angular_sigma_y: float = 0.01
    angular_sigma_z: float = 0.01
    velocity_factor: float = 0.8
    delta_time: float = 1.0 / 30.0


@dataclass(frozen=True)
class BrownianTransitionParameters:
    linear_sigma: float = 0.01
    angular_sigma: float = 0.05
    delta_time: float = 1.0 / 30.0


@dataclass(frozen=True)
class TrackerConfig:
    object_resource_identifier: ObjectResourceIdentifier
    use_accelerated_backend: bool = False
    default_backend_tracker_params: TrackerParameters = field(default_factory=TrackerParameters)
    accelerated_backend_tracker_params: TrackerParameters = field(
        default_factory=lambda: TrackerParameters(evaluation_count=400, max_sample_count=4000)
    )
    observation: ObservationModelParameters = field(default_factory=ObservationModelParameters)
    object_transition: ObjectTransitionParameters = field(default_factory=ObjectTransitionParameters)
    brownian_transition: BrownianTransitionParameters = field(
        default_factory=BrownianTransitionParameters
    )
    active_transition: str = "object"
    resampler: str = "systematic"
    sample_growth_factor: float = 2.0
    resample_ess_ratio: float = 0.5
    initial_position_std_m: float = 0.01
    initial_rotation_std_rad: float = 0.02
    score_workers: int = 1
    score_batch_size: int = 64
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.active_transition not in TRANSITION_CHOICES:
            raise ValueError(
                "Unknown transition model. Expected one of: " + ", ".join(TRANSITION_CHOICES)
            )
        if self.sample_growth_factor <= 1.0:
            raise ValueError("sample_growth_factor must be > 1")
        if not 0.0 < self.resample_ess_ratio <= 1.0:
            raise ValueError("resample_ess_ratio must be in (0, 1]")
        if self.initial_position_std_m < 0.0 or self.initial_rotation_std_rad < 0.0:
            raise ValueError("initial standard deviations must be >= 0")
        if self.score_batch_size <= 0:
            raise ValueError("score_batch_size must be > 0")

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "TrackerConfig":
        values = dict(data)
        try:
            ori_data = values.pop("object_resource_identifier")
        except KeyError as exc:
            raise ValueError("tracker config requires 'object_resource_identifier'") from exc

        nested: dict[str, Any] = {
            "object_resource_identifier": _resource_identifier_from_mapping(ori_data),
        }
        for key, cls in _NESTED_SECTIONS.items():
            if key in values:
                nested[key] = _dataclass_from_mapping(cls, values.pop(key), section=key)

        _reject_unknown_keys(TrackerConfig, values, section="tracker")
        return TrackerConfig(**nested, **values)


_NESTED_SECTIONS: dict[str, type] = {
    "default_backend_tracker_params": TrackerParameters,
    "accelerated_backend_tracker_params": TrackerParameters,
    "observation": ObservationModelParameters,
    "object_transition": ObjectTransitionParameters,
    "brownian_transition": BrownianTransitionParameters,
}


def _resource_identifier_from_mapping(values: Any) -> ObjectResourceIdentifier:
    section = "object_resource_identifier"
    if not isinstance(values, Mapping):
        raise ValueError(f"config section '{section}' must be a mapping")
    _reject_unknown_keys(ObjectResourceIdentifier, values, section=section)
    try:
        directory = values["directory"]
        meshes = values["meshes"]
    except KeyError as exc:
        raise ValueError(f"config section '{section}' requires {exc.args[0]!r}") from exc
    if isinstance(meshes, (str, bytes)) or not isinstance(meshes, Sequence):
        raise ValueError(f"'{section}.meshes' must be a list of mesh file names")
    return ObjectResourceIdentifier(
        directory=str(directory),
        meshes=tuple(str(mesh) for mesh in meshes),
    )


def _reject_unknown_keys(cls: type, values: Mapping[str, Any], *, section: str) -> None:
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}' config: {', '.join(unknown)}")


def _dataclass_from_mapping(cls: type, values: Mapping[str, Any], *, section: str) -> Any:
    if not isinstance(values, Mapping):
        raise ValueError(f"config section '{section}' must be a mapping")
    _reject_unknown_keys(cls, values, section=section)
    return cls(**values)


def load_tracker_config(path: str | Path) -> TrackerConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"tracker config in {config_path} must be a JSON object")
    return TrackerConfig.from_dict(data)
