from __future__ import annotations

import json
from pathlib import Path

import pytest

from posetrack.config import (
    ObservationModelParameters,
    TrackerConfig,
    TrackerParameters,
    load_tracker_config,
)
from posetrack.model import ObjectResourceIdentifier


def test_defaults() -> None:
    config = TrackerConfig(
        object_resource_identifier=ObjectResourceIdentifier(directory="meshes", meshes=("cup.ply",))
    )

    assert config.use_accelerated_backend is False
    assert config.default_backend_tracker_params == TrackerParameters()
    assert config.score_batch_size == 64
    assert config.accelerated_backend_tracker_params.evaluation_count == 400
    assert config.active_transition == "object"
    assert config.resampler == "systematic"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"evaluation_count": 0},
        {"evaluation_count": 200, "max_sample_count": 100},
        {"update_rate": 0.0},
        {"update_rate": 1.5},
        {"max_kl_divergence": 0.0},
    ],
)
def test_tracker_parameters_validation(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        TrackerParameters(**kwargs)


def test_observation_parameters_validation() -> None:
    with pytest.raises(ValueError):
        ObservationModelParameters(tail_weight=1.5)
    with pytest.raises(ValueError):
        ObservationModelParameters(model_sigma=0.0)


def test_tracker_config_rejects_unknown_transition() -> None:
    with pytest.raises(ValueError, match="transition"):
        TrackerConfig(
            object_resource_identifier=ObjectResourceIdentifier(directory=".", meshes=("a.ply",)),
            active_transition="teleport",
        )


def test_object_resource_identifier_requires_meshes() -> None:
    with pytest.raises(ValueError):
        ObjectResourceIdentifier(directory=".", meshes=())


def test_from_dict_with_nested_sections() -> None:
    config = TrackerConfig.from_dict(
        {
            "object_resource_identifier": {"directory": "meshes", "meshes": ["a.ply", "b.ply"]},
            "use_accelerated_backend": False,
            "default_backend_tracker_params": {
                "evaluation_count": 100,
                "max_sample_count": 1000,
                "max_kl_divergence": 0.1,
            },
            "observation": {"max_depth_m": 4.0},
            "active_transition": "brownian",
            "seed": 3,
        }
    )

    assert config.object_resource_identifier.meshes == ("a.ply", "b.ply")
    assert config.object_resource_identifier.count_meshes == 2
    assert config.default_backend_tracker_params.max_kl_divergence == 0.1
    assert config.observation.max_depth_m == 4.0
    assert config.active_transition == "brownian"
    assert config.seed == 3


def test_from_dict_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError, match="frobnicate"):
        TrackerConfig.from_dict(
            {
                "object_resource_identifier": {"directory": ".", "meshes": ["a.ply"]},
                "frobnicate": True,
            }
        )
    with pytest.raises(ValueError, match="observation"):
        TrackerConfig.from_dict(
            {
                "object_resource_identifier": {"directory": ".", "meshes": ["a.ply"]},
                "observation": {"depth_noise": 1.0},
            }
        )
    with pytest.raises(ValueError, match="object_resource_identifier"):
        TrackerConfig.from_dict({})


@pytest.mark.parametrize(
    "identifier",
    [
        {"meshes": ["a.ply"]},
        {"directory": "."},
        ["a.ply"],
        {"directory": ".", "meshes": "a.ply"},
        {"directory": ".", "meshes": ["a.ply"], "format": "ply"},
        {"directory": ".", "meshes": []},
    ],
)
def test_from_dict_rejects_malformed_resource_identifier(identifier) -> None:
    with pytest.raises(ValueError):
        TrackerConfig.from_dict({"object_resource_identifier": identifier})


def test_score_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="score_batch_size"):
        TrackerConfig(
            object_resource_identifier=ObjectResourceIdentifier(directory=".", meshes=("a.ply",)),
            score_batch_size=0,
        )


def test_load_tracker_config_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "tracker.json"
    path.write_text(
        json.dumps(
            {
                "object_resource_identifier": {"directory": str(tmp_path), "meshes": ["box.ply"]},
                "accelerated_backend_tracker_params": {"evaluation_count": 50, "max_sample_count": 60},
            }
        ),
        encoding="utf-8",
    )

    config = load_tracker_config(path)

    assert config.accelerated_backend_tracker_params == TrackerParameters(
        evaluation_count=50, max_sample_count=60
    )

    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_tracker_config(path)
