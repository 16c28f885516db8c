from __future__ import annotations

import numpy as np
import pytest

from posetrack import observation as observation_module
from posetrack.config import ObservationModelParameters
from posetrack.errors import BackendUnavailable
from posetrack.model import CameraData, CameraIntrinsics, ComputeBackend, ObjectModel, ObjectPose
from posetrack.model import poses_to_state
from posetrack.observation import (
    HostDepthObservationModel,
    create_observation_model,
    render_depth_image,
    render_depth_images,
)


def _camera(downsampling_factor: int = 1) -> CameraData:
    return CameraData(
        intrinsics=CameraIntrinsics(
            width_px=80,
            height_px=60,
            fx_px=80.0,
            fy_px=80.0,
            cx_px=40.0,
            cy_px=30.0,
        ),
        downsampling_factor=downsampling_factor,
    )


def _box_points(size: tuple[float, float, float], steps: int = 10) -> np.ndarray:
    axis = np.linspace(-0.5, 0.5, steps)
    grid = np.stack(np.meshgrid(axis, axis, axis, indexing="ij"), axis=-1).reshape(-1, 3)
    surface = np.any(np.isclose(np.abs(grid), 0.5), axis=1)
    return grid[surface] * np.asarray(size)


def _object_model() -> ObjectModel:
    return ObjectModel(
        names=("left", "right"),
        vertices=(_box_points((0.10, 0.10, 0.06)), _box_points((0.08, 0.12, 0.06))),
    )


def _poses() -> list[ObjectPose]:
    return [
        ObjectPose(position=(-0.12, 0.0, 0.8)),
        ObjectPose(position=(0.12, 0.02, 0.85), rotation_vector=(0.0, 0.2, 0.0)),
    ]


def _shifted(poses: list[ObjectPose], dx: float) -> np.ndarray:
    state = poses_to_state(poses)
    state[0] += dx
    return state


def test_render_depth_image_shows_front_faces_over_background() -> None:
    model = _object_model()
    depth = render_depth_image(model, _poses(), _camera(), background_depth_m=1.5)

    assert depth.shape == (60, 80)
    assert np.isclose(depth.min(), 0.8 - 0.03)
    assert np.count_nonzero(depth < 1.5) > 50
    assert np.all(depth <= 1.5)

    sparse = render_depth_image(model, _poses(), _camera())
    assert np.isnan(sparse).any()
    assert np.nanmin(sparse) == depth.min()


def test_render_uses_z_buffer_between_objects() -> None:
    model = ObjectModel(names=("near", "far"), vertices=(_box_points((0.1, 0.1, 0.02), steps=30),) * 2)
    state = poses_to_state(
        [ObjectPose(position=(0.0, 0.0, 0.5)), ObjectPose(position=(0.0, 0.0, 0.9))]
    )

    depth = render_depth_images(state[None, :], model.vertices, _camera().intrinsics)[0]

    finite = depth[np.isfinite(depth)]
    # the far box projects entirely inside the near one
    assert finite.max() < 0.52
    assert np.isclose(finite.min(), 0.49)


def test_true_pose_scores_higher_than_shifted_pose() -> None:
    model = _object_model()
    camera = _camera()
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    observation = HostDepthObservationModel(model, camera, ObservationModelParameters())

    true_score = observation.evaluate(poses_to_state(_poses()), depth)
    shifted_score = observation.evaluate(_shifted(_poses(), 0.02), depth)

    assert true_score > shifted_score
    assert true_score > 0.0


def test_unobserved_pixels_contribute_nothing() -> None:
    model = _object_model()
    camera = _camera()
    observation = HostDepthObservationModel(model, camera, ObservationModelParameters())

    empty = np.full((60, 80), np.nan)
    assert observation.evaluate(poses_to_state(_poses()), empty) == 0.0


def test_downsampled_and_full_resolution_frames_are_accepted() -> None:
    model = _object_model()
    camera = _camera(downsampling_factor=2)
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    observation = HostDepthObservationModel(model, camera, ObservationModelParameters())
    state = poses_to_state(_poses())

    full_score = observation.evaluate(state, depth)
    downsampled_score = observation.evaluate(state, depth[::2, ::2])

    assert full_score == downsampled_score
    with pytest.raises(ValueError):
        observation.evaluate(state, np.ones((7, 7)))


def test_log_likelihoods_commit_occlusion_memory_per_particle() -> None:
    model = _object_model()
    camera = _camera()
    observation = HostDepthObservationModel(model, camera, ObservationModelParameters())
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    states = np.stack([poses_to_state(_poses()), _shifted(_poses(), 0.03), _shifted(_poses(), -0.03)])

    with pytest.raises(ValueError, match="set_observation"):
        observation.log_likelihoods(states, np.zeros(3, dtype=np.int64))

    observation.set_observation(depth)
    scores = observation.log_likelihoods(states, np.zeros(3, dtype=np.int64))
    assert scores.shape == (3,)
    assert observation.occlusions.shape == (1, camera.pixel_count)
    assert np.argmax(scores) == 0

    committed = observation.log_likelihoods(states, np.zeros(3, dtype=np.int64), commit=True)
    assert np.allclose(committed, scores)
    assert observation.occlusions.shape == (3, camera.pixel_count)
    assert np.all((observation.occlusions >= 0.0) & (observation.occlusions <= 1.0))

    with pytest.raises(ValueError):
        observation.log_likelihoods(states, np.zeros(2, dtype=np.int64))

    observation.reset_occlusions()
    assert observation.occlusions.shape == (1, camera.pixel_count)


def test_threaded_scoring_matches_single_thread() -> None:
    model = _object_model()
    camera = _camera()
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    rng = np.random.default_rng(5)
    states = poses_to_state(_poses())[None, :] + rng.normal(scale=0.01, size=(20, 12))
    indices = np.zeros(20, dtype=np.int64)

    single = HostDepthObservationModel(model, camera, ObservationModelParameters(), score_workers=1)
    threaded = HostDepthObservationModel(
        model, camera, ObservationModelParameters(), score_workers=3, score_batch_size=6
    )
    single.set_observation(depth)
    threaded.set_observation(depth)

    assert np.allclose(
        single.log_likelihoods(states, indices, commit=True),
        threaded.log_likelihoods(states, indices, commit=True),
    )
    assert np.allclose(single.occlusions, threaded.occlusions)


def test_batched_scoring_matches_scoring_all_at_once() -> None:
    model = _object_model()
    camera = _camera()
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    rng = np.random.default_rng(9)
    states = poses_to_state(_poses())[None, :] + rng.normal(scale=0.01, size=(23, 12))

    whole = HostDepthObservationModel(model, camera, ObservationModelParameters(), score_batch_size=1000)
    batched = HostDepthObservationModel(model, camera, ObservationModelParameters(), score_batch_size=5)
    for observation in (whole, batched):
        observation.set_observation(depth)
        observation.log_likelihoods(states, np.zeros(23, dtype=np.int64), commit=True)

    # second pass reads the committed per-particle occlusion rows
    indices = rng.integers(0, 23, size=23)
    whole_scores = whole.log_likelihoods(states, indices, commit=True)
    batched_scores = batched.log_likelihoods(states, indices, commit=True)

    assert np.allclose(whole_scores, batched_scores)
    assert np.allclose(whole.occlusions, batched.occlusions)
    assert batched.occlusions.shape == (23, camera.pixel_count)


def test_scoring_renders_at_most_one_batch_at_a_time(monkeypatch: pytest.MonkeyPatch) -> None:
    rendered_rows: list[int] = []
    real_render = observation_module.render_depth_images

    def _recording_render(states, vertices, intrinsics):
        rendered_rows.append(len(states))
        return real_render(states, vertices, intrinsics)

    model = _object_model()
    camera = _camera()
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    observation = HostDepthObservationModel(
        model, camera, ObservationModelParameters(), score_batch_size=8
    )
    observation.set_observation(depth)
    monkeypatch.setattr(observation_module, "render_depth_images", _recording_render)
    states = np.repeat(poses_to_state(_poses())[None, :], 50, axis=0)

    scores = observation.log_likelihoods(states, np.zeros(50, dtype=np.int64), commit=True)

    assert scores.shape == (50,)
    assert sum(rendered_rows) == 50
    assert max(rendered_rows) == 8


def test_score_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        HostDepthObservationModel(
            _object_model(), _camera(), ObservationModelParameters(), score_batch_size=0
        )


def test_empty_population_scores_to_empty_array() -> None:
    observation = HostDepthObservationModel(_object_model(), _camera(), ObservationModelParameters())
    observation.set_observation(np.ones((60, 80)))
    scores = observation.log_likelihoods(np.empty((0, 12)), np.empty(0, dtype=np.int64))
    assert scores.shape == (0,)


def test_closed_model_refuses_work() -> None:
    observation = HostDepthObservationModel(_object_model(), _camera(), ObservationModelParameters())
    observation.close()
    with pytest.raises(ValueError, match="closed"):
        observation.set_observation(np.ones((60, 80)))


def test_factory_returns_host_model_for_host_flag() -> None:
    observation = create_observation_model(
        False,
        _object_model(),
        _camera(),
        ObservationModelParameters(),
        accelerated_available=False,
    )
    assert isinstance(observation, HostDepthObservationModel)
    assert observation.backend is ComputeBackend.HOST


def test_factory_raises_backend_unavailable_before_constructing(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*args, **kwargs):
        raise AssertionError("accelerated model must not be constructed")

    monkeypatch.setattr(observation_module, "AcceleratedDepthObservationModel", _fail)

    with pytest.raises(BackendUnavailable) as excinfo:
        create_observation_model(
            True,
            _object_model(),
            _camera(),
            ObservationModelParameters(),
            accelerated_available=False,
        )
    assert str(excinfo.value) == (
        "Tracker has not been built with accelerated backend support (torch is not installed)."
    )


def test_capability_flag_reflects_torch_importability() -> None:
    import importlib.util

    expected = importlib.util.find_spec("torch") is not None
    assert observation_module.ACCELERATED_BACKEND_AVAILABLE is expected


def test_accelerated_model_prefers_true_pose() -> None:
    pytest.importorskip("torch")
    model = _object_model()
    camera = _camera()
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)

    observation = create_observation_model(
        True,
        model,
        camera,
        ObservationModelParameters(),
        accelerated_available=True,
        prefer_cuda=False,
    )
    try:
        assert observation.backend is ComputeBackend.ACCELERATED
        states = np.stack([poses_to_state(_poses()), _shifted(_poses(), 0.02)])
        observation.set_observation(depth)
        scores = observation.log_likelihoods(states, np.zeros(2, dtype=np.int64), commit=True)
        assert scores.shape == (2,)
        assert scores[0] > scores[1]
        assert observation.occlusions.shape == (2, camera.pixel_count)

        host = HostDepthObservationModel(model, camera, ObservationModelParameters())
        host_score = host.evaluate(states[0], depth)
        assert observation.evaluate(states[0], depth) == pytest.approx(host_score, rel=0.05, abs=1.0)
    finally:
        observation.close()


def test_accelerated_batched_scoring_matches_scoring_all_at_once() -> None:
    pytest.importorskip("torch")
    model = _object_model()
    camera = _camera()
    depth = render_depth_image(model, _poses(), camera, background_depth_m=1.5)
    states = poses_to_state(_poses())[None, :] + np.random.default_rng(2).normal(scale=0.01, size=(11, 12))
    indices = np.zeros(11, dtype=np.int64)

    scores = []
    occlusions = []
    for batch_size in (100, 3):
        observation = create_observation_model(
            True,
            model,
            camera,
            ObservationModelParameters(),
            accelerated_available=True,
            score_batch_size=batch_size,
            prefer_cuda=False,
        )
        try:
            observation.set_observation(depth)
            scores.append(observation.log_likelihoods(states, indices, commit=True))
            occlusions.append(observation.occlusions)
        finally:
            observation.close()

    assert np.allclose(scores[0], scores[1], rtol=1e-5, atol=1e-3)
    assert np.allclose(occlusions[0], occlusions[1], atol=1e-6)
