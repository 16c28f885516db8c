from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
from dotenv import load_dotenv

from .builder import build_tracker
from .config import TrackerConfig, TrackerParameters, load_tracker_config
from .errors import BackendUnavailable
from .model import CameraData, CameraIntrinsics, ObjectModel, ObjectPose, ObjectResourceIdentifier
from .observation import render_depth_image


def _box_surface(size_xyz: tuple[float, float, float], steps: int = 8) -> np.ndarray:
    half = np.asarray(size_xyz, dtype=np.float64) * 0.5
    axis = np.linspace(-1.0, 1.0, steps)
    grid = np.stack(np.meshgrid(axis, axis, axis, indexing="ij"), axis=-1).reshape(-1, 3)
    on_surface = np.any(np.isclose(np.abs(grid), 1.0), axis=1)
    return grid[on_surface] * half


def _demo_object_model(ori: ObjectResourceIdentifier) -> ObjectModel:
    return ObjectModel(
        names=tuple(ori.meshes),
        vertices=tuple(_box_surface((0.10, 0.08, 0.06)) for _ in ori.meshes),
    )


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Track synthetic boxes in rendered depth frames with the coordinate particle filter."
    )
    parser.add_argument("--config", type=str, default="", help="JSON tracker config; meshes are loaded from disk")
    parser.add_argument("--frames", type=int, default=20, help="number of synthetic frames")
    parser.add_argument("--objects", type=int, default=2, help="number of synthetic boxes")
    parser.add_argument("--accelerated", action="store_true", help="use the accelerated (torch) backend")
    parser.add_argument("--seed", type=int, default=None, help="rng seed")
    parser.add_argument("--debug", action="store_true", help="debug logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    load_dotenv(Path.cwd() / ".env")
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    use_accelerated = args.accelerated or _env_flag("POSETRACK_USE_ACCELERATED_BACKEND", False)
    seed = args.seed
    if seed is None and os.environ.get("POSETRACK_SEED"):
        seed = int(os.environ["POSETRACK_SEED"])

    loader = None
    if args.config:
        base = load_tracker_config(args.config)
        config = replace(
            base,
            use_accelerated_backend=use_accelerated or base.use_accelerated_backend,
            seed=base.seed if seed is None else seed,
        )
    else:
        config = TrackerConfig(
            object_resource_identifier=ObjectResourceIdentifier(
                directory=".",
                meshes=tuple(f"box_{index}" for index in range(args.objects)),
            ),
            use_accelerated_backend=use_accelerated,
            default_backend_tracker_params=TrackerParameters(
                evaluation_count=100, max_sample_count=1000, update_rate=0.8, max_kl_divergence=2.0
            ),
            seed=seed if seed is not None else 7,
        )
        loader = _demo_object_model

    camera = CameraData(
        intrinsics=CameraIntrinsics(width_px=160, height_px=120, fx_px=150.0, fy_px=150.0, cx_px=80.0, cy_px=60.0),
        downsampling_factor=2,
    )
    try:
        if loader is None:
            tracker = build_tracker(config, camera)
        else:
            tracker = build_tracker(config, camera, object_model_loader=loader)
    except BackendUnavailable as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)

    count = tracker.object_model.count_parts
    truth = [
        ObjectPose(position=(-0.15 + 0.3 * index / max(1, count - 1), 0.0, 0.8 + 0.05 * index))
        for index in range(count)
    ]
    with tracker:
        tracker.initialize(truth)
        for frame in range(args.frames):
            truth = [
                ObjectPose(
                    position=(pose.position[0] + 0.002, pose.position[1], pose.position[2]),
                    rotation_vector=(0.0, 0.01 * frame, 0.0),
                )
                for pose in truth
            ]
            depth = render_depth_image(tracker.object_model, truth, camera, background_depth_m=1.5)
            result = tracker.track(depth)
            error_mm = max(
                1000.0 * float(np.linalg.norm(np.subtract(estimate.position, actual.position)))
                for estimate, actual in zip(result.poses, truth)
            )
            print(
                f"frame={result.frame_index} particles={result.sample_count} "
                f"max_position_error_mm={error_mm:.1f}"
            )


if __name__ == "__main__":
    main()
