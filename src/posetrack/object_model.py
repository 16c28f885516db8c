from __future__ import annotations

"""Object model loading: vertex clouds from ASCII PLY or Wavefront OBJ meshes."""

import logging
from pathlib import Path

import numpy as np

from .model import ObjectModel, ObjectResourceIdentifier

logger = logging.getLogger("posetrack.object_model")

# (resolved path, mtime_ns, size, max_points) -> read-only vertices
_VERTEX_CACHE: dict[tuple[str, int, int, int], np.ndarray] = {}


def _parse_ply_header(path: Path) -> tuple[str, int, list[str], int]:
    """Returns (format, vertex count, vertex property names, byte offset of the body)."""
    fmt = ""
    vertex_count = 0
    properties: list[str] = []
    current_element = ""
    with path.open("rb") as f:
        if f.readline().strip() != b"ply":
            raise ValueError(f"Invalid PLY header in {path}")
        while True:
            raw = f.readline()
            if not raw:
                break
            tokens = raw.decode("ascii", errors="replace").split()
            if not tokens:
                continue
            keyword = tokens[0]
            if keyword == "end_header":
                return (fmt, vertex_count, properties, f.tell())
            if keyword == "format" and len(tokens) >= 2:
                fmt = tokens[1]
            elif keyword == "element" and len(tokens) >= 3:
                current_element = tokens[1]
                if current_element == "vertex":
                    vertex_count = int(tokens[2])
            elif keyword == "property" and current_element == "vertex":
                properties.append(tokens[-1])
    raise ValueError(f"Invalid PLY header in {path}")


def _read_ply_vertices(path: Path) -> np.ndarray:
    fmt, vertex_count, properties, body_offset = _parse_ply_header(path)
    if fmt.lower() != "ascii":
        raise ValueError(f"Unsupported PLY format '{fmt}' for {path}; expected ascii")
    try:
        columns = [properties.index(axis) for axis in ("x", "y", "z")]
    except ValueError as exc:
        raise ValueError(f"PLY file {path} is missing x/y/z vertex properties") from exc

    points: list[list[float]] = []
    with path.open("rb") as f:
        f.seek(body_offset)
        for _ in range(vertex_count):
            line = f.readline()
            if not line:
                break
            values = line.split()
            if len(values) > max(columns):
                points.append([float(values[column]) for column in columns])
    return np.asarray(points, dtype=np.float64).reshape(-1, 3)


def _read_obj_vertices(path: Path) -> np.ndarray:
    points: list[tuple[float, float, float]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            parts = line.split()
            if len(parts) >= 4 and parts[0] == "v":
                points.append((float(parts[1]), float(parts[2]), float(parts[3])))
    return np.asarray(points, dtype=np.float64).reshape(-1, 3)


def _subsample(points: np.ndarray, max_points: int) -> np.ndarray:
    if max_points <= 0 or len(points) <= max_points:
        return points
    # evenly strided so the same mesh always yields the same subset
    indices = np.linspace(0, len(points) - 1, num=max_points).round().astype(np.int64)
    return points[indices]


def load_mesh_vertices(path: str | Path, *, max_points: int = 0) -> np.ndarray:
    """Vertices of one mesh file; cached until the file changes on disk."""
    mesh_path = Path(path)
    if not mesh_path.is_file():
        raise FileNotFoundError(f"Object mesh not found: {mesh_path}")

    stat = mesh_path.stat()
    key = (str(mesh_path.resolve()), stat.st_mtime_ns, stat.st_size, int(max_points))
    cached = _VERTEX_CACHE.get(key)
    if cached is not None:
        return cached

    suffix = mesh_path.suffix.lower()
    if suffix == ".ply":
        vertices = _read_ply_vertices(mesh_path)
    elif suffix == ".obj":
        vertices = _read_obj_vertices(mesh_path)
    else:
        raise ValueError(f"Unsupported mesh format '{suffix}' for {mesh_path}")

    if len(vertices) == 0:
        raise ValueError(f"Mesh {mesh_path} has no vertices")

    vertices = _subsample(vertices, max_points)
    vertices.setflags(write=False)
    for stale in [item for item in _VERTEX_CACHE if item[0] == key[0] and item[3] == key[3]]:
        del _VERTEX_CACHE[stale]
    _VERTEX_CACHE[key] = vertices
    return vertices


def load_object_model(
    ori: ObjectResourceIdentifier,
    *,
    max_points_per_object: int = 0,
) -> ObjectModel:
    directory = Path(ori.directory)
    vertices = tuple(
        load_mesh_vertices(directory / mesh, max_points=max_points_per_object)
        for mesh in ori.meshes
    )
    names = tuple(Path(mesh).stem for mesh in ori.meshes)
    logger.info(
        f"Loaded object model from {directory}: "
        + ", ".join(f"{name} ({len(points)} vertices)" for name, points in zip(names, vertices))
    )
    return ObjectModel(names=names, vertices=vertices)
