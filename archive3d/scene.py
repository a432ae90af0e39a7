"""
Scene placement sinks.

The asset loader hands each extracted asset to a sink together with the
entry's transform. Rendering is not done here; a sink only has to put the
payload somewhere with the right placement.
"""

import logging
from io import BytesIO
from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np
import trimesh

from archive3d.geometry import transform_to_matrix
from archive3d.manifest import Transform, file_extension
from archive3d.payload import PayloadHandle

logger = logging.getLogger(__name__)

# Formats trimesh can parse into geometry
TRIMESH_FORMATS = ("glb", "gltf", "obj", "stl", "ply")


class SceneSink(Protocol):
    def place(self, kind: str, handle: PayloadHandle, transform: Transform) -> None:
        """Show `handle` as the scene object for `kind`, replacing any previous one."""
        ...


class MemorySceneSink:
    """Records placements; useful for headless runs and tests."""

    def __init__(self):
        self.placed: Dict[str, Tuple[PayloadHandle, Transform]] = {}
        self.history: List[Tuple[str, str]] = []

    def place(self, kind: str, handle: PayloadHandle, transform: Transform) -> None:
        self.placed[kind] = (handle, transform)
        self.history.append((kind, handle.name))


def load_geometry(handle: PayloadHandle) -> Any:
    """
    Parse a payload with trimesh.

    Returns:
        trimesh.Trimesh, trimesh.PointCloud or trimesh.Scene

    Raises:
        ValueError: If trimesh does not read this format
    """
    ext = file_extension(handle.name)
    if ext not in TRIMESH_FORMATS:
        raise ValueError(f"Unsupported geometry format: .{ext}")
    return trimesh.load(BytesIO(handle.read()), file_type=ext)


def count_faces(handle: PayloadHandle) -> Optional[int]:
    """Triangle count of a mesh payload, or None if it has no faces."""
    geometry = load_geometry(handle)
    if isinstance(geometry, trimesh.Scene):
        meshes = [g for g in geometry.geometry.values() if hasattr(g, "faces")]
        return sum(len(g.faces) for g in meshes) if meshes else None
    faces = getattr(geometry, "faces", None)
    return len(faces) if faces is not None else None


class TrimeshSceneSink:
    """
    Parses placed payloads with trimesh and applies entry transforms.

    Payloads trimesh cannot read (spz, ksplat, e57, ...) are kept
    unparsed in `unparsed` so a host renderer can take them over.
    """

    def __init__(self):
        self.objects: Dict[str, Any] = {}
        self.transforms: Dict[str, np.ndarray] = {}
        self.unparsed: Dict[str, PayloadHandle] = {}

    def place(self, kind: str, handle: PayloadHandle, transform: Transform) -> None:
        matrix = transform_to_matrix(transform)
        self.transforms[kind] = matrix
        self.objects.pop(kind, None)
        self.unparsed.pop(kind, None)

        if file_extension(handle.name) not in TRIMESH_FORMATS:
            logger.debug("Keeping %s payload %s unparsed", kind, handle.name)
            self.unparsed[kind] = handle
            return

        geometry = load_geometry(handle)
        geometry.apply_transform(matrix)
        self.objects[kind] = geometry
        logger.debug("Placed %s from %s", kind, handle.name)

    def to_scene(self) -> trimesh.Scene:
        """Combine every parsed object into one trimesh scene."""
        scene = trimesh.Scene()
        for kind, geometry in self.objects.items():
            if isinstance(geometry, trimesh.Scene):
                for node in geometry.graph.nodes_geometry:
                    matrix, geom_name = geometry.graph[node]
                    scene.add_geometry(
                        geometry.geometry[geom_name],
                        geom_name=f"{kind}/{geom_name}",
                        transform=matrix,
                    )
            else:
                scene.add_geometry(geometry, geom_name=kind)
        return scene
