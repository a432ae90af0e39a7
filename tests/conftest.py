"""Shared fixtures: small containers built straight from a Manifest."""

from typing import Dict, Optional

import pytest

from archive3d.manifest import (
    LOD_PROXY,
    ROLE_DERIVED,
    ROLE_IMAGE,
    ROLE_MESH,
    ROLE_POINTCLOUD,
    ROLE_SCENE,
    ROLE_SOURCE,
    ROLE_THUMBNAIL,
    DataEntry,
    Manifest,
    Transform,
)
from archive3d.package import pack_container

SCENE_BYTES = b"splat-full" * 100
SCENE_PROXY_BYTES = b"splat-proxy"
MESH_BYTES = b"mesh-full" * 100
MESH_PROXY_BYTES = b"mesh-proxy"
POINTCLOUD_BYTES = b"points" * 100

# Extension used for entries listed under `missing`
MISSING_EXTENSIONS = {ROLE_SCENE: "spz", ROLE_MESH: "glb", ROLE_POINTCLOUD: "e57"}


def build_container(
    scene: Optional[bytes] = None,
    scene_proxy: Optional[bytes] = None,
    mesh: Optional[bytes] = None,
    mesh_proxy: Optional[bytes] = None,
    pointcloud: Optional[bytes] = None,
    thumbnail: Optional[bytes] = None,
    images: Optional[Dict[str, bytes]] = None,
    sources: Optional[Dict[str, bytes]] = None,
    annotations: Optional[list] = None,
    missing: Optional[Dict[str, str]] = None,
    mesh_transform: Optional[Transform] = None,
    title: str = "Test Archive",
    compress: bool = False,
) -> bytes:
    """
    Pack a container without going through the builder.

    `missing` maps entry keys to primary roles whose payload is listed in
    the manifest but left out of the ZIP.
    """
    manifest = Manifest()
    manifest.project["title"] = title
    manifest.annotations = list(annotations or [])
    file_map: Dict[str, bytes] = {}

    def add(key: str, path: str, data: Optional[bytes], **fields) -> None:
        manifest.data_entries[key] = DataEntry(file_name=path, **fields)
        if data is not None:
            file_map[path] = data

    if scene is not None:
        add("scene_0", "assets/scene_0.spz", scene, role=ROLE_SCENE)
    if scene_proxy is not None:
        add("scene_0_proxy", "assets/scene_0_proxy.spz", scene_proxy,
            role=ROLE_DERIVED, lod=LOD_PROXY, derived_from="scene_0")
    if mesh is not None:
        add("mesh_0", "assets/mesh_0.glb", mesh, role=ROLE_MESH, parameters=mesh_transform)
    if mesh_proxy is not None:
        add("mesh_0_proxy", "assets/mesh_0_proxy.glb", mesh_proxy,
            role=ROLE_DERIVED, lod=LOD_PROXY, derived_from="mesh_0", face_count=12)
    if pointcloud is not None:
        add("pointcloud_0", "assets/pointcloud_0.e57", pointcloud, role=ROLE_POINTCLOUD)
    if thumbnail is not None:
        add("thumbnail_0", "preview.jpg", thumbnail, role=ROLE_THUMBNAIL)
    for i, (path, data) in enumerate((images or {}).items()):
        add(f"image_{i}", path, data, role=ROLE_IMAGE)
    for i, (name, data) in enumerate((sources or {}).items()):
        add(f"source_{i}", f"sources/{name}", data, role=ROLE_SOURCE,
            original_name=name, size_bytes=len(data), source_category="raw_photography")
    for key, role in (missing or {}).items():
        add(key, f"assets/{key}.{MISSING_EXTENSIONS[role]}", None, role=role)

    return pack_container(manifest, file_map, compress=compress)


@pytest.fixture
def make_container():
    return build_container
