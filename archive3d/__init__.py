"""
archive3d - Portable containers for 3D scans.

.a3d / .a3z files are ZIP containers with:
- manifest.json (required, first entry)
- README.txt (human-readable summary)
- assets/scene_<n>.*, mesh_<n>.*, pointcloud_<n>.* (at least one required)
- Optional: *_proxy low-detail variants, preview thumbnail, screenshots,
  embedded images, preserved source files, integrity hashes
"""

__version__ = "0.1.0"

from archive3d.builder import ArchiveBuilder
from archive3d.config import ArchiveConfig
from archive3d.coordinator import AssetLoadCoordinator, LoaderHooks, LoadState
from archive3d.errors import (
    ArchiveError,
    ArchiveValidationError,
    DecodeError,
    MalformedContainerError,
    NetworkError,
    NotFoundError,
    UnsafePathError,
)
from archive3d.manifest import DataEntry, Manifest, Transform, validate_manifest
from archive3d.package import get_archive_info, validate_archive, verify_archive_integrity
from archive3d.payload import PayloadHandle
from archive3d.pipeline import load_archive
from archive3d.reader import ArchiveReader

__all__ = [
    "ArchiveBuilder",
    "ArchiveConfig",
    "ArchiveReader",
    "AssetLoadCoordinator",
    "LoaderHooks",
    "LoadState",
    "load_archive",
    "Manifest",
    "DataEntry",
    "Transform",
    "validate_manifest",
    "PayloadHandle",
    "get_archive_info",
    "validate_archive",
    "verify_archive_integrity",
    "ArchiveError",
    "ArchiveValidationError",
    "DecodeError",
    "MalformedContainerError",
    "NetworkError",
    "NotFoundError",
    "UnsafePathError",
]
