"""
Pack and inspect archive-3d containers (.a3d / .a3z ZIP files).

Containers are ZIP archives with manifest.json as the first entry, a
plain-text README.txt second, and asset payloads after that in insertion
order. `.a3d` stores payloads uncompressed; `.a3z` deflates everything
except formats that are already compressed.
"""

import hashlib
import json
import logging
import zipfile
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple, Union

from archive3d.manifest import (
    MANIFEST_NAME,
    README_NAME,
    STORED_EXTENSIONS,
    Manifest,
    file_extension,
    validate_manifest,
)

logger = logging.getLogger(__name__)

DEFAULT_COMPRESS_LEVEL = 6
HASH_ALGORITHM = "sha256"
ZIP_MAGIC = b"PK"

FileProgress = Callable[[int, int, str], None]


def compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_manifest_hash(asset_hashes: Dict[str, str]) -> str:
    """Digest over the sorted, concatenated per-file digests."""
    joined = "".join(sorted(asset_hashes.values()))
    return compute_sha256(joined.encode("utf-8"))


def compression_for(path: str, compress: bool) -> int:
    """ZIP compression method for one payload path."""
    if not compress or file_extension(path) in STORED_EXTENSIONS:
        return zipfile.ZIP_STORED
    return zipfile.ZIP_DEFLATED


def write_container(
    output: Union[str, Path, BinaryIO],
    manifest: Union[Manifest, Dict],
    file_map: Dict[str, bytes],
    compress: bool = False,
    compress_level: int = DEFAULT_COMPRESS_LEVEL,
    readme: Optional[str] = None,
    on_file: Optional[FileProgress] = None,
) -> None:
    """
    Write a container from a manifest and payload bytes.

    Args:
        output: Path or writable binary stream
        manifest: Manifest object or dict
        file_map: Dict mapping archive paths to file bytes, in write order
                  e.g. {"assets/mesh_0.glb": <bytes>, ...}
        compress: Deflate payloads (.a3z) instead of storing them (.a3d)
        compress_level: DEFLATE level for compressed payloads
        readme: Optional README.txt text written right after the manifest
        on_file: Called as on_file(index, total, path) after each payload
    """
    if isinstance(manifest, Manifest):
        manifest_bytes = manifest.to_json().encode("utf-8")
    else:
        manifest_bytes = json.dumps(manifest, indent=2).encode("utf-8")

    if isinstance(output, (str, Path)):
        Path(output).parent.mkdir(parents=True, exist_ok=True)

    total = len(file_map)
    with zipfile.ZipFile(output, "w") as zf:
        # Manifest and README are always lightly deflated
        zf.writestr(MANIFEST_NAME, manifest_bytes, zipfile.ZIP_DEFLATED, DEFAULT_COMPRESS_LEVEL)
        if readme is not None:
            zf.writestr(README_NAME, readme.encode("utf-8"), zipfile.ZIP_DEFLATED, DEFAULT_COMPRESS_LEVEL)

        for index, (path, data) in enumerate(file_map.items(), start=1):
            method = compression_for(path, compress)
            logger.debug("Writing %s (%d bytes, %s)", path, len(data),
                         "deflate" if method == zipfile.ZIP_DEFLATED else "store")
            zf.writestr(path, data, method, compress_level if method == zipfile.ZIP_DEFLATED else None)
            if on_file:
                on_file(index, total, path)


def pack_container(
    manifest: Union[Manifest, Dict],
    file_map: Dict[str, bytes],
    **kwargs,
) -> bytes:
    """Same as write_container, returning the container bytes."""
    buffer = BytesIO()
    write_container(buffer, manifest, file_map, **kwargs)
    return buffer.getvalue()


def _open(source: Union[str, Path, bytes]) -> zipfile.ZipFile:
    if isinstance(source, (bytes, bytearray)):
        return zipfile.ZipFile(BytesIO(source), "r")
    return zipfile.ZipFile(source, "r")


def _read_manifest(zf: zipfile.ZipFile) -> Manifest:
    if MANIFEST_NAME not in zf.namelist():
        raise ValueError(f"Invalid archive: missing {MANIFEST_NAME}")
    return Manifest.from_json(zf.read(MANIFEST_NAME).decode("utf-8"))


def read_archive_file(
    archive: Union[str, Path, bytes],
    internal_path: str,
) -> bytes:
    """
    Read a single file from a container.

    Args:
        archive: Path to the container, or its bytes
        internal_path: Path within archive (e.g. "assets/mesh_0.glb")

    Returns:
        File contents as bytes
    """
    with _open(archive) as zf:
        return zf.read(internal_path)


def list_archive_contents(archive: Union[str, Path, bytes]) -> List[str]:
    """List all files in a container, in archive order."""
    with _open(archive) as zf:
        return zf.namelist()


def get_archive_info(archive_path: Union[str, Path]) -> Dict:
    """
    Get summary information about a container file.

    Args:
        archive_path: Path to .a3d / .a3z file

    Returns:
        Dict with manifest, file list, and sizes
    """
    archive_path = Path(archive_path)

    with zipfile.ZipFile(archive_path, "r") as zf:
        manifest = _read_manifest(zf)

        files = []
        total_size = 0
        for info in zf.infolist():
            files.append({
                "path": info.filename,
                "compressed_size": info.compress_size,
                "uncompressed_size": info.file_size,
                "stored": info.compress_type == zipfile.ZIP_STORED,
            })
            total_size += info.file_size

        return {
            "manifest": manifest.to_dict(),
            "files": files,
            "total_uncompressed_size": total_size,
            "archive_size": archive_path.stat().st_size,
        }


def verify_archive_integrity(archive: Union[str, Path, bytes]) -> Tuple[bool, List[str]]:
    """
    Recompute per-file hashes against the manifest's integrity block.

    Args:
        archive: Path to the container, or its bytes

    Returns:
        Tuple of (all_valid, list_of_errors)
    """
    errors = []

    with _open(archive) as zf:
        manifest = _read_manifest(zf)
        integrity = manifest.integrity
        if not integrity:
            return True, ["No integrity block found (not an error)"]

        algorithm = str(integrity.get("algorithm", "")).lower().replace("-", "")
        if algorithm != HASH_ALGORITHM:
            return False, [f"Unsupported integrity algorithm: {integrity.get('algorithm')}"]

        names = set(zf.namelist())
        assets = integrity.get("assets") or {}
        for path, expected_hash in assets.items():
            if path not in names:
                errors.append(f"Missing file: {path}")
                continue
            if compute_sha256(zf.read(path)) != expected_hash:
                errors.append(f"Checksum mismatch for {path}")

        expected_manifest_hash = integrity.get("manifest_hash")
        if expected_manifest_hash and compute_manifest_hash(assets) != expected_manifest_hash:
            errors.append("Manifest hash mismatch")

    return len(errors) == 0, errors


def validate_archive(archive_path: Union[str, Path]) -> Tuple[bool, List[str]]:
    """
    Validate a container file structure and contents.

    Checks:
    - Valid ZIP archive
    - manifest.json exists and is valid JSON
    - The manifest passes the shared validator against the ZIP's name list
    - If an integrity block exists, verify file hashes

    Args:
        archive_path: Path to .a3d / .a3z file

    Returns:
        Tuple of (is_valid, list_of_errors)

    Example:
        >>> is_valid, errors = validate_archive("scan.a3d")
        >>> if not is_valid:
        ...     print(f"Validation failed: {errors}")
    """
    errors = []
    archive_path = Path(archive_path)

    if not archive_path.exists():
        return False, [f"File not found: {archive_path}"]

    try:
        zf = zipfile.ZipFile(archive_path, "r")
    except zipfile.BadZipFile:
        return False, ["Not a valid ZIP file"]

    try:
        names = zf.namelist()
        if MANIFEST_NAME not in names:
            errors.append(f"Missing required file: {MANIFEST_NAME}")
        else:
            try:
                manifest_data = json.loads(zf.read(MANIFEST_NAME).decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                errors.append(f"Invalid JSON in {MANIFEST_NAME}: {e}")
            else:
                if "container_version" not in manifest_data:
                    errors.append(f"{MANIFEST_NAME} missing 'container_version' field")
                if "data_entries" not in manifest_data:
                    errors.append(f"{MANIFEST_NAME} missing 'data_entries' field")
                else:
                    manifest = Manifest.from_dict(manifest_data)
                    errors.extend(validate_manifest(manifest, set(names)).errors)

                if manifest_data.get("integrity"):
                    integrity_valid, integrity_errors = verify_archive_integrity(archive_path)
                    if not integrity_valid:
                        errors.extend(integrity_errors)
    finally:
        zf.close()

    return len(errors) == 0, errors
