"""
Read archive-3d containers and extract entries on demand.

The reader holds the raw container bytes, parses manifest.json into the
shared Manifest model, indexes entries by role, and decompresses single
entries only when asked. Extracted payloads are cached per path for the
life of the reader.
"""

import asyncio
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import httpx

from archive3d.config import DEFAULT_CONFIG, ArchiveConfig
from archive3d.errors import (
    ArchiveError,
    DecodeError,
    MalformedContainerError,
    NetworkError,
    NotFoundError,
    UnsafePathError,
)
from archive3d.manifest import (
    KIND_TO_ROLE,
    MANIFEST_NAME,
    ROLE_DERIVED,
    ROLE_IMAGE,
    ROLE_MESH,
    ROLE_POINTCLOUD,
    ROLE_SCENE,
    ROLE_SOURCE,
    ROLE_THUMBNAIL,
    ROLE_TO_KIND,
    SUPPORTED_CONTAINER_VERSIONS,
    DataEntry,
    Manifest,
    Transform,
    ValidationResult,
    entry_sort_key,
    is_format_supported,
    sanitize_archive_filename,
    validate_manifest,
)
from archive3d.package import ZIP_MAGIC
from archive3d.payload import BytesLike, PayloadHandle

logger = logging.getLogger(__name__)

DownloadProgress = Callable[[float], None]


@dataclass
class ContentSummary:
    """What an archive holds, derived from the manifest alone."""
    has_splat: bool = False
    has_mesh: bool = False
    has_pointcloud: bool = False
    has_mesh_proxy: bool = False
    has_scene_proxy: bool = False
    has_thumbnail: bool = False
    has_source_files: bool = False
    source_file_count: int = 0

    def has_kind(self, kind: str) -> bool:
        return {
            "splat": self.has_splat,
            "mesh": self.has_mesh,
            "pointcloud": self.has_pointcloud,
        }.get(kind, False)


@dataclass(frozen=True)
class FileIndexEntry:
    name: str
    size: int
    compressed_size: int
    stored: bool


@dataclass(frozen=True)
class ExtractedFile:
    """An extracted entry: its bytes and a handle for downstream loaders."""
    payload: bytes
    handle: PayloadHandle

    @property
    def name(self) -> str:
        return self.handle.name


class ArchiveReader:
    """
    Opens one container and serves its entries.

    Args:
        config: Runtime configuration (HTTP timeout)
        transport: Optional httpx transport for remote fetches
                   (e.g. httpx.MockTransport in tests)

    Example:
        >>> with ArchiveReader() as reader:
        ...     reader.open_file("scan.a3d")
        ...     manifest = reader.parse()
        ...     mesh = await reader.extract(reader.primary_entry("mesh").file_name)
    """

    def __init__(
        self,
        config: Optional[ArchiveConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or DEFAULT_CONFIG
        self._transport = transport
        self._raw: Optional[bytes] = None
        self._zip: Optional[zipfile.ZipFile] = None
        self._index: Dict[str, zipfile.ZipInfo] = {}
        self._cache: Dict[str, ExtractedFile] = {}
        self._roles: Dict[str, List[Tuple[str, DataEntry]]] = {}
        self.manifest: Optional[Manifest] = None

    # -------------------------------------------------------------------------
    # Opening
    # -------------------------------------------------------------------------

    def open(self, source: BytesLike) -> None:
        """
        Ingest raw container bytes and read the ZIP central directory.

        Raises:
            MalformedContainerError: If the bytes are not a ZIP container
        """
        data = bytes(source)
        if data[:2] != ZIP_MAGIC:
            raise MalformedContainerError("Invalid archive: Not a valid ZIP file")
        try:
            archive = zipfile.ZipFile(BytesIO(data), "r")
        except zipfile.BadZipFile as e:
            raise MalformedContainerError(f"Invalid archive: {e}") from e

        self._close_zip()
        self._raw = data
        self._zip = archive
        self._index = {info.filename: info for info in archive.infolist()}
        self._cache = {}
        self._roles = {}
        self.manifest = None
        logger.info("Opened container with %d entries (%d bytes)", len(self._index), len(data))

    def open_file(self, path: Union[str, Path]) -> None:
        self.open(Path(path).read_bytes())

    async def open_from_location(self, url: str, on_progress: Optional[DownloadProgress] = None) -> None:
        """
        Download a container and open it.

        Progress is reported as a fraction when the server sends a
        Content-Length header.

        Raises:
            NetworkError: On transport failure or an HTTP error status
            MalformedContainerError: If the download is not a container
        """
        async with httpx.AsyncClient(timeout=self.config.http_timeout, transport=self._transport) as client:
            try:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise NetworkError(
                            f"HTTP {response.status_code}: {response.reason_phrase}",
                            url=url,
                            status_code=response.status_code,
                        )
                    total = int(response.headers.get("content-length") or 0)
                    buffer = bytearray()
                    async for chunk in response.aiter_bytes():
                        buffer.extend(chunk)
                        if on_progress and total:
                            on_progress(min(len(buffer) / total, 1.0))
            except httpx.HTTPError as e:
                raise NetworkError(f"Failed to fetch {url}: {e}", url=url) from e

        logger.debug("Downloaded %d bytes from %s", len(buffer), url)
        self.open(bytes(buffer))

    # -------------------------------------------------------------------------
    # Manifest
    # -------------------------------------------------------------------------

    def parse(self) -> Manifest:
        """
        Decode manifest.json and index entries by role.

        Raises:
            MalformedContainerError: Manifest missing, not JSON, missing
                                     required fields or of an unknown version
        """
        if self._zip is None:
            raise ArchiveError("No archive loaded")
        if MANIFEST_NAME not in self._index:
            raise MalformedContainerError(f"Invalid archive: {MANIFEST_NAME} not found")

        try:
            data = json.loads(self._zip.read(MANIFEST_NAME).decode("utf-8"))
        except (ValueError, zipfile.BadZipFile, zlib.error) as e:
            raise MalformedContainerError(f"Invalid archive: {MANIFEST_NAME} is not valid JSON") from e
        if not isinstance(data, dict):
            raise MalformedContainerError(f"Invalid archive: {MANIFEST_NAME} is not valid JSON")

        if not data.get("container_version"):
            raise MalformedContainerError("Invalid manifest: missing container_version")
        if not isinstance(data.get("data_entries"), dict):
            raise MalformedContainerError("Invalid manifest: missing data_entries")
        if data["container_version"] not in SUPPORTED_CONTAINER_VERSIONS:
            raise MalformedContainerError(
                f"Invalid manifest: unsupported container_version {data['container_version']}"
            )

        manifest = Manifest.from_dict(data)
        roles: Dict[str, List[Tuple[str, DataEntry]]] = {}
        for key in sorted(manifest.data_entries, key=entry_sort_key):
            entry = manifest.data_entries[key]
            roles.setdefault(entry.role, []).append((key, entry))

        self.manifest = manifest
        self._roles = roles
        logger.debug("Parsed manifest: %d entries", len(manifest.data_entries))
        return manifest

    def entries_with_role(self, role: str) -> List[Tuple[str, DataEntry]]:
        return list(self._roles.get(role, []))

    def primary_entry(self, role: str) -> Optional[DataEntry]:
        """Lowest-index primary entry for a role or asset kind (splat -> scene)."""
        entries = self._roles.get(KIND_TO_ROLE.get(role, role), [])
        return entries[0][1] if entries else None

    def primary_key(self, role: str) -> Optional[str]:
        entries = self._roles.get(KIND_TO_ROLE.get(role, role), [])
        return entries[0][0] if entries else None

    def proxy_entry(self, role: str) -> Optional[DataEntry]:
        """The proxy derived from a role's primary entry, if any."""
        role = KIND_TO_ROLE.get(role, role)
        kind = ROLE_TO_KIND.get(role)
        primary_key = self.primary_key(role)
        proxies = [entry for _, entry in self._roles.get(ROLE_DERIVED, []) if entry.is_proxy and entry.kind == kind]
        for entry in proxies:
            if entry.derived_from == primary_key:
                return entry
        return proxies[0] if proxies else None

    def thumbnail_entry(self) -> Optional[DataEntry]:
        entries = self._roles.get(ROLE_THUMBNAIL, [])
        return entries[0][1] if entries else None

    def entry_transform(self, entry: Optional[DataEntry]) -> Transform:
        """Entry placement; identity for a missing entry or missing fields."""
        return entry.transform if entry is not None else Transform()

    def global_alignment(self) -> Optional[Dict[str, Any]]:
        if self.manifest is None:
            return None
        extra = self.manifest.extra
        return extra.get("alignment") or (extra.get("_parameters") or {}).get("alignment")

    def annotations(self) -> List[Dict[str, Any]]:
        return list(self.manifest.annotations) if self.manifest else []

    def image_entries(self) -> List[DataEntry]:
        return [entry for _, entry in self._roles.get(ROLE_IMAGE, [])]

    def source_file_entries(self) -> List[Tuple[str, DataEntry]]:
        return self.entries_with_role(ROLE_SOURCE)

    def has_source_files(self) -> bool:
        return bool(self._roles.get(ROLE_SOURCE))

    def project_info(self) -> Optional[Dict[str, Any]]:
        return self.manifest.project if self.manifest else None

    def metadata(self) -> Optional[Dict[str, Any]]:
        """Container-level metadata summary."""
        m = self.manifest
        if m is None:
            return None
        return {
            "version": m.container_version,
            "schema_version": m.metadata_schema_version or "0",
            "packer": m.packer or "Unknown",
            "packer_version": m.packer_version,
            "created_at": m.creation_date or None,
            "convention_hints": m.extra.get("convention_hints") or m.provenance.get("convention_hints") or [],
            "meta": m.meta,
            "parameters": m.extra.get("_parameters") or {},
        }

    def entry_list(self) -> List[Dict[str, Any]]:
        """Entries with display-safe file names, in manifest order."""
        if self.manifest is None:
            return []
        rows = []
        for key, entry in self.manifest.data_entries.items():
            result = sanitize_archive_filename(entry.file_name)
            rows.append({
                "key": key,
                "file_name": result.sanitized if result.safe else "[invalid filename]",
                "role": entry.role,
                "created_by": entry.created_by or "Unknown",
                "created_by_version": entry.created_by_version or "",
                "parameters": entry.parameters.to_dict() if entry.parameters else {},
            })
        return rows

    def content_summary(self) -> ContentSummary:
        """Which asset kinds and proxies exist; supported formats only."""
        splat = self.primary_entry(ROLE_SCENE)
        mesh = self.primary_entry(ROLE_MESH)
        pointcloud = self.primary_entry(ROLE_POINTCLOUD)
        mesh_proxy = self.proxy_entry(ROLE_MESH)
        scene_proxy = self.proxy_entry(ROLE_SCENE)
        thumbnail = self.thumbnail_entry()
        sources = self.source_file_entries()
        return ContentSummary(
            has_splat=splat is not None and is_format_supported(splat.file_name, "splat"),
            has_mesh=mesh is not None and is_format_supported(mesh.file_name, "mesh"),
            has_pointcloud=pointcloud is not None and is_format_supported(pointcloud.file_name, "pointcloud"),
            has_mesh_proxy=mesh_proxy is not None and is_format_supported(mesh_proxy.file_name, "mesh"),
            has_scene_proxy=scene_proxy is not None and is_format_supported(scene_proxy.file_name, "splat"),
            has_thumbnail=thumbnail is not None and is_format_supported(thumbnail.file_name, "thumbnail"),
            has_source_files=bool(sources),
            source_file_count=len(sources),
        )

    def validate(self) -> ValidationResult:
        """Run the shared manifest validator against this container's entries."""
        manifest = self.manifest or self.parse()
        return validate_manifest(manifest, self._index)

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def file_index(self) -> List[FileIndexEntry]:
        return [
            FileIndexEntry(
                name=info.filename,
                size=info.file_size,
                compressed_size=info.compress_size,
                stored=info.compress_type == zipfile.ZIP_STORED,
            )
            for info in self._index.values()
        ]

    def is_cached(self, file_name: str) -> bool:
        return file_name in self._cache

    async def extract(self, file_name: str) -> ExtractedFile:
        """
        Decompress one entry, caching the result by path.

        Raises:
            UnsafePathError: Name fails the path-traversal checks
            NotFoundError: No such entry in the container index
            DecodeError: Entry bytes fail to decompress
        """
        result = sanitize_archive_filename(file_name)
        if not result.safe:
            logger.error("Rejected unsafe filename: %s - %s", file_name, result.error)
            raise UnsafePathError(file_name, result.error)
        name = result.sanitized

        cached = self._cache.get(name)
        if cached is not None:
            return cached

        if name not in self._index:
            logger.warning("File not found in archive: %s", name)
            raise NotFoundError(name)
        if self._zip is None:
            raise ArchiveError(f"Raw archive data released; cannot extract {name}")

        await asyncio.sleep(0)
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        try:
            data = self._zip.read(name)
        except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError) as e:
            raise DecodeError(name, e) from e

        extracted = ExtractedFile(payload=data, handle=PayloadHandle.from_bytes(data, name=name))
        self._cache[name] = extracted
        logger.debug("Extracted %s (%d bytes)", name, len(data))
        return extracted

    async def pre_extract(self, file_names: Iterable[str]) -> None:
        """Warm the cache with several entries, one after another."""
        for name in file_names:
            if not self.is_cached(name):
                await self.extract(name)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def raw_buffer_released(self) -> bool:
        return self._raw is None

    @property
    def raw_bytes(self) -> Optional[bytes]:
        """Original container bytes, kept for re-export while source files exist."""
        return self._raw

    def release_raw_buffer(self, force: bool = False) -> bool:
        """
        Drop the compressed container bytes; extracted payloads stay cached.

        Refused while the archive has source files unless `force` is set,
        i.e. the caller has already retained the bytes elsewhere.

        Returns:
            True if the buffer was released
        """
        if self.has_source_files() and not force:
            logger.info("Keeping raw archive data: source files need it for re-export")
            return False
        had_data = self._raw is not None
        self._close_zip()
        self._raw = None
        if had_data:
            logger.info("Raw archive data released to free memory")
        return True

    def dispose(self) -> None:
        """Release every cached payload and the raw buffer."""
        self._close_zip()
        self._raw = None
        self._cache.clear()
        self._index = {}
        self._roles = {}
        self.manifest = None

    def _close_zip(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()
