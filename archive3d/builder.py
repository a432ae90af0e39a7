"""
In-memory builder for archive-3d containers.

The builder accumulates typed data entries, their payloads and manifest
metadata, validates the result with the shared manifest validator, and
packs everything into a .a3d / .a3z container.

Example:
    >>> builder = ArchiveBuilder()
    >>> builder.add_mesh(glb_bytes, "statue.glb")
    'mesh_0'
    >>> builder.set_project_info(title="Statue")
    >>> data = await builder.pack(format="a3z")
"""

import asyncio
import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from weakref import WeakKeyDictionary

from archive3d.config import DEFAULT_CONFIG, ArchiveConfig
from archive3d.errors import ArchiveValidationError
from archive3d.manifest import (
    KIND_TO_ROLE,
    LOD_PROXY,
    MANIFEST_NAME,
    METADATA_PROFILES,
    README_NAME,
    ROLE_DERIVED,
    ROLE_IMAGE,
    ROLE_MESH,
    ROLE_POINTCLOUD,
    ROLE_SCENE,
    ROLE_SCREENSHOT,
    ROLE_SOURCE,
    ROLE_THUMBNAIL,
    DataEntry,
    Manifest,
    Transform,
    ValidationResult,
    asset_path,
    next_entry_key,
    now_iso,
    proxy_key,
    sanitize_source_name,
    split_conventions,
    unique_source_path,
    validate_manifest,
    with_extension,
)
from archive3d.package import HASH_ALGORITHM, compute_manifest_hash, pack_container
from archive3d.payload import BytesLike, PayloadHandle, as_payload
from archive3d.readme import generate_readme

logger = logging.getLogger(__name__)

HASHING_AVAILABLE = HASH_ALGORITHM in hashlib.algorithms_available
HASH_CHUNK_SIZE = 4 * 1024 * 1024

# Written by pack_container itself
RESERVED_PATHS = frozenset((MANIFEST_NAME, README_NAME))

Payload = Union[PayloadHandle, BytesLike]
PackProgress = Callable[[int, str], None]
HashProgress = Callable[[float], None]


# =============================================================================
# Caller-facing field names -> manifest field names
#
# A value is either the manifest field name, or (field name, nested table)
# for nested sections. Manifest names are accepted as-is too.
# =============================================================================

PROJECT_FIELDS = {
    "title": "title",
    "id": "id",
    "license": "license",
    "description": "description",
    "tags": "tags",
}

RELATIONSHIP_FIELDS = {
    "partOf": "part_of",
    "derivedFrom": "derived_from",
    "replaces": "replaces",
    "relatedObjects": "related_objects",
}

PROVENANCE_FIELDS = {
    "captureDate": "capture_date",
    "captureDevice": "capture_device",
    "deviceSerial": "device_serial",
    "operator": "operator",
    "operatorOrcid": "operator_orcid",
    "location": "location",
    "conventions": "convention_hints",
    "processingSoftware": "processing_software",
    "processingNotes": "processing_notes",
}

QUALITY_METRIC_FIELDS = {
    "tier": "tier",
    "accuracyGrade": "accuracy_grade",
    "scaleVerification": "scale_verification",
    "captureResolution": ("capture_resolution", {"value": "value", "unit": "unit", "type": "type"}),
    "alignmentError": ("alignment_error", {"value": "value", "unit": "unit", "method": "method"}),
    "dataQuality": ("data_quality", {
        "coverageGaps": "coverage_gaps",
        "reconstructionAreas": "reconstruction_areas",
        "colorCalibration": "color_calibration",
        "measurementUncertainty": "measurement_uncertainty",
    }),
}

ARCHIVAL_RECORD_FIELDS = {
    "standard": "standard",
    "title": "title",
    "alternateTitles": "alternate_titles",
    "provenance": "provenance",
    "ids": ("ids", {
        "accessionNumber": "accession_number",
        "sirisId": "siris_id",
        "uri": "uri",
    }),
    "creation": ("creation", {
        "creator": "creator",
        "dateCreated": "date_created",
        "period": "period",
        "culture": "culture",
    }),
    "physicalDescription": ("physical_description", {
        "medium": "medium",
        "condition": "condition",
        "dimensions": ("dimensions", {"height": "height", "width": "width", "depth": "depth"}),
    }),
    "rights": ("rights", {
        "copyrightStatus": "copyright_status",
        "creditLine": "credit_line",
    }),
    "context": ("context", {
        "description": "description",
        "locationHistory": "location_history",
    }),
    "coverage": ("coverage", {
        "spatial": ("spatial", {"locationName": "location_name", "coordinates": "coordinates"}),
        "temporal": ("temporal", {
            "subjectPeriod": "subject_period",
            "subjectDateCirca": "subject_date_circa",
        }),
    }),
}

VIEWER_SETTING_FIELDS = {
    "singleSided": "single_sided",
    "backgroundColor": "background_color",
    "displayMode": "display_mode",
    "cameraPosition": "camera_position",
    "cameraTarget": "camera_target",
    "autoRotate": "auto_rotate",
    "annotationsVisible": "annotations_visible",
}

MATERIAL_STANDARD_FIELDS = {
    "workflow": "workflow",
    "occlusionPacked": "occlusion_packed",
    "colorSpace": "color_space",
    "normalSpace": "normal_space",
}

PRESERVATION_FIELDS = {
    "formatRegistry": ("format_registry", {"glb": "glb", "obj": "obj", "ply": "ply", "e57": "e57"}),
    "significantProperties": "significant_properties",
    "renderingRequirements": "rendering_requirements",
    "renderingNotes": "rendering_notes",
}

ENTRY_METADATA_FIELDS = {
    "createdBy": "created_by",
    "version": "created_by_version",
    "sourceNotes": "source_notes",
}

QUALITY_STAT_FIELDS = (
    "splat_count", "mesh_polygons", "mesh_vertices", "splat_file_size",
    "mesh_file_size", "pointcloud_points", "pointcloud_file_size",
    "texture_count", "texture_max_resolution", "texture_maps",
)

# Fields that only accept lists; anything else clears them
LIST_FIELDS = frozenset((
    "processing_software", "alternate_titles", "related_objects", "significant_properties",
))


def translate_fields(table: Dict[str, Any], values: Dict[str, Any], section: str) -> Dict[str, Any]:
    """
    Rename caller-facing keys to manifest keys through a fixed table.

    Raises:
        ValueError: For a key the table does not know
    """
    by_manifest_name = {}
    for caller_name, target in table.items():
        name = target[0] if isinstance(target, tuple) else target
        by_manifest_name[name] = caller_name

    translated: Dict[str, Any] = {}
    for key, value in values.items():
        caller_name = key if key in table else by_manifest_name.get(key)
        if caller_name is None:
            raise ValueError(f"Unknown {section} field: {key}")
        target = table[caller_name]
        if isinstance(target, tuple):
            name, nested = target
            if not value:
                continue
            translated[name] = translate_fields(nested, value, f"{section}.{name}")
        else:
            translated[target] = value
    return translated


def merge_section(section: Dict[str, Any], updates: Dict[str, Any]) -> None:
    """Merge translated updates into a manifest section in place."""
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(section.get(key), dict):
            merge_section(section[key], value)
        elif key in LIST_FIELDS and not isinstance(value, (list, tuple)):
            section[key] = []
        else:
            section[key] = copy.deepcopy(value)


async def compute_digest(data: bytes) -> str:
    """sha256 hex digest, yielding to the event loop between chunks."""
    digest = hashlib.sha256()
    view = memoryview(data)
    for start in range(0, len(view), HASH_CHUNK_SIZE):
        digest.update(view[start:start + HASH_CHUNK_SIZE])
        await asyncio.sleep(0)
    return digest.hexdigest()


@dataclass
class StagedFile:
    """A payload registered at an archive path."""
    payload: PayloadHandle
    original_name: str


@dataclass
class CapturedAsset:
    """One asset as currently shown in a viewer."""
    payload: Payload
    file_name: str
    transform: Optional[Transform] = None
    created_by: str = "unknown"
    created_by_version: Optional[str] = None
    source_notes: Optional[str] = None


@dataclass
class ViewerState:
    """Snapshot of a viewer session handed to `capture_from_viewer`."""
    splat: Optional[CapturedAsset] = None
    mesh: Optional[CapturedAsset] = None
    pointcloud: Optional[CapturedAsset] = None
    annotations: List[Dict[str, Any]] = field(default_factory=list)
    quality_stats: Optional[Dict[str, Any]] = None


class ArchiveBuilder:
    """
    Accumulates entries and metadata, then packs a container.

    Args:
        config: Runtime configuration (compression level, hashing toggle)
        hashing_enabled: Override for hashing availability; defaults to
                         config.hashing_enabled and the runtime having sha256
    """

    def __init__(self, config: Optional[ArchiveConfig] = None, hashing_enabled: Optional[bool] = None):
        self.config = config or DEFAULT_CONFIG
        if hashing_enabled is None:
            hashing_enabled = self.config.hashing_enabled and HASHING_AVAILABLE
        self.hashing_enabled = hashing_enabled
        self.manifest = Manifest()
        self.annotations: List[Dict[str, Any]] = []
        self._files: Dict[str, StagedFile] = {}
        self._hash_cache: "WeakKeyDictionary[PayloadHandle, str]" = WeakKeyDictionary()
        # id(bytes) -> (bytes, digest); holding the bytes keeps the id theirs
        self._raw_digests: Dict[int, Tuple[bytes, str]] = {}

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def _stage(self, path: str, payload: Payload, original_name: str) -> PayloadHandle:
        if path in RESERVED_PATHS:
            raise ValueError(f"Reserved archive path: {path}")
        handle = as_payload(payload, name=original_name)
        digest = self._raw_digest(payload)
        if digest is not None:
            self._hash_cache[handle] = digest
        self._files[path] = StagedFile(payload=handle, original_name=original_name)
        return handle

    def _add_primary(
        self,
        role: str,
        payload: Payload,
        filename: str,
        position: Optional[Sequence[float]] = None,
        rotation: Optional[Sequence[float]] = None,
        scale: Optional[Union[float, Sequence[float]]] = None,
        created_by: str = "unknown",
        created_by_version: Optional[str] = None,
        source_notes: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        key = next_entry_key(self.manifest.data_entries, role)
        path = asset_path(key, filename)
        self._stage(path, payload, filename)
        self.manifest.data_entries[key] = DataEntry(
            file_name=path,
            role=role,
            created_by=created_by,
            created_by_version=created_by_version,
            source_notes=source_notes,
            parameters=_make_transform(position, rotation, scale, parameters),
        )
        logger.debug("Added %s -> %s", key, path)
        return key

    def add_scene(self, payload: Payload, filename: str, **options) -> str:
        """
        Add a splat scene as scene_{n} at assets/scene_{n}.{ext}.

        Options: position, rotation, scale, created_by, created_by_version,
        source_notes, parameters (extra transform keys).
        """
        return self._add_primary(ROLE_SCENE, payload, filename, **options)

    def add_mesh(self, payload: Payload, filename: str, **options) -> str:
        """Add a mesh as mesh_{n}; same options as add_scene."""
        return self._add_primary(ROLE_MESH, payload, filename, **options)

    def add_pointcloud(self, payload: Payload, filename: str, **options) -> str:
        """Add a point cloud as pointcloud_{n}; same options as add_scene."""
        return self._add_primary(ROLE_POINTCLOUD, payload, filename, **options)

    def _add_proxy(
        self,
        payload: Payload,
        filename: str,
        derived_from: str,
        face_count: Optional[int] = None,
        position: Optional[Sequence[float]] = None,
        rotation: Optional[Sequence[float]] = None,
        scale: Optional[Union[float, Sequence[float]]] = None,
        created_by: str = "unknown",
        created_by_version: Optional[str] = None,
        source_notes: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        key = proxy_key(derived_from)
        path = asset_path(key, filename)
        self._stage(path, payload, filename)
        self.manifest.data_entries[key] = DataEntry(
            file_name=path,
            role=ROLE_DERIVED,
            lod=LOD_PROXY,
            derived_from=derived_from,
            face_count=face_count,
            created_by=created_by,
            created_by_version=created_by_version,
            source_notes=source_notes,
            parameters=_make_transform(position, rotation, scale, parameters),
        )
        logger.debug("Added proxy %s for %s", key, derived_from)
        return key

    def add_scene_proxy(self, payload: Payload, filename: str, derived_from: Optional[str] = None, **options) -> str:
        """Add a low-detail splat proxy, keyed {derived_from}_proxy (default scene_0_proxy)."""
        return self._add_proxy(payload, filename, derived_from or f"{ROLE_SCENE}_0", **options)

    def add_mesh_proxy(self, payload: Payload, filename: str, derived_from: Optional[str] = None, **options) -> str:
        """Add a decimated mesh proxy, keyed {derived_from}_proxy (default mesh_0_proxy)."""
        return self._add_proxy(payload, filename, derived_from or f"{ROLE_MESH}_0", **options)

    def add_source_file(self, payload: Payload, filename: str, category: str = "") -> str:
        """
        Preserve an original source file under sources/.

        The archive name is sanitized and de-duplicated; `original_name`
        keeps the caller's file name unmodified.
        """
        key = next_entry_key(self.manifest.data_entries, ROLE_SOURCE)
        path = unique_source_path(sanitize_source_name(filename), self._files)
        handle = self._stage(path, payload, filename)
        self.manifest.data_entries[key] = DataEntry(
            file_name=path,
            original_name=filename,
            role=ROLE_SOURCE,
            source_category=category,
            size_bytes=handle.size,
        )
        return key

    def _add_image_like(self, role: str, payload: Payload, path: str, original_name: str) -> str:
        key = next_entry_key(self.manifest.data_entries, role)
        self._stage(path, payload, original_name)
        self.manifest.data_entries[key] = DataEntry(
            file_name=path,
            role=role,
            created_by=self.manifest.packer,
        )
        return key

    def add_thumbnail(self, payload: Payload, filename: str) -> str:
        """Set the archive's single preview image (preview.{ext}), replacing any earlier one."""
        for key, entry in self.manifest.entries_with_role(ROLE_THUMBNAIL):
            del self.manifest.data_entries[key]
            self._files.pop(entry.file_name, None)
        return self._add_image_like(ROLE_THUMBNAIL, payload, with_extension("preview", filename), filename)

    def add_screenshot(self, payload: Payload, filename: str) -> str:
        key = next_entry_key(self.manifest.data_entries, ROLE_SCREENSHOT)
        return self._add_image_like(ROLE_SCREENSHOT, payload, with_extension(f"screenshots/{key}", filename), filename)

    def add_image(self, payload: Payload, archive_path: str) -> str:
        """Embed an image at a caller-chosen path (e.g. images/figure.png)."""
        return self._add_image_like(ROLE_IMAGE, payload, archive_path, archive_path)

    def add_thumbnail_frame(self, frame, size: int = 512, quality: float = 0.85) -> str:
        """
        Crop a rendered RGB frame to a centered square and store it as the preview.

        Args:
            frame: HxWx3 RGB uint8 array
            size: Output edge length in pixels
            quality: JPEG quality 0.0 - 1.0

        Returns:
            Entry key of the thumbnail
        """
        from archive3d.screenshot import capture_screenshot

        handle = capture_screenshot(frame, width=size, height=size, format="jpeg", quality=quality, name="preview")
        return self.add_thumbnail(handle, handle.name)

    def add_screenshot_frame(self, frame, size: int = 1024, format: str = "jpeg") -> str:
        """Encode a rendered RGB frame as a screenshot entry."""
        from archive3d.screenshot import capture_screenshot

        handle = capture_screenshot(frame, width=size, height=size, format=format, name="screenshot")
        return self.add_screenshot(handle, handle.name)

    def update_entry_metadata(self, role: str, index: int, values: Optional[Dict[str, Any]] = None, **fields) -> bool:
        """
        Update created_by / version / source notes of `{role}_{index}`.

        `role` may also be an asset kind (splat -> scene).

        Returns:
            False when there is no such entry
        """
        key = f"{KIND_TO_ROLE.get(role, role)}_{index}"
        entry = self.manifest.data_entries.get(key)
        if entry is None:
            return False
        updates = translate_fields(ENTRY_METADATA_FIELDS, {**(values or {}), **fields}, "entry")
        for name, value in updates.items():
            setattr(entry, name, value)
        return True

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def set_project_info(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        merge_section(self.manifest.project, translate_fields(PROJECT_FIELDS, {**(values or {}), **fields}, "project"))

    def set_provenance(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        """
        Merge provenance fields. `conventions` may be a list or a
        comma-separated string.
        """
        updates = translate_fields(PROVENANCE_FIELDS, {**(values or {}), **fields}, "provenance")
        if "convention_hints" in updates:
            updates["convention_hints"] = split_conventions(updates["convention_hints"] or [])
        merge_section(self.manifest.provenance, updates)

    def set_quality_metrics(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        merge_section(
            self.manifest.quality_metrics,
            translate_fields(QUALITY_METRIC_FIELDS, {**(values or {}), **fields}, "quality_metrics"),
        )

    def set_archival_record(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        updates = translate_fields(ARCHIVAL_RECORD_FIELDS, {**(values or {}), **fields}, "archival_record")
        spatial = updates.get("coverage", {}).get("spatial", {})
        if "coordinates" in spatial and not spatial["coordinates"]:
            del spatial["coordinates"]
        merge_section(self.manifest.archival_record, updates)

    def set_relationships(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        merge_section(
            self.manifest.relationships,
            translate_fields(RELATIONSHIP_FIELDS, {**(values or {}), **fields}, "relationships"),
        )

    def set_preservation(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        merge_section(
            self.manifest.preservation,
            translate_fields(PRESERVATION_FIELDS, {**(values or {}), **fields}, "preservation"),
        )

    def set_viewer_settings(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        merge_section(
            self.manifest.viewer_settings,
            translate_fields(VIEWER_SETTING_FIELDS, {**(values or {}), **fields}, "viewer_settings"),
        )

    def set_material_standard(self, values: Optional[Dict[str, Any]] = None, **fields) -> None:
        merge_section(
            self.manifest.material_standard,
            translate_fields(MATERIAL_STANDARD_FIELDS, {**(values or {}), **fields}, "material_standard"),
        )

    def set_custom_fields(self, custom_fields: Dict[str, Any]) -> None:
        """Replace the whole custom-fields map."""
        self.manifest.meta["custom_fields"] = dict(custom_fields)

    def add_custom_field(self, key: str, value: Any) -> None:
        self.manifest.meta.setdefault("custom_fields", {})[key] = value

    def set_meta(self, meta: Dict[str, Any]) -> None:
        self.manifest.meta.update(meta)

    def set_metadata_profile(self, profile: str) -> None:
        """Set basic / standard / archival; other values are ignored."""
        if profile in METADATA_PROFILES:
            self.manifest.metadata_profile = profile
        else:
            logger.warning("Ignoring unknown metadata profile %r", profile)

    def set_quality_stats(self, stats: Dict[str, Any]) -> None:
        quality = self.manifest.meta.setdefault("quality", {})
        for name in QUALITY_STAT_FIELDS:
            if name in stats:
                quality[name] = stats[name]

    def get_quality_stats(self) -> Dict[str, Any]:
        return self.manifest.meta.get("quality", {})

    def set_annotations(self, annotations: Sequence[Dict[str, Any]]) -> None:
        self.annotations = list(annotations)
        self.manifest.annotations = self.annotations

    def add_annotation(self, annotation: Dict[str, Any]) -> None:
        self.annotations.append(annotation)
        self.manifest.annotations = self.annotations

    def set_version_history(self, entries: Sequence[Dict[str, Any]]) -> None:
        self.manifest.version_history = [dict(entry) for entry in entries]

    def add_version_history_entry(self, version: str = "", description: str = "", date_str: Optional[str] = None) -> None:
        """Append a version history record; the date defaults to today."""
        self.manifest.version_history.append({
            "version": version,
            "date": date_str or date.today().isoformat(),
            "description": description,
        })

    def preserve_creation_date(self, original_date: str) -> None:
        """Keep a loaded archive's creation date when re-exporting it."""
        if original_date:
            self.manifest.creation_date = original_date

    def capture_from_viewer(self, state: ViewerState) -> None:
        """Add the assets, annotations and stats of a viewer session."""
        for add, asset in (
            (self.add_scene, state.splat),
            (self.add_mesh, state.mesh),
            (self.add_pointcloud, state.pointcloud),
        ):
            if asset is None or not asset.file_name:
                continue
            transform = asset.transform or Transform()
            add(
                asset.payload,
                asset.file_name,
                position=transform.position,
                rotation=transform.rotation,
                scale=transform.scale,
                created_by=asset.created_by,
                created_by_version=asset.created_by_version,
                source_notes=asset.source_notes,
            )
        if state.annotations:
            self.set_annotations(state.annotations)
        if state.quality_stats:
            self.set_quality_stats(state.quality_stats)

    def apply_metadata(self, metadata: Dict[str, Any]) -> None:
        """
        Apply a whole metadata form at once.

        Keys (caller or manifest spelling): project, relationships, provenance,
        qualityMetrics, archivalRecord, materialStandard, viewerSettings,
        preservation, splatMetadata, meshMetadata, pointcloudMetadata,
        customFields, versionHistory, qualityStats.
        """
        sections = (
            (("project",), self.set_project_info),
            (("relationships",), self.set_relationships),
            (("provenance",), self.set_provenance),
            (("qualityMetrics", "quality_metrics"), self.set_quality_metrics),
            (("archivalRecord", "archival_record"), self.set_archival_record),
            (("materialStandard", "material_standard"), self.set_material_standard),
            (("viewerSettings", "viewer_settings"), self.set_viewer_settings),
            (("preservation",), self.set_preservation),
        )
        for names, setter in sections:
            values = _first_present(metadata, names)
            if values:
                setter(values)

        for kind in ("splat", "mesh", "pointcloud"):
            values = _first_present(metadata, (f"{kind}Metadata", f"{kind}_metadata"))
            if values:
                self.update_entry_metadata(kind, 0, values)

        custom_fields = _first_present(metadata, ("customFields", "custom_fields"))
        if custom_fields:
            self.set_custom_fields(custom_fields)
        history = _first_present(metadata, ("versionHistory", "version_history"))
        if history:
            self.set_version_history(history)
        stats = _first_present(metadata, ("qualityStats", "quality_stats"))
        if stats:
            self.set_quality_stats(stats)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def file_count(self) -> int:
        return len(self._files)

    def file_list(self) -> List[Dict[str, Any]]:
        return [
            {"path": path, "size": staged.payload.size, "original_name": staged.original_name}
            for path, staged in self._files.items()
        ]

    def metadata_summary(self) -> Dict[str, Any]:
        return {
            "project": dict(self.manifest.project),
            "provenance": dict(self.manifest.provenance),
            "annotation_count": len(self.annotations),
            "file_count": self.file_count,
            "has_integrity": self.manifest.integrity is not None,
            "custom_fields": self.manifest.custom_fields,
            "quality": self.manifest.quality_stats,
        }

    def get_integrity(self) -> Optional[Dict[str, Any]]:
        return self.manifest.integrity

    def get_cached_hash(self, payload: Payload) -> Optional[str]:
        if not isinstance(payload, PayloadHandle):
            return self._raw_digest(payload)
        return self._hash_cache.get(payload)

    def _raw_digest(self, payload: Payload) -> Optional[str]:
        if not isinstance(payload, bytes):
            return None
        known = self._raw_digests.get(id(payload))
        if known is not None and known[0] is payload:
            return known[1]
        return None

    # -------------------------------------------------------------------------
    # Hashing
    # -------------------------------------------------------------------------

    async def precompute_hash(self, payload: Payload) -> Optional[str]:
        """
        Hash a payload ahead of packing so pack() can reuse the digest.

        Digests are memoized per PayloadHandle, and per object for immutable
        `bytes`: hashing a bytes object and then adding that same object
        with add_* hashes it once. bytearray and memoryview payloads are
        not memoized.

        Returns:
            sha256 hex digest, or None when hashing is unavailable
        """
        if not self.hashing_enabled:
            return None
        cached = self.get_cached_hash(payload)
        if cached is not None:
            return cached
        handle = as_payload(payload)
        digest = await compute_digest(handle.read())
        if isinstance(payload, bytes):
            self._raw_digests[id(payload)] = (payload, digest)
        else:
            self._hash_cache[handle] = digest
        return digest

    async def calculate_hashes(self, on_progress: Optional[HashProgress] = None) -> Optional[Dict[str, str]]:
        """
        Hash every staged payload and record the integrity block.

        Args:
            on_progress: Called with the processed fraction (0.0 - 1.0)

        Returns:
            Map of archive path -> digest, or None when hashing is unavailable
        """
        if not self.hashing_enabled:
            logger.warning("sha256 hashing unavailable; skipping integrity hashes")
            self.manifest.integrity = None
            return None

        total = sum(staged.payload.size for staged in self._files.values()) or 1
        processed = 0
        hashes: Dict[str, str] = {}
        for path, staged in self._files.items():
            hashes[path] = await self.precompute_hash(staged.payload)
            processed += staged.payload.size
            if on_progress:
                on_progress(processed / total)

        self.manifest.integrity = {
            "algorithm": HASH_ALGORITHM,
            "manifest_hash": compute_manifest_hash(hashes),
            "assets": hashes,
        }
        return hashes

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        return validate_manifest(self.manifest, self._files)

    def generate_manifest(self) -> str:
        """Stamp creation/modified dates and serialize the manifest to JSON."""
        now = now_iso()
        if not self.manifest.creation_date:
            self.manifest.creation_date = now
        self.manifest.last_modified = now
        return self.manifest.to_json()

    def preview_manifest(self) -> Dict[str, Any]:
        return json.loads(self.generate_manifest())

    async def pack(
        self,
        format: str = "a3d",
        include_hashes: bool = True,
        compression: Optional[str] = None,
        on_progress: Optional[PackProgress] = None,
    ) -> bytes:
        """
        Pack the builder's state into container bytes.

        Args:
            format: "a3d" (stored) or "a3z" (deflated)
            include_hashes: Compute and embed the integrity block
            compression: "STORE" or "DEFLATE"; defaults from `format`
            on_progress: Called as on_progress(percent, stage)

        Returns:
            Container bytes

        Raises:
            ArchiveValidationError: Listing every violated rule
        """
        result = self.validate()
        if not result.valid:
            raise ArchiveValidationError(result.errors)

        if compression is None:
            compression = "DEFLATE" if format == "a3z" else "STORE"
        compression = compression.upper()
        if compression not in ("STORE", "DEFLATE"):
            raise ValueError(f"Unknown compression: {compression}")

        def report(percent: float, stage: str) -> None:
            if on_progress:
                on_progress(int(round(percent)), stage)

        if include_hashes:
            report(0, "Calculating hashes...")
            await self.calculate_hashes()
            report(20, "Hashes complete")
        else:
            # Drop any block left over from an earlier pack
            self.manifest.integrity = None
        report(20 if include_hashes else 0, "Preparing archive...")

        base = 25 if include_hashes else 5
        sizes = {path: staged.payload.size for path, staged in self._files.items()}
        total = sum(sizes.values()) or 1
        processed = [0]

        def on_file(index: int, count: int, path: str) -> None:
            processed[0] += sizes[path]
            report(base + processed[0] / total * 70, f"Compressing: {path}")

        self.generate_manifest()
        data = pack_container(
            self.manifest,
            {path: staged.payload.read() for path, staged in self._files.items()},
            compress=compression == "DEFLATE",
            compress_level=self.config.compress_level,
            readme=generate_readme(self.manifest, sizes),
            on_file=on_file,
        )
        await asyncio.sleep(0)

        report(100, "Complete")
        logger.info("Packed %d files into %s container (%d bytes)", len(self._files), format, len(data))
        return data

    async def write(self, path: Union[str, Path], **options) -> Path:
        """
        Pack and write the container to disk.

        The format defaults to the file extension (.a3z deflates).
        """
        path = Path(path)
        options.setdefault("format", "a3z" if path.suffix.lower() == ".a3z" else "a3d")
        data = await self.pack(**options)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def reset(self) -> None:
        """Return to an empty state. The hash cache survives."""
        self.manifest = Manifest()
        self._files.clear()
        self.annotations = []


def _make_transform(position, rotation, scale, parameters) -> Transform:
    transform = Transform.from_dict({
        "position": list(position) if position is not None else None,
        "rotation": list(rotation) if rotation is not None else None,
        "scale": scale,
    })
    transform.extra.update(parameters or {})
    return transform


def _first_present(values: Dict[str, Any], names: Sequence[str]) -> Any:
    for name in names:
        if name in values:
            return values[name]
    return None
