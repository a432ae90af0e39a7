"""
Manifest schema, naming conventions and validation for archive-3d containers.

This module is the single definition of the manifest.json document and of
its data entries. Both the archive builder (write path) and the archive
reader (read path) go through the dataclasses and the validator here.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Container, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

CONTAINER_VERSION = "1.0"
SUPPORTED_CONTAINER_VERSIONS = ("1.0",)
METADATA_SCHEMA_VERSION = "1.0"
PACKER_NAME = "archive3d"
PACKER_VERSION = "0.1.0"
MANIFEST_NAME = "manifest.json"
README_NAME = "README.txt"

ARCHIVE_EXTENSIONS = ("a3d", "a3z")
METADATA_PROFILES = ("basic", "standard", "archival")

# Entry roles
ROLE_SCENE = "scene"
ROLE_MESH = "mesh"
ROLE_POINTCLOUD = "pointcloud"
ROLE_DERIVED = "derived"
ROLE_THUMBNAIL = "thumbnail"
ROLE_SCREENSHOT = "screenshot"
ROLE_IMAGE = "image"
ROLE_SOURCE = "source"

ROLES = (
    ROLE_SCENE, ROLE_MESH, ROLE_POINTCLOUD, ROLE_DERIVED,
    ROLE_THUMBNAIL, ROLE_SCREENSHOT, ROLE_IMAGE, ROLE_SOURCE,
)
PRIMARY_ROLES = (ROLE_SCENE, ROLE_MESH, ROLE_POINTCLOUD)

# Asset kinds as seen by the viewer
KIND_SPLAT = "splat"
KIND_MESH = "mesh"
KIND_POINTCLOUD = "pointcloud"
ASSET_KINDS = (KIND_SPLAT, KIND_MESH, KIND_POINTCLOUD)

ROLE_TO_KIND = {
    ROLE_SCENE: KIND_SPLAT,
    ROLE_MESH: KIND_MESH,
    ROLE_POINTCLOUD: KIND_POINTCLOUD,
}
KIND_TO_ROLE = {kind: role for role, kind in ROLE_TO_KIND.items()}

LOD_PROXY = "proxy"
PROXY_SUFFIX = "_proxy"

SUPPORTED_FORMATS: Dict[str, Tuple[str, ...]] = {
    KIND_SPLAT: ("ply", "spz", "ksplat", "sog", "splat"),
    KIND_MESH: ("glb", "gltf", "obj", "stl"),
    KIND_POINTCLOUD: ("e57", "ply"),
    ROLE_THUMBNAIL: ("png", "jpg", "jpeg", "webp"),
}

# Already-compressed formats are stored rather than deflated
STORED_EXTENSIONS = frozenset(("glb", "spz", "sog", "jpg", "jpeg", "png", "webp", "e57"))

IDENTITY_POSITION = (0, 0, 0)
IDENTITY_ROTATION = (0, 0, 0)
IDENTITY_SCALE = 1

_KEY_PATTERN = re.compile(r"^(?P<prefix>[a-z]+)_(?P<index>\d+)(?P<proxy>_proxy)?$")
_SOURCE_DISALLOWED = re.compile(r"[^A-Za-z0-9._-]")
_UNDERSCORE_RUN = re.compile(r"_{2,}")
_ARCHIVE_PATH_ALLOWED = re.compile(r"^[A-Za-z0-9_\-./]+$")
MAX_FILENAME_LENGTH = 255


# =============================================================================
# Section defaults
# =============================================================================

_DEFAULT_SECTIONS: Dict[str, Dict[str, Any]] = {
    "project": {
        "title": "",
        "id": "",
        "license": "CC0",
        "description": "",
        "tags": [],
    },
    "relationships": {
        "part_of": "",
        "derived_from": "",
        "replaces": "",
        "related_objects": [],
    },
    "provenance": {
        "capture_date": "",
        "capture_device": "",
        "device_serial": "",
        "operator": "",
        "operator_orcid": "",
        "location": "",
        "convention_hints": [],
        "processing_software": [],
        "processing_notes": "",
    },
    "quality_metrics": {
        "tier": "",
        "accuracy_grade": "",
        "capture_resolution": {"value": None, "unit": "mm", "type": "GSD"},
        "alignment_error": {"value": None, "unit": "mm", "method": "RMSE"},
        "scale_verification": "",
        "data_quality": {
            "coverage_gaps": "",
            "reconstruction_areas": "",
            "color_calibration": "",
            "measurement_uncertainty": "",
        },
    },
    "archival_record": {
        "standard": "",
        "title": "",
        "alternate_titles": [],
        "ids": {"accession_number": "", "siris_id": "", "uri": ""},
        "creation": {"creator": "", "date_created": "", "period": "", "culture": ""},
        "physical_description": {
            "medium": "",
            "dimensions": {"height": "", "width": "", "depth": ""},
            "condition": "",
        },
        "provenance": "",
        "rights": {"copyright_status": "", "credit_line": ""},
        "context": {"description": "", "location_history": ""},
        "coverage": {
            "spatial": {"location_name": "", "coordinates": [None, None]},
            "temporal": {"subject_period": "", "subject_date_circa": False},
        },
    },
    "material_standard": {
        "workflow": "",
        "occlusion_packed": False,
        "color_space": "",
        "normal_space": "",
    },
    "viewer_settings": {
        "single_sided": True,
        "background_color": None,
        "display_mode": "",
        "camera_position": None,
        "camera_target": None,
        "auto_rotate": False,
        "annotations_visible": True,
    },
    "preservation": {
        "format_registry": {
            "glb": "fmt/861",
            "obj": "fmt/935",
            "ply": "fmt/831",
            "e57": "fmt/643",
        },
        "significant_properties": [],
        "rendering_requirements": "",
        "rendering_notes": "",
    },
}

SECTION_NAMES = tuple(_DEFAULT_SECTIONS)


def default_section(name: str) -> Dict[str, Any]:
    """Return a fresh copy of a manifest section's default contents."""
    return copy.deepcopy(_DEFAULT_SECTIONS[name])


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge `override` into a copy of `base`, recursing into nested dicts.

    Lists and scalars in `override` replace the base value outright.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# =============================================================================
# Data entries
# =============================================================================

@dataclass
class Transform:
    """Placement of an entry in the shared scene (`_parameters`)."""
    position: List[float] = field(default_factory=lambda: list(IDENTITY_POSITION))
    rotation: List[float] = field(default_factory=lambda: list(IDENTITY_ROTATION))
    scale: Union[float, List[float]] = IDENTITY_SCALE
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "position": list(self.position),
            "rotation": list(self.rotation),
            "scale": list(self.scale) if isinstance(self.scale, (list, tuple)) else self.scale,
        }
        d.update(copy.deepcopy(self.extra))
        return d

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "Transform":
        """Build a transform, substituting identity for any missing field."""
        d = dict(d or {})
        position = d.pop("position", None)
        rotation = d.pop("rotation", None)
        scale = d.pop("scale", None)
        return cls(
            position=list(position) if position is not None else list(IDENTITY_POSITION),
            rotation=list(rotation) if rotation is not None else list(IDENTITY_ROTATION),
            scale=scale if scale is not None else IDENTITY_SCALE,
            extra=d,
        )

    def is_identity(self) -> bool:
        scale = self.scale if isinstance(self.scale, (list, tuple)) else [self.scale] * 3
        return (
            all(v == 0 for v in self.position)
            and all(v == 0 for v in self.rotation)
            and all(v == 1 for v in scale)
        )


@dataclass
class DataEntry:
    """
    One packaged file described by the manifest.

    `role` is the tagged variant: primary assets use scene/mesh/pointcloud,
    low-detail representations use `derived` with `lod="proxy"` and a
    `derived_from` key, the rest use thumbnail/screenshot/image/source.
    """
    file_name: str
    role: str = ""
    created_by: str = "unknown"
    created_by_version: Optional[str] = None
    source_notes: Optional[str] = None
    parameters: Optional[Transform] = None
    derived_from: Optional[str] = None
    lod: Optional[str] = None
    face_count: Optional[int] = None
    size_bytes: Optional[int] = None
    source_category: Optional[str] = None
    original_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_primary(self) -> bool:
        return self.role in PRIMARY_ROLES

    @property
    def is_proxy(self) -> bool:
        return self.role == ROLE_DERIVED and self.lod == LOD_PROXY

    @property
    def extension(self) -> str:
        return file_extension(self.file_name)

    @property
    def kind(self) -> Optional[str]:
        """Asset kind (splat/mesh/pointcloud) for primary and derived entries."""
        if self.role in ROLE_TO_KIND:
            return ROLE_TO_KIND[self.role]
        if self.role == ROLE_DERIVED and self.derived_from:
            parsed = parse_entry_key(self.derived_from)
            if parsed:
                return ROLE_TO_KIND.get(parsed[0])
        return None

    @property
    def transform(self) -> Transform:
        return self.parameters if self.parameters is not None else Transform()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"file_name": self.file_name}
        if self.original_name is not None:
            d["original_name"] = self.original_name
        d["role"] = self.role
        d["created_by"] = self.created_by
        if self.created_by_version is not None:
            d["_created_by_version"] = self.created_by_version
        if self.source_notes is not None:
            d["_source_notes"] = self.source_notes
        for key in ("lod", "derived_from", "face_count", "source_category", "size_bytes"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        if self.parameters is not None:
            d["_parameters"] = self.parameters.to_dict()
        d.update(copy.deepcopy(self.extra))
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any], key: str = "") -> "DataEntry":
        """
        Create a DataEntry from its manifest dictionary.

        Entries written without a recognized role (older packers stored a free
        text role) get one inferred from `key`.
        """
        d = dict(d)
        params = d.pop("_parameters", None)
        known = {
            "file_name", "role", "created_by", "_created_by_version", "_source_notes",
            "derived_from", "lod", "face_count", "size_bytes", "source_category",
            "original_name",
        }
        entry = cls(
            file_name=d.get("file_name", ""),
            role=infer_role(key, d),
            created_by=d.get("created_by", "unknown"),
            created_by_version=d.get("_created_by_version"),
            source_notes=d.get("_source_notes"),
            parameters=Transform.from_dict(params) if params is not None else None,
            derived_from=d.get("derived_from"),
            lod=d.get("lod"),
            face_count=d.get("face_count"),
            size_bytes=d.get("size_bytes"),
            source_category=d.get("source_category"),
            original_name=d.get("original_name"),
            extra={k: v for k, v in d.items() if k not in known},
        )
        if entry.role == ROLE_DERIVED and not entry.derived_from and key.endswith(PROXY_SUFFIX):
            entry.derived_from = key[: -len(PROXY_SUFFIX)]
        return entry


def parse_entry_key(key: str) -> Optional[Tuple[str, int, bool]]:
    """
    Split an entry key into (prefix, index, is_proxy).

    >>> parse_entry_key("mesh_0_proxy")
    ('mesh', 0, True)
    """
    match = _KEY_PATTERN.match(key)
    if not match:
        return None
    return match.group("prefix"), int(match.group("index")), bool(match.group("proxy"))


def infer_role(key: str, d: Dict[str, Any]) -> str:
    """Resolve the role of an entry dict, falling back to its key prefix."""
    role = d.get("role") or ""
    if role in ROLES:
        return role
    if d.get("lod") == LOD_PROXY or key.endswith(PROXY_SUFFIX):
        return ROLE_DERIVED
    parsed = parse_entry_key(key)
    if parsed and parsed[0] in ROLES:
        return parsed[0]
    return role


def entry_sort_key(key: str) -> Tuple[int, str]:
    parsed = parse_entry_key(key)
    return (parsed[1], key) if parsed else (1 << 30, key)


# =============================================================================
# Manifest
# =============================================================================

def _section_field(name: str):
    return field(default_factory=lambda: default_section(name))


@dataclass
class Manifest:
    """
    Root manifest.json document for one container.

    Metadata sections are kept as nested dicts using the manifest's own
    snake_case field names; data entries are typed.
    """
    container_version: str = CONTAINER_VERSION
    metadata_schema_version: str = METADATA_SCHEMA_VERSION
    metadata_profile: str = "standard"
    packer: str = PACKER_NAME
    packer_version: str = PACKER_VERSION
    creation_date: str = ""
    last_modified: str = ""
    project: Dict[str, Any] = _section_field("project")
    relationships: Dict[str, Any] = _section_field("relationships")
    provenance: Dict[str, Any] = _section_field("provenance")
    quality_metrics: Dict[str, Any] = _section_field("quality_metrics")
    archival_record: Dict[str, Any] = _section_field("archival_record")
    material_standard: Dict[str, Any] = _section_field("material_standard")
    viewer_settings: Dict[str, Any] = _section_field("viewer_settings")
    preservation: Dict[str, Any] = _section_field("preservation")
    data_entries: Dict[str, DataEntry] = field(default_factory=dict)
    annotations: List[Dict[str, Any]] = field(default_factory=list)
    version_history: List[Dict[str, Any]] = field(default_factory=list)
    integrity: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.project.get("title") or ""

    @property
    def custom_fields(self) -> Dict[str, Any]:
        return self.meta.get("custom_fields", {})

    @property
    def quality_stats(self) -> Dict[str, Any]:
        return self.meta.get("quality", {})

    def entries_with_role(self, role: str) -> List[Tuple[str, DataEntry]]:
        """(key, entry) pairs for one role, ordered by their `_n` index."""
        pairs = [(k, e) for k, e in self.data_entries.items() if e.role == role]
        pairs.sort(key=lambda pair: entry_sort_key(pair[0]))
        return pairs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d: Dict[str, Any] = {
            "container_version": self.container_version,
            "metadata_schema_version": self.metadata_schema_version,
            "metadata_profile": self.metadata_profile,
            "packer": self.packer,
            "packer_version": self.packer_version,
            "_creation_date": self.creation_date,
            "_last_modified": self.last_modified,
        }
        for name in SECTION_NAMES:
            d[name] = copy.deepcopy(getattr(self, name))
        d["data_entries"] = {k: e.to_dict() for k, e in self.data_entries.items()}
        d["annotations"] = copy.deepcopy(self.annotations)
        d["version_history"] = copy.deepcopy(self.version_history)
        if self.integrity is not None:
            d["integrity"] = copy.deepcopy(self.integrity)
        d["_meta"] = copy.deepcopy(self.meta)
        for key, value in self.extra.items():
            d.setdefault(key, copy.deepcopy(value))
        return d

    def to_json(self, indent: int = 2) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Manifest":
        """Create Manifest from dictionary, filling absent sections with defaults."""
        consumed = {
            "container_version", "metadata_schema_version", "metadata_profile",
            "packer", "packer_version", "_creation_date", "_last_modified",
            "data_entries", "annotations", "version_history", "integrity", "_meta",
        } | set(SECTION_NAMES)

        sections = {
            name: deep_merge(_DEFAULT_SECTIONS[name], d.get(name) or {})
            for name in SECTION_NAMES
        }
        entries = {
            key: DataEntry.from_dict(value, key=key)
            for key, value in (d.get("data_entries") or {}).items()
        }
        return cls(
            container_version=d.get("container_version", ""),
            metadata_schema_version=d.get("metadata_schema_version", "0"),
            metadata_profile=d.get("metadata_profile", "standard"),
            packer=d.get("packer", "Unknown"),
            packer_version=d.get("packer_version", ""),
            creation_date=d.get("_creation_date") or d.get("created_at") or "",
            last_modified=d.get("_last_modified", ""),
            data_entries=entries,
            annotations=list(d.get("annotations") or []),
            version_history=list(d.get("version_history") or []),
            integrity=d.get("integrity"),
            meta=dict(d.get("_meta") or {}),
            extra={k: v for k, v in d.items() if k not in consumed},
            **sections,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Manifest":
        """Create Manifest from JSON string."""
        return cls.from_dict(json.loads(json_str))

    def validate(self, payload_index: Container[str]) -> "ValidationResult":
        return validate_manifest(self, payload_index)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Validation
# =============================================================================

ERR_NO_PRIMARY = "Archive must contain at least one scene (splat), mesh, or point cloud file"
ERR_NO_TITLE = "Project title is required"


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid


def validate_manifest(manifest: Manifest, payload_index: Container[str]) -> ValidationResult:
    """
    Check a manifest against the set of payload paths available for it.

    Every violated rule is reported, not just the first one.

    Args:
        manifest: Manifest to check
        payload_index: Anything supporting `in` over archive paths
                       (builder file map, ZIP name list, ...)

    Returns:
        ValidationResult with `valid` and the list of errors
    """
    errors: List[str] = []

    has_primary = any(entry.is_primary for entry in manifest.data_entries.values())
    if not has_primary:
        errors.append(ERR_NO_PRIMARY)

    if not manifest.title.strip():
        errors.append(ERR_NO_TITLE)

    for key, entry in manifest.data_entries.items():
        if entry.file_name not in payload_index:
            errors.append(f"Missing file: {entry.file_name}")
        if entry.role == ROLE_DERIVED:
            target = manifest.data_entries.get(entry.derived_from or "")
            if target is None or not target.is_primary:
                errors.append(f"Proxy {key} references unknown entry {entry.derived_from}")

    return ValidationResult(valid=not errors, errors=errors)


# =============================================================================
# Naming conventions
# =============================================================================

def file_extension(filename: str) -> str:
    """Lower-cased extension without the dot, or "" when there is none."""
    base = filename.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[-1].lower()


def with_extension(stem: str, filename: str) -> str:
    ext = file_extension(filename)
    return f"{stem}.{ext}" if ext else stem


def next_entry_key(entries: Dict[str, DataEntry], role: str) -> str:
    """`{role}_{n}` where n counts the entries already holding that role."""
    count = sum(1 for entry in entries.values() if entry.role == role)
    return f"{role}_{count}"


def proxy_key(primary_key: str) -> str:
    return f"{primary_key}{PROXY_SUFFIX}"


def asset_path(key: str, filename: str) -> str:
    """Archive path for primary and proxy assets: assets/{key}.{ext}."""
    return with_extension(f"assets/{key}", filename)


def sanitize_source_name(filename: str) -> str:
    """
    Make a source file name safe for the sources/ folder.

    Disallowed characters become `_` and runs of `_` collapse to one.
    Applying it twice gives the same result as applying it once.
    """
    return _UNDERSCORE_RUN.sub("_", _SOURCE_DISALLOWED.sub("_", filename))


def unique_source_path(sanitized: str, taken: Container[str]) -> str:
    """
    Place a sanitized source name under sources/, suffixing _1, _2, ... on collision.
    """
    path = f"sources/{sanitized}"
    if path not in taken:
        return path
    dot = sanitized.rfind(".")
    base, ext = (sanitized[:dot], sanitized[dot:]) if dot > 0 else (sanitized, "")
    n = 1
    while f"sources/{base}_{n}{ext}" in taken:
        n += 1
    return f"sources/{base}_{n}{ext}"


def is_archive_file(filename: str) -> bool:
    return bool(filename) and file_extension(filename) in ARCHIVE_EXTENSIONS


def is_format_supported(filename: str, kind: str) -> bool:
    return file_extension(filename) in SUPPORTED_FORMATS.get(kind, ())


@dataclass
class SanitizationResult:
    safe: bool
    sanitized: str = ""
    error: str = ""


def sanitize_archive_filename(filename: Optional[str]) -> SanitizationResult:
    """
    Guard an entry name against path traversal before it is extracted.

    Backslashes are normalized, URL-encoded dots decoded, `..` segments and
    leading slashes stripped. Names that still look hostile are rejected.
    """
    if not filename or not isinstance(filename, str):
        return SanitizationResult(False, error="Filename is empty or not a string")

    sanitized = filename.strip()

    if "\0" in sanitized:
        logger.warning("Blocked filename with null byte: %r", filename)
        return SanitizationResult(False, error="Filename contains null bytes")

    sanitized = sanitized.replace("\\", "/")

    sanitized = re.sub(r"%252e", ".", sanitized, flags=re.IGNORECASE)
    sanitized = re.sub(r"%2e", ".", sanitized, flags=re.IGNORECASE)
    decoded = sanitized
    sanitized = sanitized.replace("../", "").replace("..", "")
    sanitized = sanitized.replace("/./", "/")
    if sanitized.startswith("./"):
        sanitized = sanitized[2:]
    sanitized = sanitized.lstrip("/")

    if decoded != sanitized and ".." in decoded:
        logger.warning("Blocked path traversal attempt: %r", filename)
        return SanitizationResult(False, error="Path traversal attempt detected")

    if not sanitized:
        return SanitizationResult(False, error="Filename is empty after sanitization")

    if not _ARCHIVE_PATH_ALLOWED.match(sanitized):
        logger.warning("Blocked filename with invalid characters: %r", filename)
        return SanitizationResult(False, error="Filename contains invalid characters")

    if sanitized.startswith("."):
        logger.warning("Blocked hidden file: %r", filename)
        return SanitizationResult(False, error="Hidden files are not allowed")

    if len(sanitized) > MAX_FILENAME_LENGTH:
        logger.warning("Blocked overly long filename: %s...", filename[:50])
        return SanitizationResult(
            False, error=f"Filename exceeds maximum length ({MAX_FILENAME_LENGTH} characters)"
        )

    return SanitizationResult(True, sanitized=sanitized)


def split_conventions(conventions: Union[str, Iterable[str]]) -> List[str]:
    """Accept a list of convention hints or a comma-separated string."""
    if isinstance(conventions, str):
        return [c.strip() for c in conventions.split(",") if c.strip()]
    return list(conventions)
