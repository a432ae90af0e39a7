"""
Plain-text README.txt written into every container.

The README lets someone with only a ZIP tool understand what the archive
holds and how to open it, without any archive3d software.
"""

import re
from typing import Dict, List, Optional

from archive3d.manifest import (
    MANIFEST_NAME,
    README_NAME,
    ROLE_IMAGE,
    ROLE_SOURCE,
    ROLE_THUMBNAIL,
    Manifest,
    file_extension,
)

WIDTH = 68
SEP = "=" * WIDTH
SUBSEP = "-" * WIDTH
NAME_COLUMN = 24

FORMAT_LABELS = {
    "ply": "Gaussian splat data (PLY format)",
    "splat": "Gaussian splat data",
    "ksplat": "Gaussian splat data",
    "spz": "Gaussian splat data (Spark compressed)",
    "sog": "Gaussian splat data (SOG format)",
    "glb": "3D mesh (glTF Binary format)",
    "gltf": "3D mesh (glTF format)",
    "obj": "3D mesh (Wavefront OBJ format)",
    "stl": "3D mesh (STL format)",
    "e57": "Point cloud (ASTM E57 format)",
    "jpg": "Image",
    "jpeg": "Image",
    "png": "Image",
    "webp": "Image",
}

SOURCE_CATEGORY_LABELS = {
    "raw_photography": "Raw Photography",
    "processing_report": "Processing Report",
    "ground_control": "Ground Control Points",
    "calibration": "Calibration Data",
    "project_file": "Project File",
    "reference": "Reference Material",
    "other": "Other",
}

# (extensions, paragraph) pairs; a paragraph is listed only when one of its
# extensions is present in the archive
TECHNOLOGY_NOTES = [
    (("glb", "gltf"), [
        "glTF / GLB (Graphics Language Transmission Format)",
        "  An open standard by the Khronos Group for 3D models.",
        "  Contains geometry, materials, and textures. GLB is the",
        "  binary-packed variant, readable by Blender, MeshLab and",
        "  most CAD tools.",
        "  Specification: https://www.khronos.org/gltf/",
    ]),
    (("obj",), [
        "OBJ (Wavefront OBJ)",
        "  A plain-text 3D geometry format with vertices, faces and",
        "  normals. Readable by virtually all 3D software.",
    ]),
    (("stl",), [
        "STL (Stereolithography)",
        "  A triangle-only mesh format common in 3D printing and CAD.",
    ]),
    (("e57",), [
        "E57 (ASTM E2807 standard)",
        "  A standardized format for 3D point cloud data from laser",
        "  scanners and other 3D imaging systems. Supported by",
        "  CloudCompare, Autodesk ReCap and most survey tools.",
    ]),
    (("ply", "splat", "ksplat", "spz", "sog"), [
        "PLY / splat formats (Gaussian Splatting)",
        "  Scenes stored as collections of 3D Gaussian primitives with",
        "  per-splat position, covariance, color and opacity.",
        "  NOTE: splat files are derived visualization products, not",
        "  primary measurement data. The mesh and point cloud files",
        "  preserve the underlying geometry should these formats",
        "  become unreadable.",
    ]),
]

HOW_TO_USE = [
    "1. Extract the ZIP file using any standard tool:",
    "     unzip archive.a3d",
    "   or rename to .zip and use your OS built-in extractor.",
    "",
    "2. Open manifest.json in any text editor to read the full",
    "   metadata: project information, provenance, quality metrics,",
    "   spatial annotations, and alignment transforms.",
    "",
    "3. Open the 3D data files in appropriate software:",
    "   - GLB/glTF/OBJ meshes: Blender, MeshLab, or any 3D viewer",
    "   - E57 point clouds: CloudCompare, ReCap",
    "   - PLY splat files: any Gaussian splatting viewer",
    "",
    "4. The _parameters field of each data entry in manifest.json",
    "   records the position, rotation and scale that register the",
    "   assets relative to each other.",
]

_ASSET_REF = re.compile(r"!\[.*?\]\(asset:[^)]+\)")


def format_size(num_bytes: int, parens: bool = True) -> str:
    """Human-readable size for files of at least 1 KB, otherwise ""."""
    if num_bytes >= 1024 * 1024:
        text = f"{num_bytes / (1024 * 1024):.1f} MB"
    elif num_bytes >= 1024:
        text = f"{num_bytes / 1024:.0f} KB"
    else:
        return ""
    return f"({text})" if parens else text


def _project_lines(m: Manifest) -> List[str]:
    project = m.project
    if not (project.get("title") or project.get("description")):
        return []

    lines = ["PROJECT", SUBSEP]
    if project.get("title"):
        lines.append(f"Title:       {project['title']}")
    description = _ASSET_REF.sub("", project.get("description") or "")
    description = " ".join(description.split())
    if description:
        lines.append(f"Description: {description}")
    if project.get("license"):
        lines.append(f"License:     {project['license']}")

    creator = (m.archival_record.get("creation") or {}).get("creator")
    if creator:
        lines.append(f"Creator:     {creator}")
    elif m.provenance.get("operator"):
        lines.append(f"Operator:    {m.provenance['operator']}")
    for label, key in (("Captured:", "capture_date"), ("Location:", "location"), ("Device:", "capture_device")):
        if m.provenance.get(key):
            lines.append(f"{label:<13}{m.provenance[key]}")
    lines.append("")
    return lines


def _contents_lines(m: Manifest, sizes: Dict[str, int]) -> List[str]:
    lines = ["CONTENTS", SUBSEP, f"{MANIFEST_NAME:<16} Structured metadata (JSON format)"]

    for entry in m.data_entries.values():
        label = FORMAT_LABELS.get(entry.extension, "Data file")
        if entry.role == ROLE_THUMBNAIL:
            label = "Thumbnail preview"
        elif entry.role == ROLE_IMAGE:
            label = "Embedded image"
        role = f" [{entry.role}]" if entry.role else ""

        size = format_size(sizes.get(entry.file_name, 0))
        name = f"{entry.file_name} {size}" if size else entry.file_name
        lines.append(f"{name:<{NAME_COLUMN}} {label}{role}")

    lines.append(f"{README_NAME:<{NAME_COLUMN}} This file")
    lines.append("")

    if m.annotations:
        lines.append(f"This archive contains {len(m.annotations)} spatial annotation(s)")
        lines.append(f"stored in {MANIFEST_NAME}.")
        lines.append("")
    return lines


def _source_lines(m: Manifest) -> List[str]:
    sources = [entry for _, entry in m.entries_with_role(ROLE_SOURCE)]
    if not sources:
        return []

    lines = [
        "SOURCE FILES",
        SUBSEP,
        f"This archive contains {len(sources)} source file(s) preserved for archival:",
    ]
    total = 0
    for entry in sources:
        size_bytes = entry.size_bytes or 0
        total += size_bytes
        category = ""
        if entry.source_category:
            category = f"  [{SOURCE_CATEGORY_LABELS.get(entry.source_category, entry.source_category)}]"
        lines.append(f"  {entry.file_name or entry.original_name or 'unknown'}  {format_size(size_bytes)}{category}")
    if total >= 1024 * 1024:
        lines.append(f"Total: {format_size(total, parens=False)}")
    lines.append("")
    return lines


def _technology_lines(m: Manifest) -> List[str]:
    present = {entry.extension for entry in m.data_entries.values()}
    lines = [
        "TECHNOLOGY GUIDE",
        SUBSEP,
        "The data files in this archive use open, documented formats:",
        "",
    ]
    for extensions, paragraph in TECHNOLOGY_NOTES:
        if present.intersection(extensions):
            lines.extend("  " + line for line in paragraph)
            lines.append("")
    lines.extend([
        "  JSON (JavaScript Object Notation)",
        f"    {MANIFEST_NAME} holds all metadata, spatial annotations and",
        "    alignment transforms as plain text.",
        "    Specification: RFC 8259 / ECMA-404",
        "",
    ])
    return lines


def _about_lines(m: Manifest) -> List[str]:
    lines = [
        "ABOUT THIS FORMAT",
        SUBSEP,
        f"Format:    archive-3d v{m.container_version}",
        f"Schema:    v{m.metadata_schema_version}",
        f"Created:   {m.creation_date}",
    ]
    if m.last_modified and m.last_modified != m.creation_date:
        lines.append(f"Modified:  {m.last_modified}")
    lines.append(f"Packer:    {m.packer} v{m.packer_version}")
    lines.append("")
    lines.append("archive-3d bundles 3D scan data with structured metadata for")
    lines.append("long-term preservation, using standard ZIP and JSON so that no")
    lines.append("specialized software is needed to extract or inspect it.")
    lines.append("")
    return lines


def generate_readme(manifest: Manifest, sizes: Optional[Dict[str, int]] = None) -> str:
    """
    Render the README.txt text for a manifest.

    Args:
        manifest: Manifest being packed (creation dates already stamped)
        sizes: Optional map of archive path -> payload size in bytes

    Returns:
        README text with PROJECT, CONTENTS, SOURCE FILES, TECHNOLOGY GUIDE,
        HOW TO USE and ABOUT THIS FORMAT sections
    """
    lines = [
        SEP,
        "ARCHIVE-3D CONTAINER",
        SEP,
        "",
        "This file is a self-contained archive of 3D scan data in the",
        "archive-3d format. It is a standard ZIP file. You can extract",
        "its contents with any ZIP utility on any operating system.",
        "",
    ]
    lines += _project_lines(manifest)
    lines += _contents_lines(manifest, sizes or {})
    lines += _source_lines(manifest)
    lines += _technology_lines(manifest)
    lines += ["HOW TO USE THIS ARCHIVE", SUBSEP] + HOW_TO_USE + [""]
    lines += _about_lines(manifest)
    return "\n".join(lines)
