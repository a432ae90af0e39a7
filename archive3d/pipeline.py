"""
Phased loading of an opened archive.

Phase 1 parses the manifest and hands metadata, annotations, embedded
images and the source-file listing to the host. Phase 2 loads the asset
kind the current display mode needs, falling back through the other
kinds. Phase 3 loads whatever else the archive holds in the background
and then releases the raw container bytes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from archive3d.coordinator import AssetLoadCoordinator, LoaderHooks, LoadState
from archive3d.manifest import KIND_MESH, KIND_POINTCLOUD, KIND_SPLAT
from archive3d.payload import PayloadHandle
from archive3d.reader import ArchiveReader, ContentSummary

logger = logging.getLogger(__name__)

FALLBACK_ORDER = (KIND_SPLAT, KIND_MESH, KIND_POINTCLOUD)

DISPLAY_MODE_KINDS: Dict[str, Sequence[str]] = {
    "splat": (KIND_SPLAT,),
    "model": (KIND_MESH,),
    "both": (KIND_SPLAT, KIND_MESH),
    "split": (KIND_SPLAT, KIND_MESH),
    "pointcloud": (KIND_POINTCLOUD,),
}
DEFAULT_MODE_KINDS = (KIND_SPLAT, KIND_MESH)

NO_VIEWABLE_ASSET = "Archive does not contain any viewable splat, mesh, or point cloud files."


@dataclass
class SourceFileInfo:
    """Listing row for a source file; its bytes stay in the archive."""
    key: str
    name: str
    file_name: str
    size: int
    category: str


@dataclass
class LoadResult:
    primary_kind: Optional[str]
    viewable: bool
    attempted: List[str] = field(default_factory=list)
    images: Dict[str, PayloadHandle] = field(default_factory=dict)
    source_files: List[SourceFileInfo] = field(default_factory=list)
    background: Optional["asyncio.Task[None]"] = None

    async def wait(self) -> None:
        """Wait for phase 3 to finish."""
        if self.background is not None:
            await self.background


def mode_kinds(display_mode: str) -> Sequence[str]:
    return DISPLAY_MODE_KINDS.get(display_mode, DEFAULT_MODE_KINDS)


def primary_kind_for_mode(display_mode: str, summary: ContentSummary) -> str:
    """
    The asset kind a display mode will show for this content.

    First kind of the mode that is present, else the first present kind
    in splat, mesh, pointcloud order, else "splat".
    """
    for kind in mode_kinds(display_mode):
        if summary.has_kind(kind):
            return kind
    for kind in FALLBACK_ORDER:
        if summary.has_kind(kind):
            return kind
    return KIND_SPLAT


async def _extract_images(reader: ArchiveReader, hooks: LoaderHooks) -> Dict[str, PayloadHandle]:
    images: Dict[str, PayloadHandle] = {}
    for entry in reader.image_entries():
        try:
            extracted = await reader.extract(entry.file_name)
        except Exception as e:
            logger.warning("Failed to extract image %s: %s", entry.file_name, e)
            continue
        images[entry.file_name] = extracted.handle
    if images:
        logger.info("Extracted %d embedded images", len(images))
    return images


def _list_source_files(reader: ArchiveReader) -> List[SourceFileInfo]:
    return [
        SourceFileInfo(
            key=key,
            name=entry.original_name or entry.file_name.rsplit("/", 1)[-1],
            file_name=entry.file_name,
            size=entry.size_bytes or 0,
            category=entry.source_category or "",
        )
        for key, entry in reader.source_file_entries()
    ]


async def _load_remaining(coordinator: AssetLoadCoordinator, summary: ContentSummary) -> None:
    reader = coordinator.reader
    remaining = [
        kind for kind in FALLBACK_ORDER
        if coordinator.state(kind) is LoadState.UNLOADED and summary.has_kind(kind)
    ]
    for kind in remaining:
        logger.info("Background loading: %s", kind)
    await asyncio.gather(*(coordinator.ensure_loaded(kind) for kind in remaining))
    await coordinator.drain()

    if reader.has_source_files():
        logger.info("All archive assets loaded, raw data retained for source files")
    else:
        reader.release_raw_buffer()


async def load_archive(
    reader: ArchiveReader,
    display_mode: str = "both",
    coordinator: Optional[AssetLoadCoordinator] = None,
    hooks: Optional[LoaderHooks] = None,
    **coordinator_options,
) -> LoadResult:
    """
    Run the three loading phases for an opened reader.

    Phase 3 runs as a background task on the current event loop and is
    returned in `LoadResult.background`.

    Args:
        reader: Reader opened on a container
        display_mode: splat, model, both, split or pointcloud
        coordinator: Coordinator to drive; created from `coordinator_options`
                     (sink, quality, profile, gpu_probe, config) when omitted
        hooks: Host callbacks

    Returns:
        LoadResult; `viewable` is False when no asset kind could be loaded

    Raises:
        MalformedContainerError: If the manifest cannot be parsed
    """
    if coordinator is None:
        coordinator = AssetLoadCoordinator(reader, hooks=hooks, **coordinator_options)
    hooks = hooks or coordinator.hooks

    # Phase 1: manifest, images, listings
    manifest = reader.manifest or reader.parse()
    coordinator.reset()
    summary = reader.content_summary()
    hooks.on_metadata(manifest)
    annotations = reader.annotations()
    if annotations:
        hooks.on_annotations(annotations)
    images = await _extract_images(reader, hooks)
    source_files = _list_source_files(reader)
    if source_files:
        logger.info("Found %d source files in archive manifest", len(source_files))

    # Phase 2: primary asset for the display mode, then fallbacks
    attempted: List[str] = []
    primary_kind = None
    for kind in list(mode_kinds(display_mode)) + list(FALLBACK_ORDER):
        if kind in attempted:
            continue
        attempted.append(kind)
        if await coordinator.ensure_loaded(kind):
            primary_kind = kind
            break

    result = LoadResult(
        primary_kind=primary_kind,
        viewable=primary_kind is not None,
        attempted=attempted,
        images=images,
        source_files=source_files,
    )
    if primary_kind is None:
        logger.warning(NO_VIEWABLE_ASSET)
        hooks.notify("warning", NO_VIEWABLE_ASSET)
        return result

    logger.info("Primary asset loaded: %s (expected %s)", primary_kind,
                primary_kind_for_mode(display_mode, summary))

    # Phase 3: everything else, in the background
    result.background = asyncio.ensure_future(_load_remaining(coordinator, summary))
    return result
