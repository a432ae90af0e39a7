"""
Per-archive asset load coordinator.

One coordinator is created per opened archive. It owns the load state of
each asset kind (splat, mesh, pointcloud), extracts entries on demand
through the ArchiveReader, and hands them to a scene sink.

Concurrent `ensure_loaded` calls for the same kind attach to one shared
future, so a kind is only ever extracted once. Per-asset failures are
turned into the ERROR state and a False return; they are never raised.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from archive3d.config import DEFAULT_CONFIG, ArchiveConfig
from archive3d.manifest import (
    ASSET_KINDS,
    KIND_MESH,
    KIND_SPLAT,
    KIND_TO_ROLE,
    DataEntry,
    Manifest,
)
from archive3d.payload import PayloadHandle
from archive3d.quality import TIER_HD, TIER_SD, DeviceProfile, GpuProbe, resolve_quality_tier
from archive3d.reader import ArchiveReader
from archive3d.scene import MemorySceneSink, SceneSink

logger = logging.getLogger(__name__)

FULL = "full"
PROXY = "proxy"

PROXY_KINDS = (KIND_SPLAT, KIND_MESH)


class LoadState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


def _noop(*args, **kwargs) -> None:
    pass


@dataclass
class LoaderHooks:
    """
    Host application callbacks. Every hook is optional.

    Attributes:
        show_loading: Called with the kind when its extraction starts
        hide_loading: Called with the kind when its extraction settles
        on_metadata: Receives the parsed Manifest (metadata form prefill)
        on_annotations: Receives the manifest's annotation list
        notify: Receives (level, message) user notifications
    """
    show_loading: Callable[[str], None] = _noop
    hide_loading: Callable[[str], None] = _noop
    on_metadata: Callable[[Manifest], None] = _noop
    on_annotations: Callable[[List[Dict[str, Any]]], None] = _noop
    notify: Callable[[str, str], None] = _noop


class AssetLoadCoordinator:
    """
    Drives lazy extraction of the three asset kinds of one archive.

    Args:
        reader: Reader with a parsed manifest
        sink: Where extracted assets are placed (default: MemorySceneSink)
        quality: Requested tier "sd", "hd" or "auto"
        profile: Device profile for "auto" resolution
        gpu_probe: GPU max-texture probe for "auto" resolution
        hooks: Host callbacks
        config: Runtime configuration (default quality tier)
    """

    def __init__(
        self,
        reader: ArchiveReader,
        sink: Optional[SceneSink] = None,
        quality: Optional[str] = None,
        profile: Optional[DeviceProfile] = None,
        gpu_probe: Optional[GpuProbe] = None,
        hooks: Optional[LoaderHooks] = None,
        config: Optional[ArchiveConfig] = None,
    ):
        self.reader = reader
        self.sink = sink if sink is not None else MemorySceneSink()
        self.hooks = hooks or LoaderHooks()
        self.config = config or DEFAULT_CONFIG
        self.profile = profile
        self.gpu_probe = gpu_probe
        self.requested_tier = quality or self.config.quality_tier
        self.quality_tier = resolve_quality_tier(self.requested_tier, profile, gpu_probe)

        self._states: Dict[str, LoadState] = {kind: LoadState.UNLOADED for kind in ASSET_KINDS}
        self._inflight: Dict[str, "asyncio.Future[bool]"] = {}
        self._displayed: Dict[str, str] = {}
        self._payloads: Dict[Tuple[str, str], PayloadHandle] = {}
        self._background: Dict[Tuple[str, str], "asyncio.Task[Optional[PayloadHandle]]"] = {}
        self._generation = 0

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def states(self) -> Dict[str, LoadState]:
        return dict(self._states)

    def state(self, kind: str) -> LoadState:
        return self._states[kind]

    def displayed_variant(self, kind: str) -> Optional[str]:
        """Which variant ("full" or "proxy") is displayed for a loaded kind."""
        return self._displayed.get(kind)

    @property
    def viewing_proxy(self) -> bool:
        """True while the mesh proxy is displayed instead of the full mesh."""
        return self._displayed.get(KIND_MESH) == PROXY

    def reset(self) -> None:
        """Forget every kind's state; results of older background work are dropped."""
        self._generation += 1
        self._states = {kind: LoadState.UNLOADED for kind in ASSET_KINDS}
        self._inflight.clear()
        self._displayed.clear()
        self._payloads.clear()
        self._background.clear()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def ensure_loaded(self, kind: str) -> bool:
        """
        Load one asset kind if needed.

        LOADED returns True and ERROR returns False immediately. A kind
        already LOADING is awaited rather than extracted a second time.
        A kind absent from the archive returns False and stays UNLOADED.
        A load overtaken by reset() settles with False and leaves the
        newer state alone.
        """
        if kind not in self._states:
            raise ValueError(f"Unknown asset kind: {kind}")

        state = self._states[kind]
        if state is LoadState.LOADED:
            return True
        if state is LoadState.ERROR:
            return False
        if state is LoadState.LOADING:
            return await asyncio.shield(self._inflight[kind])

        self._states[kind] = LoadState.LOADING
        future: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()
        self._inflight[kind] = future
        generation = self._generation

        result = False
        try:
            self.hooks.show_loading(kind)
            result = await self._load(kind, generation)
        except Exception as e:
            logger.error("Failed to load %s: %s", kind, e)
            if generation == self._generation:
                self._states[kind] = LoadState.ERROR
            result = False
        finally:
            if generation == self._generation and self._states[kind] is LoadState.LOADING:
                # Interrupted before settling
                self._states[kind] = LoadState.UNLOADED
            self.hooks.hide_loading(kind)
            if self._inflight.get(kind) is future:
                del self._inflight[kind]
            future.set_result(result)
        return result

    async def _load(self, kind: str, generation: int) -> bool:
        reader = self.reader
        summary = reader.content_summary()
        primary = reader.primary_entry(KIND_TO_ROLE[kind])
        if primary is None or not summary.has_kind(kind):
            self._states[kind] = LoadState.UNLOADED
            return False

        proxy = self._proxy_entry(kind)
        use_proxy = proxy is not None and self.quality_tier == TIER_SD
        entry = proxy if use_proxy else primary
        variant = PROXY if use_proxy else FULL

        extracted = await reader.extract(entry.file_name)
        if generation != self._generation:
            logger.debug("Dropping %s loaded before reset", kind)
            return False
        self.sink.place(kind, extracted.handle, reader.entry_transform(primary))
        self._payloads[(kind, variant)] = extracted.handle
        self._displayed[kind] = variant

        if use_proxy:
            self._spawn(kind, FULL, primary.file_name)
        elif proxy is not None:
            # Keep the proxy around for re-export and tier switches
            self._spawn(kind, PROXY, proxy.file_name)

        self._states[kind] = LoadState.LOADED
        logger.info("Loaded %s from %s", kind, entry.file_name)
        return True

    def _proxy_entry(self, kind: str) -> Optional[DataEntry]:
        if kind not in PROXY_KINDS:
            return None
        summary = self.reader.content_summary()
        available = summary.has_mesh_proxy if kind == KIND_MESH else summary.has_scene_proxy
        return self.reader.proxy_entry(KIND_TO_ROLE[kind]) if available else None

    def _spawn(self, kind: str, variant: str, file_name: str) -> None:
        key = (kind, variant)
        if key in self._payloads or key in self._background:
            return
        self._background[key] = asyncio.ensure_future(
            self._extract_background(kind, variant, file_name, self._generation)
        )

    async def _extract_background(
        self, kind: str, variant: str, file_name: str, generation: int
    ) -> Optional[PayloadHandle]:
        try:
            extracted = await self.reader.extract(file_name)
        except Exception as e:
            logger.warning("Background extraction of %s failed: %s", file_name, e)
            return None
        if generation == self._generation:
            self._payloads[(kind, variant)] = extracted.handle
        logger.debug("Background extracted %s %s", kind, variant)
        return extracted.handle

    async def _variant_payload(self, kind: str, variant: str, wait: bool = True) -> Optional[PayloadHandle]:
        handle = self._payloads.get((kind, variant))
        if handle is not None or not wait:
            return handle

        task = self._background.get((kind, variant))
        if task is not None:
            handle = await asyncio.shield(task)
            if handle is not None:
                return handle

        entry = self.reader.primary_entry(KIND_TO_ROLE[kind]) if variant == FULL else self._proxy_entry(kind)
        if entry is None:
            return None
        try:
            extracted = await self.reader.extract(entry.file_name)
        except Exception as e:
            logger.error("Failed to extract %s %s: %s", kind, variant, e)
            return None
        self._payloads[(kind, variant)] = extracted.handle
        return extracted.handle

    async def _show_variant(self, kind: str, variant: str) -> bool:
        if self._states[kind] is not LoadState.LOADED:
            return False
        if self._displayed.get(kind) == variant:
            return True
        handle = await self._variant_payload(kind, variant)
        if handle is None:
            return False
        primary = self.reader.primary_entry(KIND_TO_ROLE[kind])
        self.sink.place(kind, handle, self.reader.entry_transform(primary))
        self._displayed[kind] = variant
        return True

    async def load_full_resolution(self, kind: str = KIND_MESH) -> bool:
        """
        Swap a displayed proxy for the full-resolution entry.

        Uses the payload extracted in the background; only extracts now
        if that extraction failed or never started.
        """
        swapped = await self._show_variant(kind, FULL)
        if swapped:
            logger.info("Showing full resolution %s", kind)
        return swapped

    async def switch_quality_tier(self, tier: str) -> str:
        """
        Change the quality tier and swap loaded splat/mesh representations.

        Returns:
            The resolved tier
        """
        resolved = resolve_quality_tier(tier, self.profile, self.gpu_probe)
        self.requested_tier = tier
        if resolved == self.quality_tier:
            return resolved
        self.quality_tier = resolved

        variant = FULL if resolved == TIER_HD else PROXY
        for kind in PROXY_KINDS:
            if self._proxy_entry(kind) is not None:
                await self._show_variant(kind, variant)
        logger.info("Quality tier switched to %s", resolved)
        return resolved

    # -------------------------------------------------------------------------
    # Export and shutdown
    # -------------------------------------------------------------------------

    async def full_resolution_payload(self, kind: str, wait: bool = True) -> Optional[PayloadHandle]:
        """
        Full-resolution payload of a kind, e.g. for re-export.

        While a proxy is displayed the full entry may still be extracting in
        the background; with `wait` the call waits for that extraction
        instead of starting another one.

        Returns:
            The payload, or None if unavailable (or not ready and not waiting)
        """
        return await self._variant_payload(kind, FULL, wait)

    async def proxy_payload(self, kind: str, wait: bool = True) -> Optional[PayloadHandle]:
        if self._proxy_entry(kind) is None:
            return None
        return await self._variant_payload(kind, PROXY, wait)

    async def drain(self) -> None:
        """Wait for every background extraction to settle."""
        while True:
            pending = [task for task in self._background.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Let background extractions finish; nothing is cancelled."""
        await self.drain()
