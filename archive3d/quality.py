"""
Quality tier selection (SD / HD) from device capability.

The resolved tier decides whether the asset loader shows a low-detail
proxy or the full-resolution entry, and sets the splat LOD budget.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional

from archive3d.config import DEFAULT_CONFIG, ArchiveConfig

logger = logging.getLogger(__name__)

TIER_SD = "sd"
TIER_HD = "hd"
TIER_AUTO = "auto"

LOW_MEMORY_GB = 4
LOW_CORES = 4
MOBILE_WIDTH_PX = 768
LOW_MAX_TEXTURE = 8192
HD_MIN_SCORE = 3

MOBILE_UA = re.compile(r"Mobile|Android|iPhone|iPad|iPod", re.IGNORECASE)

GpuProbe = Callable[[], int]


@dataclass
class DeviceProfile:
    """
    Capability signals for the tier heuristic.

    None means the signal could not be queried.
    """
    memory_gb: Optional[float] = None
    cores: Optional[int] = None
    screen_width: Optional[int] = None
    user_agent: str = ""

    @classmethod
    def current(cls) -> "DeviceProfile":
        """Profile of the host this process runs on."""
        memory_gb = None
        try:
            memory_gb = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES") / (1024 ** 3)
        except (AttributeError, ValueError, OSError):
            pass
        return cls(memory_gb=memory_gb, cores=os.cpu_count())


def detect_device_tier(profile: Optional[DeviceProfile] = None, gpu_probe: Optional[GpuProbe] = None) -> str:
    """
    Score five capability signals, one point each; 3 or more means HD.

    Unknown memory or core count and a missing or failing GPU probe count
    as capable. The screen width only scores when it is known and wide
    enough, so headless hosts get no point for it.

    Args:
        profile: Device signals (defaults to the host)
        gpu_probe: Returns the GPU's maximum texture size

    Returns:
        "sd" or "hd"
    """
    profile = profile or DeviceProfile.current()
    score = 0

    if profile.memory_gb is None or profile.memory_gb >= LOW_MEMORY_GB:
        score += 1
    if profile.cores is None or profile.cores >= LOW_CORES:
        score += 1
    if profile.screen_width is not None and profile.screen_width >= MOBILE_WIDTH_PX:
        score += 1

    if gpu_probe is None:
        score += 1
    else:
        try:
            if gpu_probe() >= LOW_MAX_TEXTURE:
                score += 1
        except Exception as e:
            logger.debug("GPU probe failed, assuming capable: %s", e)
            score += 1

    if not MOBILE_UA.search(profile.user_agent or ""):
        score += 1

    tier = TIER_HD if score >= HD_MIN_SCORE else TIER_SD
    logger.info("Device tier detected: %s (score %d/5)", tier, score)
    return tier


def resolve_quality_tier(
    requested: Optional[str],
    profile: Optional[DeviceProfile] = None,
    gpu_probe: Optional[GpuProbe] = None,
) -> str:
    """Return "sd" or "hd" unchanged; detect the tier for anything else (e.g. "auto")."""
    if requested in (TIER_SD, TIER_HD):
        return requested
    return detect_device_tier(profile, gpu_probe)


def has_any_proxy(summary) -> bool:
    """True if the content summary reports a mesh or scene proxy."""
    return bool(summary.has_mesh_proxy or summary.has_scene_proxy)


def lod_budget(tier: str, config: Optional[ArchiveConfig] = None) -> int:
    """Splat LOD budget for a resolved tier; unknown tiers get the HD budget."""
    config = config or DEFAULT_CONFIG
    if tier == TIER_SD:
        return config.lod_budget_sd
    return config.lod_budget_hd
