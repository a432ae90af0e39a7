"""Runtime configuration for archive3d."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "ARCHIVE3D_"


class ArchiveConfig(BaseModel):
    """Tunables shared by the builder, reader and loading pipeline."""

    model_config = ConfigDict(frozen=True)

    quality_tier: str = Field(
        default="auto",
        pattern="^(auto|sd|hd)$",
        description="Requested quality tier: 'sd', 'hd' or 'auto' (device heuristic)",
    )

    lod_budget_sd: int = Field(default=500_000, gt=0, description="Splat budget for the SD tier")

    lod_budget_hd: int = Field(default=3_000_000, gt=0, description="Splat budget for the HD tier")

    compress_level: int = Field(default=6, ge=0, le=9, description="DEFLATE level for .a3z payloads")

    http_timeout: float = Field(default=60.0, gt=0, description="Timeout in seconds for remote fetches")

    hashing_enabled: bool = Field(
        default=True,
        description="Compute sha256 integrity hashes (disable where hashing is unavailable)",
    )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ArchiveConfig":
        """
        Build a config from ARCHIVE3D_* environment variables.

        e.g. ARCHIVE3D_QUALITY_TIER=hd, ARCHIVE3D_HASHING_ENABLED=false.
        Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)


DEFAULT_CONFIG = ArchiveConfig()
