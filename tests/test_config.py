"""Tests for config.py - ArchiveConfig."""

import pytest
from pydantic import ValidationError

from archive3d.config import DEFAULT_CONFIG, ArchiveConfig


class TestArchiveConfig:
    """Test configuration defaults, validation and environment loading."""

    def test_defaults(self):
        assert DEFAULT_CONFIG.quality_tier == "auto"
        assert DEFAULT_CONFIG.lod_budget_sd == 500_000
        assert DEFAULT_CONFIG.lod_budget_hd == 3_000_000
        assert DEFAULT_CONFIG.compress_level == 6
        assert DEFAULT_CONFIG.hashing_enabled is True

    @pytest.mark.parametrize("field,value", [
        ("quality_tier", "ultra"),
        ("compress_level", 10),
        ("lod_budget_sd", 0),
        ("http_timeout", -1),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            ArchiveConfig(**{field: value})

    def test_frozen(self):
        with pytest.raises(ValidationError):
            DEFAULT_CONFIG.compress_level = 1

    def test_from_env(self):
        config = ArchiveConfig.from_env({
            "ARCHIVE3D_QUALITY_TIER": "sd",
            "ARCHIVE3D_COMPRESS_LEVEL": "9",
            "ARCHIVE3D_HASHING_ENABLED": "false",
            "ARCHIVE3D_HTTP_TIMEOUT": "",
            "UNRELATED": "x",
        })

        assert config.quality_tier == "sd"
        assert config.compress_level == 9
        assert config.hashing_enabled is False
        assert config.http_timeout == 60.0

    def test_from_env_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            ArchiveConfig.from_env({"ARCHIVE3D_QUALITY_TIER": "best"})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
