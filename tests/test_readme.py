"""Tests for readme.py - README.txt generation."""

import pytest

from archive3d.manifest import ROLE_MESH, ROLE_SCENE, ROLE_SOURCE, ROLE_THUMBNAIL, DataEntry, Manifest
from archive3d.readme import SEP, format_size, generate_readme


def sample_manifest():
    manifest = Manifest(creation_date="2025-03-01T12:00:00+00:00", last_modified="2025-03-02T12:00:00+00:00")
    manifest.project.update(
        title="Bronze Statue",
        description="Cast in 1890.\n\n![detail](asset:images/detail.png) Restored 2001.",
    )
    manifest.provenance["operator"] = "J. Doe"
    manifest.provenance["capture_date"] = "2025-02-14"
    manifest.data_entries["mesh_0"] = DataEntry(file_name="assets/mesh_0.glb", role=ROLE_MESH)
    manifest.data_entries["scene_0"] = DataEntry(file_name="assets/scene_0.spz", role=ROLE_SCENE)
    manifest.data_entries["thumbnail_0"] = DataEntry(file_name="preview.jpg", role=ROLE_THUMBNAIL)
    manifest.data_entries["source_0"] = DataEntry(
        file_name="sources/photos.zip", role=ROLE_SOURCE,
        size_bytes=3 * 1024 * 1024, source_category="raw_photography",
    )
    manifest.annotations = [{"id": "a1"}, {"id": "a2"}]
    return manifest


class TestFormatSize:
    def test_sizes(self):
        assert format_size(500) == ""
        assert format_size(2048) == "(2 KB)"
        assert format_size(int(1.5 * 1024 * 1024), parens=False) == "1.5 MB"


class TestGenerateReadme:
    """Test README sections."""

    def test_header_and_sections(self):
        text = generate_readme(sample_manifest())

        assert text.startswith(SEP + "\nARCHIVE-3D CONTAINER\n" + SEP)
        for heading in ("PROJECT", "CONTENTS", "SOURCE FILES", "TECHNOLOGY GUIDE",
                        "HOW TO USE THIS ARCHIVE", "ABOUT THIS FORMAT"):
            assert f"\n{heading}\n" in text

    def test_project_section(self):
        text = generate_readme(sample_manifest())

        assert "Title:       Bronze Statue" in text
        assert "Description: Cast in 1890. Restored 2001." in text
        assert "asset:" not in text
        assert "Operator:    J. Doe" in text
        assert "Captured:    2025-02-14" in text

    def test_contents_and_sources(self):
        text = generate_readme(sample_manifest(), sizes={"assets/mesh_0.glb": 4096})

        assert "assets/mesh_0.glb (4 KB)" in text
        assert "3D mesh (glTF Binary format) [mesh]" in text
        assert "Thumbnail preview [thumbnail]" in text
        assert "2 spatial annotation(s)" in text
        assert "sources/photos.zip  (3.0 MB)  [Raw Photography]" in text
        assert "Total: 3.0 MB" in text

    def test_technology_notes_follow_contents(self):
        text = generate_readme(sample_manifest())

        assert "glTF / GLB" in text
        assert "Gaussian Splatting" in text
        assert "E57 (ASTM E2807 standard)" not in text

    def test_about_section(self):
        text = generate_readme(sample_manifest())

        assert "Format:    archive-3d v1.0" in text
        assert "Created:   2025-03-01T12:00:00+00:00" in text
        assert "Modified:  2025-03-02T12:00:00+00:00" in text
        assert "Packer:    archive3d v0.1.0" in text

    def test_no_project_section_without_title(self):
        text = generate_readme(Manifest())
        assert "\nPROJECT\n" not in text
        assert "\nSOURCE FILES\n" not in text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
