"""Tests for builder.py - ArchiveBuilder entries, metadata, hashing and packing."""

import json
import os
import tempfile
import zipfile
from io import BytesIO

import pytest

import archive3d.builder as builder_module
from archive3d.builder import ArchiveBuilder, CapturedAsset, ViewerState, translate_fields, PROJECT_FIELDS
from archive3d.config import ArchiveConfig
from archive3d.errors import ArchiveValidationError
from archive3d.manifest import Transform
from archive3d.package import compute_manifest_hash, compute_sha256, verify_archive_integrity
from archive3d.payload import PayloadHandle


def titled_builder(**kwargs):
    builder = ArchiveBuilder(**kwargs)
    builder.set_project_info(title="Test Scan")
    return builder


def read_manifest(data):
    with zipfile.ZipFile(BytesIO(data)) as zf:
        return json.loads(zf.read("manifest.json"))


class TestEntries:
    """Test adding entries."""

    def test_primary_keys_and_paths(self):
        """Entries are keyed {role}_{n} and stored under assets/."""
        builder = ArchiveBuilder()

        assert builder.add_scene(b"s", "scan.spz") == "scene_0"
        assert builder.add_mesh(b"m", "model.glb") == "mesh_0"
        assert builder.add_mesh(b"m2", "model2.obj") == "mesh_1"
        assert builder.add_pointcloud(b"p", "cloud.e57") == "pointcloud_0"

        entries = builder.manifest.data_entries
        assert entries["mesh_1"].file_name == "assets/mesh_1.obj"
        assert entries["scene_0"].role == "scene"
        assert builder.file_count == 4

    def test_transform_options(self):
        """Test position/rotation/scale options."""
        builder = ArchiveBuilder()
        builder.add_mesh(b"m", "a.glb", position=[1, 2, 3], scale=2, created_by="RealityCapture")

        entry = builder.manifest.data_entries["mesh_0"]
        assert entry.parameters.position == [1, 2, 3]
        assert entry.parameters.rotation == [0, 0, 0]
        assert entry.parameters.scale == 2
        assert entry.created_by == "RealityCapture"

    def test_proxies(self):
        """Proxies are derived entries keyed after their primary."""
        builder = ArchiveBuilder()
        builder.add_mesh(b"m", "a.glb")
        key = builder.add_mesh_proxy(b"low", "a_low.glb", face_count=1000)

        proxy = builder.manifest.data_entries[key]
        assert key == "mesh_0_proxy"
        assert proxy.file_name == "assets/mesh_0_proxy.glb"
        assert proxy.role == "derived"
        assert proxy.lod == "proxy"
        assert proxy.derived_from == "mesh_0"
        assert proxy.face_count == 1000
        assert builder.add_scene_proxy(b"s", "s.spz") == "scene_0_proxy"

    def test_source_file_names(self):
        """Source names are sanitized and de-duplicated; the original name is kept."""
        builder = ArchiveBuilder()
        builder.add_source_file(b"1", "my photo.jpg", category="raw_photography")
        builder.add_source_file(b"2", "my photo.jpg")

        entries = builder.manifest.data_entries
        assert entries["source_0"].file_name == "sources/my_photo.jpg"
        assert entries["source_1"].file_name == "sources/my_photo_1.jpg"
        assert entries["source_1"].original_name == "my photo.jpg"
        assert entries["source_0"].source_category == "raw_photography"
        assert entries["source_0"].size_bytes == 1

    def test_thumbnail_replaced(self):
        """Only one thumbnail is kept."""
        builder = ArchiveBuilder()
        builder.add_thumbnail(b"png", "first.png")
        builder.add_thumbnail(b"jpg", "second.jpg")

        thumbnails = builder.manifest.entries_with_role("thumbnail")
        assert len(thumbnails) == 1
        assert thumbnails[0][1].file_name == "preview.jpg"
        assert [f["path"] for f in builder.file_list()] == ["preview.jpg"]

    def test_screenshot_and_image(self):
        builder = ArchiveBuilder()
        builder.add_screenshot(b"jpg", "shot.jpg")
        builder.add_image(b"png", "images/figure.png")

        paths = {f["path"] for f in builder.file_list()}
        assert paths == {"screenshots/screenshot_0.jpg", "images/figure.png"}

    @pytest.mark.parametrize("path", ["manifest.json", "README.txt"])
    def test_reserved_image_path(self, path):
        """Paths written by the container itself cannot be claimed."""
        builder = ArchiveBuilder()
        with pytest.raises(ValueError, match="Reserved archive path"):
            builder.add_image(b"png", path)
        assert builder.file_count == 0
        assert builder.manifest.data_entries == {}

    def test_frames_encoded(self):
        """Rendered frames become a square JPEG preview and a screenshot."""
        np = pytest.importorskip("numpy")
        pytest.importorskip("cv2")
        from archive3d.screenshot import decode_image, image_size

        frame = np.zeros((240, 320, 3), dtype=np.uint8)
        frame[:, :, 1] = 200
        builder = ArchiveBuilder()

        assert builder.add_thumbnail_frame(frame, size=64) == "thumbnail_0"
        assert builder.add_screenshot_frame(frame, size=128, format="png") == "screenshot_0"

        staged = {path: staged.payload for path, staged in builder._files.items()}
        assert set(staged) == {"preview.jpg", "screenshots/screenshot_0.png"}
        assert image_size(staged["preview.jpg"]) == (64, 64)
        assert image_size(staged["screenshots/screenshot_0.png"]) == (128, 128)
        assert decode_image(staged["screenshots/screenshot_0.png"])[0, 0].tolist() == [0, 200, 0]

    def test_update_entry_metadata(self):
        """Asset kinds map to roles (splat -> scene)."""
        builder = ArchiveBuilder()
        builder.add_scene(b"s", "s.spz")

        assert builder.update_entry_metadata("splat", 0, createdBy="Postshot", version="0.4")
        assert not builder.update_entry_metadata("mesh", 0, createdBy="x")

        entry = builder.manifest.data_entries["scene_0"]
        assert entry.created_by == "Postshot"
        assert entry.created_by_version == "0.4"


class TestMetadata:
    """Test metadata setters."""

    def test_project_info(self):
        builder = ArchiveBuilder()
        builder.set_project_info({"title": "Statue", "tags": ["bronze"]})
        builder.set_project_info(description="A statue")

        assert builder.manifest.project["title"] == "Statue"
        assert builder.manifest.project["tags"] == ["bronze"]
        assert builder.manifest.project["description"] == "A statue"
        assert builder.manifest.project["license"] == "CC0"

    def test_unknown_field_rejected(self):
        builder = ArchiveBuilder()
        with pytest.raises(ValueError, match="Unknown project field: colour"):
            builder.set_project_info(colour="red")

    def test_translate_fields_accepts_both_spellings(self):
        assert translate_fields(PROJECT_FIELDS, {"title": "x"}, "project") == {"title": "x"}

    def test_provenance_conventions(self):
        """Conventions may be given as a comma-separated string."""
        builder = ArchiveBuilder()
        builder.set_provenance(captureDate="2024-05-01", conventions="y-up, meters")

        assert builder.manifest.provenance["capture_date"] == "2024-05-01"
        assert builder.manifest.provenance["convention_hints"] == ["y-up", "meters"]

    def test_list_fields_reject_scalars(self):
        builder = ArchiveBuilder()
        builder.set_provenance(processingSoftware=["Metashape"])
        assert builder.manifest.provenance["processing_software"] == ["Metashape"]

        builder.set_provenance(processingSoftware="Metashape")
        assert builder.manifest.provenance["processing_software"] == []

    def test_nested_sections(self):
        """Nested caller fields land in nested manifest dicts."""
        builder = ArchiveBuilder()
        builder.set_quality_metrics(alignmentError={"value": 1.5})
        builder.set_archival_record(
            ids={"accessionNumber": "1999.1"},
            physicalDescription={"dimensions": {"height": "2m"}},
        )

        assert builder.manifest.quality_metrics["alignment_error"] == {"value": 1.5, "unit": "mm", "method": "RMSE"}
        assert builder.manifest.archival_record["ids"]["accession_number"] == "1999.1"
        assert builder.manifest.archival_record["physical_description"]["dimensions"]["height"] == "2m"
        assert builder.manifest.archival_record["physical_description"]["dimensions"]["width"] == ""

    def test_viewer_and_material(self):
        builder = ArchiveBuilder()
        builder.set_viewer_settings(singleSided=False, displayMode="model")
        builder.set_material_standard(workflow="metalness")
        builder.set_relationships(partOf="collection-1")
        builder.set_preservation(renderingNotes="Needs WebGL2")

        assert builder.manifest.viewer_settings["single_sided"] is False
        assert builder.manifest.viewer_settings["display_mode"] == "model"
        assert builder.manifest.material_standard["workflow"] == "metalness"
        assert builder.manifest.relationships["part_of"] == "collection-1"
        assert builder.manifest.preservation["rendering_notes"] == "Needs WebGL2"

    def test_custom_fields_and_stats(self):
        builder = ArchiveBuilder()
        builder.set_custom_fields({"a": 1})
        builder.add_custom_field("b", 2)
        builder.set_quality_stats({"mesh_polygons": 100, "bogus": 1})

        assert builder.manifest.custom_fields == {"a": 1, "b": 2}
        assert builder.get_quality_stats() == {"mesh_polygons": 100}

    def test_metadata_profile(self):
        builder = ArchiveBuilder()
        builder.set_metadata_profile("archival")
        builder.set_metadata_profile("bogus")
        assert builder.manifest.metadata_profile == "archival"

    def test_annotations_shared(self):
        """The builder's annotation list is the manifest's list."""
        builder = ArchiveBuilder()
        builder.add_annotation({"id": "a1"})
        builder.set_annotations([{"id": "a2"}])
        builder.add_annotation({"id": "a3"})

        assert builder.manifest.annotations is builder.annotations
        assert [a["id"] for a in builder.manifest.annotations] == ["a2", "a3"]

    def test_version_history(self):
        builder = ArchiveBuilder()
        builder.add_version_history_entry("1.0", "Initial", "2024-01-01")
        builder.add_version_history_entry("1.1", "Fix")

        history = builder.manifest.version_history
        assert history[0] == {"version": "1.0", "date": "2024-01-01", "description": "Initial"}
        assert len(history[1]["date"]) == 10

    def test_apply_metadata(self):
        builder = ArchiveBuilder()
        builder.add_mesh(b"m", "a.glb")
        builder.apply_metadata({
            "project": {"title": "Form"},
            "qualityMetrics": {"tier": "3"},
            "meshMetadata": {"createdBy": "Blender"},
            "customFields": {"k": "v"},
        })

        assert builder.manifest.title == "Form"
        assert builder.manifest.quality_metrics["tier"] == "3"
        assert builder.manifest.data_entries["mesh_0"].created_by == "Blender"
        assert builder.manifest.custom_fields == {"k": "v"}

    def test_capture_from_viewer(self):
        builder = ArchiveBuilder()
        builder.capture_from_viewer(ViewerState(
            mesh=CapturedAsset(b"m", "model.glb", transform=Transform(position=[0, 1, 0])),
            annotations=[{"id": "a1"}],
            quality_stats={"mesh_vertices": 8},
        ))

        assert builder.manifest.data_entries["mesh_0"].parameters.position == [0, 1, 0]
        assert builder.annotations == [{"id": "a1"}]
        assert builder.get_quality_stats() == {"mesh_vertices": 8}

    def test_preserve_creation_date(self):
        builder = ArchiveBuilder()
        builder.preserve_creation_date("2020-01-01T00:00:00+00:00")
        manifest = builder.preview_manifest()

        assert manifest["_creation_date"] == "2020-01-01T00:00:00+00:00"
        assert manifest["_last_modified"] != manifest["_creation_date"]

    def test_metadata_summary(self):
        builder = titled_builder()
        builder.add_mesh(b"m", "a.glb")
        summary = builder.metadata_summary()

        assert summary["project"]["title"] == "Test Scan"
        assert summary["file_count"] == 1
        assert summary["has_integrity"] is False


class TestHashing:
    """Test integrity hashing and the hash cache."""

    @pytest.mark.asyncio
    async def test_precompute_reused_by_pack(self, monkeypatch):
        """A precomputed digest is not computed again when packing."""
        calls = []
        original = builder_module.compute_digest

        async def counting(data):
            calls.append(len(data))
            return await original(data)

        monkeypatch.setattr(builder_module, "compute_digest", counting)

        handle = PayloadHandle.from_bytes(b"mesh bytes", name="a.glb")
        builder = titled_builder()
        builder.add_mesh(handle, "a.glb")

        digest = await builder.precompute_hash(handle)
        assert builder.get_cached_hash(handle) == digest
        await builder.pack()

        assert calls == [len(b"mesh bytes")]
        assert builder.get_integrity()["assets"]["assets/mesh_0.glb"] == compute_sha256(b"mesh bytes")

    @pytest.mark.asyncio
    async def test_integrity_block(self):
        builder = titled_builder()
        builder.add_mesh(b"m", "a.glb")
        builder.add_thumbnail(b"t", "t.png")

        hashes = await builder.calculate_hashes()
        integrity = builder.get_integrity()

        assert integrity["algorithm"] == "sha256"
        assert integrity["assets"] == hashes
        assert integrity["manifest_hash"] == compute_manifest_hash(hashes)

    @pytest.mark.asyncio
    async def test_hashing_disabled(self):
        """Without hashing the archive is still packed, just without integrity."""
        builder = titled_builder(config=ArchiveConfig(hashing_enabled=False))
        builder.add_mesh(b"m", "a.glb")

        assert await builder.precompute_hash(b"x") is None
        assert await builder.calculate_hashes() is None

        data = await builder.pack()
        assert "integrity" not in read_manifest(data)

    @pytest.mark.asyncio
    async def test_cache_survives_reset(self):
        handle = PayloadHandle.from_bytes(b"data")
        builder = ArchiveBuilder()
        digest = await builder.precompute_hash(handle)
        builder.reset()

        assert builder.get_cached_hash(handle) == digest
        assert builder.file_count == 0
        assert builder.get_cached_hash(b"data") is None

    @pytest.mark.asyncio
    async def test_precompute_raw_bytes_reused_by_pack(self, monkeypatch):
        """Hashing a bytes object, then adding that same object, hashes it once."""
        calls = []
        original = builder_module.compute_digest

        async def counting(data):
            calls.append(len(data))
            return await original(data)

        monkeypatch.setattr(builder_module, "compute_digest", counting)

        data = bytes(bytearray(b"splat bytes"))
        builder = titled_builder()
        digest = await builder.precompute_hash(data)
        assert await builder.precompute_hash(data) == digest
        assert builder.get_cached_hash(data) == digest

        builder.add_scene(data, "scan.spz")
        await builder.pack()

        assert calls == [len(data)]
        assert builder.get_integrity()["assets"]["assets/scene_0.spz"] == digest

    @pytest.mark.asyncio
    async def test_unhashed_pack_drops_earlier_integrity(self):
        """A pack without hashes never carries a block from an earlier pack."""
        builder = titled_builder()
        builder.add_mesh(b"m", "a.glb")
        first = read_manifest(await builder.pack(include_hashes=True))
        assert "integrity" in first

        builder.add_pointcloud(b"p", "cloud.e57")
        second = read_manifest(await builder.pack(include_hashes=False))

        assert "integrity" not in second
        assert builder.get_integrity() is None
        assert builder.metadata_summary()["has_integrity"] is False

    @pytest.mark.asyncio
    async def test_hashing_turned_off_drops_earlier_integrity(self):
        builder = titled_builder()
        builder.add_mesh(b"m", "a.glb")
        await builder.calculate_hashes()
        assert builder.get_integrity() is not None

        builder.hashing_enabled = False
        data = await builder.pack()

        assert "integrity" not in read_manifest(data)


class TestPack:
    """Test packing."""

    @pytest.mark.asyncio
    async def test_validation_errors_listed(self):
        builder = ArchiveBuilder()
        with pytest.raises(ArchiveValidationError) as exc_info:
            await builder.pack()

        assert len(exc_info.value.errors) == 2
        assert "Project title is required" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_unknown_compression(self):
        builder = titled_builder()
        builder.add_mesh(b"m", "a.glb")
        with pytest.raises(ValueError, match="Unknown compression"):
            await builder.pack(compression="lzma")

    @pytest.mark.asyncio
    async def test_pack_layout_and_progress(self):
        """manifest.json first, README.txt second, progress ends at 100."""
        builder = titled_builder()
        builder.add_mesh(b"m" * 100, "a.glb")
        builder.add_source_file(b"notes", "notes.txt")
        stages = []

        data = await builder.pack(format="a3z", on_progress=lambda pct, stage: stages.append((pct, stage)))

        with zipfile.ZipFile(BytesIO(data)) as zf:
            names = zf.namelist()
            assert names[:2] == ["manifest.json", "README.txt"]
            assert zf.getinfo("assets/mesh_0.glb").compress_type == zipfile.ZIP_STORED
            assert zf.getinfo("sources/notes.txt").compress_type == zipfile.ZIP_DEFLATED
            assert "ARCHIVE-3D CONTAINER" in zf.read("README.txt").decode("utf-8")

        assert stages[0] == (0, "Calculating hashes...")
        assert (20, "Hashes complete") in stages
        assert any(stage == "Compressing: assets/mesh_0.glb" for _, stage in stages)
        assert stages[-1] == (100, "Complete")
        percents = [pct for pct, _ in stages]
        assert percents == sorted(percents)

        valid, errors = verify_archive_integrity(data)
        assert valid, errors

    @pytest.mark.asyncio
    async def test_write_format_from_extension(self):
        builder = titled_builder()
        builder.add_pointcloud(b"p" * 100, "cloud.ply")

        with tempfile.TemporaryDirectory() as tmpdir:
            path = await builder.write(os.path.join(tmpdir, "out", "scan.a3z"), include_hashes=False)

            assert path.exists()
            with zipfile.ZipFile(path) as zf:
                assert zf.getinfo("assets/pointcloud_0.ply").compress_type == zipfile.ZIP_DEFLATED

    @pytest.mark.asyncio
    async def test_manifest_dates(self):
        builder = titled_builder()
        builder.add_mesh(b"m", "a.glb")
        manifest = read_manifest(await builder.pack(include_hashes=False))

        assert manifest["_creation_date"]
        assert manifest["_last_modified"]
        assert manifest["packer"] == "archive3d"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
