"""Tests for pipeline.py - phased archive loading."""

import pytest

from archive3d.coordinator import AssetLoadCoordinator, LoaderHooks, LoadState
from archive3d.errors import MalformedContainerError
from archive3d.pipeline import NO_VIEWABLE_ASSET, load_archive, primary_kind_for_mode
from archive3d.reader import ArchiveReader, ContentSummary
from archive3d.scene import MemorySceneSink

from conftest import MESH_BYTES, MESH_PROXY_BYTES, POINTCLOUD_BYTES, SCENE_BYTES


def open_reader(data):
    reader = ArchiveReader()
    reader.open(data)
    return reader


class RecordingHooks(LoaderHooks):
    def __init__(self):
        self.metadata = []
        self.annotation_lists = []
        self.notices = []
        super().__init__(
            on_metadata=self.metadata.append,
            on_annotations=self.annotation_lists.append,
            notify=lambda level, message: self.notices.append((level, message)),
        )


class TestPrimaryKindForMode:
    """Test display mode to asset kind mapping."""

    @pytest.mark.parametrize("mode,summary,expected", [
        ("model", ContentSummary(has_splat=True, has_mesh=True), "mesh"),
        ("splat", ContentSummary(has_splat=True, has_mesh=True), "splat"),
        ("both", ContentSummary(has_mesh=True), "mesh"),
        ("split", ContentSummary(has_splat=True), "splat"),
        ("pointcloud", ContentSummary(has_pointcloud=True, has_mesh=True), "pointcloud"),
        ("model", ContentSummary(has_pointcloud=True), "pointcloud"),
        ("pointcloud", ContentSummary(has_splat=True, has_mesh=True), "splat"),
        ("unknown", ContentSummary(has_mesh=True), "mesh"),
        ("model", ContentSummary(), "splat"),
    ])
    def test_mapping(self, mode, summary, expected):
        assert primary_kind_for_mode(mode, summary) == expected


class TestLoadArchive:
    """Test the three loading phases."""

    @pytest.mark.asyncio
    async def test_primary_then_background(self, make_container):
        """Model mode loads the mesh first; the splat follows in the background."""
        reader = open_reader(make_container(scene=SCENE_BYTES, mesh=MESH_BYTES))
        sink = MemorySceneSink()
        coordinator = AssetLoadCoordinator(reader, sink=sink, quality="hd")

        result = await load_archive(reader, display_mode="model", coordinator=coordinator)

        assert result.viewable
        assert result.primary_kind == "mesh"
        assert result.attempted == ["mesh"]
        assert sink.history[0] == ("mesh", "assets/mesh_0.glb")

        await result.wait()
        assert coordinator.state("splat") is LoadState.LOADED
        assert coordinator.state("pointcloud") is LoadState.UNLOADED
        assert reader.raw_buffer_released

    @pytest.mark.asyncio
    async def test_fallback_to_pointcloud(self, make_container):
        """A mesh-only display mode falls back to whatever the archive holds."""
        reader = open_reader(make_container(pointcloud=POINTCLOUD_BYTES))
        coordinator = AssetLoadCoordinator(reader, quality="hd")

        result = await load_archive(reader, display_mode="model", coordinator=coordinator)
        await result.wait()

        assert result.primary_kind == "pointcloud"
        assert result.attempted == ["mesh", "splat", "pointcloud"]
        assert coordinator.state("mesh") is LoadState.UNLOADED
        assert not reader.content_summary().has_mesh

    @pytest.mark.asyncio
    async def test_failed_primary_falls_back(self, make_container):
        """A splat listed but absent from the ZIP errors once and is not retried."""
        from archive3d.manifest import ROLE_SCENE

        reader = open_reader(make_container(mesh=MESH_BYTES, missing={"scene_0": ROLE_SCENE}))
        requested = []
        extract = reader.extract

        async def recording(name):
            requested.append(name)
            return await extract(name)

        reader.extract = recording
        coordinator = AssetLoadCoordinator(reader, quality="hd")

        result = await load_archive(reader, display_mode="splat", coordinator=coordinator)
        await result.wait()

        assert reader.content_summary().has_splat
        assert result.primary_kind == "mesh"
        assert result.attempted == ["splat", "mesh"]
        assert coordinator.state("splat") is LoadState.ERROR
        assert requested.count("assets/scene_0.spz") == 1

        assert not await coordinator.ensure_loaded("splat")
        assert requested.count("assets/scene_0.spz") == 1

    @pytest.mark.asyncio
    async def test_nothing_viewable(self, make_container):
        """No loadable kind: a warning, no phase 3, the archive stays open."""
        reader = open_reader(make_container(thumbnail=b"jpg"))
        hooks = RecordingHooks()

        result = await load_archive(reader, display_mode="both", hooks=hooks)

        assert not result.viewable
        assert result.primary_kind is None
        assert result.background is None
        assert hooks.notices == [("warning", NO_VIEWABLE_ASSET)]
        assert not reader.raw_buffer_released
        assert hooks.metadata[0].title == "Test Archive"

    @pytest.mark.asyncio
    async def test_metadata_images_and_annotations(self, make_container):
        annotations = [{"id": "a1", "title": "Inscription", "position": [0, 1, 0]}]
        reader = open_reader(make_container(
            mesh=MESH_BYTES,
            images={"images/detail.png": b"png bytes"},
            annotations=annotations,
        ))
        hooks = RecordingHooks()

        result = await load_archive(reader, display_mode="model", hooks=hooks, quality="hd")
        await result.wait()

        assert len(hooks.metadata) == 1
        assert hooks.annotation_lists == [annotations]
        assert result.images["images/detail.png"].read() == b"png bytes"

    @pytest.mark.asyncio
    async def test_source_files_keep_raw_buffer(self, make_container):
        reader = open_reader(make_container(mesh=MESH_BYTES, sources={"photo_001.jpg": b"raw"}))

        result = await load_archive(reader, display_mode="model", quality="hd")
        await result.wait()

        assert not reader.raw_buffer_released
        info = result.source_files[0]
        assert info.name == "photo_001.jpg"
        assert info.file_name == "sources/photo_001.jpg"
        assert info.size == 3
        assert info.category == "raw_photography"

    @pytest.mark.asyncio
    async def test_background_extraction_finishes_before_release(self, make_container):
        """The full mesh behind a displayed proxy is extracted before the raw bytes go."""
        reader = open_reader(make_container(mesh=MESH_BYTES, mesh_proxy=MESH_PROXY_BYTES))
        coordinator = AssetLoadCoordinator(reader, quality="sd")

        result = await load_archive(reader, display_mode="model", coordinator=coordinator)
        assert coordinator.viewing_proxy
        await result.wait()

        assert reader.raw_buffer_released
        full = await coordinator.full_resolution_payload("mesh", wait=False)
        assert full.read() == MESH_BYTES
        assert await coordinator.load_full_resolution("mesh")

    @pytest.mark.asyncio
    async def test_malformed_archive_raises(self):
        import io
        import zipfile

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("readme.txt", "no manifest")
        reader = open_reader(buffer.getvalue())

        with pytest.raises(MalformedContainerError):
            await load_archive(reader)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
