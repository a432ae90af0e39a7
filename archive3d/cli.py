#!/usr/bin/env python3
"""
archive3d CLI - Command-line interface for archive-3d containers.

Usage:
    archive3d pack --mesh statue.glb --title "Statue" --output statue.a3z
    archive3d info statue.a3z
    archive3d extract statue.a3z --output ./extracted/
    archive3d verify statue.a3z
    archive3d validate statue.a3z
    archive3d load statue.a3z --mode model --quality sd
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path


def cmd_info(args):
    """Show information about a container."""
    from archive3d.package import get_archive_info
    from archive3d.readme import format_size

    try:
        info = get_archive_info(args.archive)

        manifest = info["manifest"]
        print(f"Format: archive-3d v{manifest['container_version']}")
        print(f"Packer: {manifest.get('packer', 'unknown')} {manifest.get('packer_version', '')}".rstrip())
        if manifest.get("_creation_date"):
            print(f"Created: {manifest['_creation_date']}")

        project = manifest.get("project") or {}
        print(f"Title: {project.get('title') or 'Untitled'}")
        tags = project.get("tags") or []
        if tags:
            print(f"Tags: {', '.join(tags)}")

        entries = manifest["data_entries"]
        print(f"\nEntries: {len(entries)}")
        for key, entry in entries.items():
            print(f"  - {key} [{entry.get('role', '?')}] {entry['file_name']}")

        print(f"\nFiles: {len(info['files'])}")
        for f in info["files"]:
            mode = "stored" if f["stored"] else "deflated"
            size = format_size(f["uncompressed_size"], parens=False) or f"{f['uncompressed_size']} B"
            print(f"  {f['path']}: {size} ({mode})")

        print(f"\nTotal: {format_size(info['total_uncompressed_size'], parens=False)} "
              f"(archive: {format_size(info['archive_size'], parens=False)})")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


async def _extract_all(archive_path: Path, output_dir: Path) -> int:
    from archive3d.reader import ArchiveReader

    count = 0
    with ArchiveReader() as reader:
        reader.open_file(archive_path)
        reader.parse()
        for item in reader.file_index():
            if item.name.endswith("/"):
                continue
            extracted = await reader.extract(item.name)
            target = output_dir / extracted.name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(extracted.payload)
            count += 1
    return count


def cmd_extract(args):
    """Extract every entry of a container; unsafe names are refused."""
    try:
        output_dir = Path(args.output or f"{Path(args.archive).stem}_extracted")
        count = asyncio.run(_extract_all(Path(args.archive), output_dir))
        print(f"Extracted {count} files to: {output_dir}")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_verify(args):
    """Verify integrity hashes in a container."""
    from archive3d.package import verify_archive_integrity

    try:
        valid, errors = verify_archive_integrity(args.archive)

        if valid:
            if errors:
                print(f"✓ {errors[0]}")
            else:
                print("✓ All checksums valid")
            return 0
        else:
            print("✗ Verification failed:")
            for error in errors:
                print(f"  - {error}")
            return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_validate(args):
    """Validate container structure, manifest and hashes."""
    from archive3d.package import validate_archive

    valid, errors = validate_archive(args.archive)
    if valid:
        print("✓ Archive is valid")
        return 0
    print("✗ Validation failed:")
    for error in errors:
        print(f"  - {error}")
    return 1


def _face_count(handle):
    from archive3d.scene import count_faces

    try:
        return count_faces(handle)
    except Exception as e:
        logging.getLogger(__name__).debug("Could not count faces of %s: %s", handle.name, e)
        return None


async def _pack(args) -> Path:
    from archive3d.builder import ArchiveBuilder
    from archive3d.payload import PayloadHandle

    builder = ArchiveBuilder()
    for path in args.scene or []:
        builder.add_scene(PayloadHandle.from_path(path), Path(path).name)
    for path in args.mesh or []:
        builder.add_mesh(PayloadHandle.from_path(path), Path(path).name)
    for path in args.pointcloud or []:
        builder.add_pointcloud(PayloadHandle.from_path(path), Path(path).name)
    if args.scene_proxy:
        builder.add_scene_proxy(PayloadHandle.from_path(args.scene_proxy), Path(args.scene_proxy).name)
    if args.mesh_proxy:
        handle = PayloadHandle.from_path(args.mesh_proxy)
        builder.add_mesh_proxy(handle, handle.name, face_count=_face_count(handle))
    for path in args.source or []:
        builder.add_source_file(PayloadHandle.from_path(path), Path(path).name, category=args.source_category)
    if args.thumbnail:
        builder.add_thumbnail(PayloadHandle.from_path(args.thumbnail), Path(args.thumbnail).name)
    if args.thumbnail_frame:
        from archive3d.screenshot import decode_image

        builder.add_thumbnail_frame(decode_image(PayloadHandle.from_path(args.thumbnail_frame)))

    builder.set_project_info(title=args.title or "", description=args.description or "")
    if args.tags:
        builder.set_project_info(tags=[t.strip() for t in args.tags.split(",") if t.strip()])

    options = {"include_hashes": not args.no_hashes}
    if args.format:
        options["format"] = args.format
    return await builder.write(args.output, **options)


def cmd_pack(args):
    """Pack asset files into a container."""
    try:
        result = asyncio.run(_pack(args))
        print(f"Success: {result}")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


async def _load(args):
    from archive3d.coordinator import AssetLoadCoordinator
    from archive3d.pipeline import load_archive
    from archive3d.reader import ArchiveReader

    reader = ArchiveReader()
    reader.open_file(args.archive)
    coordinator = AssetLoadCoordinator(reader, quality=args.quality)
    result = await load_archive(reader, display_mode=args.mode, coordinator=coordinator)
    await result.wait()
    return result, coordinator, reader


def cmd_load(args):
    """Run the phased loader headlessly and report what was loaded."""
    try:
        result, coordinator, reader = asyncio.run(_load(args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Quality tier: {coordinator.quality_tier}")
    if not result.viewable:
        print("No viewable asset found")
        return 1
    print(f"Primary: {result.primary_kind} (tried: {', '.join(result.attempted)})")
    for kind, state in coordinator.states.items():
        variant = coordinator.displayed_variant(kind)
        print(f"  {kind}: {state.value}" + (f" ({variant})" if variant else ""))
    if result.images:
        print(f"Images: {len(result.images)}")
    if result.source_files:
        print(f"Source files: {len(result.source_files)}")
    print(f"Raw data released: {'yes' if reader.raw_buffer_released else 'no'}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="archive3d CLI - Build and inspect .a3d / .a3z containers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  archive3d pack --mesh statue.glb --title "Statue" --output statue.a3z
  archive3d info statue.a3z
  archive3d extract statue.a3z --output ./extracted/
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # pack
    pack_parser = subparsers.add_parser("pack", help="Pack asset files into a container")
    pack_parser.add_argument("--output", "-o", required=True, help="Output .a3d / .a3z file")
    pack_parser.add_argument("--scene", action="append", help="Splat scene file (repeatable)")
    pack_parser.add_argument("--mesh", action="append", help="Mesh file (repeatable)")
    pack_parser.add_argument("--pointcloud", action="append", help="Point cloud file (repeatable)")
    pack_parser.add_argument("--scene-proxy", help="Low-detail splat proxy for scene_0")
    pack_parser.add_argument("--mesh-proxy", help="Decimated mesh proxy for mesh_0")
    pack_parser.add_argument("--source", action="append", help="Source file to preserve (repeatable)")
    pack_parser.add_argument("--source-category", default="", help="Category for source files")
    pack_parser.add_argument("--thumbnail", help="Preview image")
    pack_parser.add_argument("--thumbnail-frame", help="Render or photo to crop and resize into a 512px preview")
    pack_parser.add_argument("--title", help="Project title")
    pack_parser.add_argument("--description", help="Project description")
    pack_parser.add_argument("--tags", help="Comma-separated tags")
    pack_parser.add_argument("--format", choices=["a3d", "a3z"], help="Container format (default: from extension)")
    pack_parser.add_argument("--no-hashes", action="store_true", help="Skip the integrity block")
    pack_parser.set_defaults(func=cmd_pack)

    # info
    info_parser = subparsers.add_parser("info", help="Show information about a container")
    info_parser.add_argument("archive", help="Path to .a3d / .a3z file")
    info_parser.set_defaults(func=cmd_info)

    # extract
    extract_parser = subparsers.add_parser("extract", help="Extract contents of a container")
    extract_parser.add_argument("archive", help="Path to .a3d / .a3z file")
    extract_parser.add_argument("--output", "-o", help="Output directory")
    extract_parser.set_defaults(func=cmd_extract)

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify integrity hashes")
    verify_parser.add_argument("archive", help="Path to .a3d / .a3z file")
    verify_parser.set_defaults(func=cmd_verify)

    # validate
    validate_parser = subparsers.add_parser("validate", help="Validate container structure and manifest")
    validate_parser.add_argument("archive", help="Path to .a3d / .a3z file")
    validate_parser.set_defaults(func=cmd_validate)

    # load
    load_parser = subparsers.add_parser("load", help="Run the phased asset loader headlessly")
    load_parser.add_argument("archive", help="Path to .a3d / .a3z file")
    load_parser.add_argument("--mode", default="both",
                             choices=["splat", "model", "both", "split", "pointcloud"],
                             help="Display mode (default: both)")
    load_parser.add_argument("--quality", choices=["auto", "sd", "hd"], help="Quality tier")
    load_parser.set_defaults(func=cmd_load)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
