"""
Tests for archive packing: member selection, staging and the archive tools.
"""

import shutil
import subprocess
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from ..config import PackerOptions
from ..plugins.base import AddonDefinition
from ..processing import packer as packer_module
from ..processing.packer import (
    ArchivePacker, ExternalArchiveTool, PackingError, ZipArchiveTool, create_archive_tool
)


class PackerTestCase(unittest.TestCase):
    """Shared fixture: a temporary project with a music addon."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.sources = self.temp_dir / "sources"
        self.sources.mkdir()

        self.track = self.sources / "Take_On_Me.ogg"
        self.track.write_bytes(b"OggS" + bytes(range(64)))
        self.cover = self.sources / "cover.png"
        self.cover.write_bytes(b"\x89PNG")

        self.addon = AddonDefinition(name="Music")
        self.addon.add_file("config.cpp", "class CfgPatches {};\n")
        self.addon.add_file("script_component.hpp", "#define COMPONENT music\n")
        self.addon.add_copy(self.track, "data/Music/Take_On_Me.ogg")
        self.addon.add_copy(self.cover, "data/cover.png")

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def make_packer(self, **options) -> ArchivePacker:
        options.setdefault("tool", "zip")
        return ArchivePacker(
            PackerOptions(**options),
            staging_root=self.temp_dir / "build" / "addons",
            output_dir=self.temp_dir / "build" / "archives",
        )


class TestMemberSelection(PackerTestCase):
    """Test member resolution and ordering."""

    def test_members_sorted_and_filtered(self):
        packer = self.make_packer(exclude=["*.png"])

        members = packer.resolve_members(self.addon)

        self.assertEqual(
            [m.path for m in members],
            ["config.cpp", "data/Music/Take_On_Me.ogg", "script_component.hpp"]
        )

    def test_exclusion_matches_nested_paths(self):
        packer = self.make_packer(exclude=["data/Music/*"])

        paths = [m.path for m in packer.resolve_members(self.addon)]

        self.assertNotIn("data/Music/Take_On_Me.ogg", paths)
        self.assertIn("data/cover.png", paths)

    def test_header_members_flagged(self):
        packer = self.make_packer()

        headers = [m.path for m in packer.resolve_members(self.addon) if m.is_header]

        self.assertEqual(headers, ["script_component.hpp"])

    def test_include_folder_merged(self):
        include = self.temp_dir / "include"
        (include / "ui").mkdir(parents=True)
        (include / "ui" / "logo.paa").write_bytes(b"paa")

        packer = self.make_packer(include=[str(include)])
        paths = [m.path for m in packer.resolve_members(self.addon)]

        self.assertIn("ui/logo.paa", paths)
        self.assertEqual(paths, sorted(paths))

    def test_include_collision(self):
        include = self.temp_dir / "include"
        include.mkdir()
        (include / "config.cpp").write_text("other")

        packer = self.make_packer(include=[str(include)])

        with self.assertRaises(PackingError) as ctx:
            packer.resolve_members(self.addon)

        self.assertEqual(ctx.exception.addon, "Music")

    def test_missing_source(self):
        self.track.unlink()
        packer = self.make_packer()

        with self.assertRaises(PackingError) as ctx:
            packer.pack(self.addon, "17th")

        self.assertEqual(ctx.exception.addon, "Music")
        self.assertEqual(ctx.exception.path, self.track)

    def test_missing_source_excluded_is_ignored(self):
        self.cover.unlink()
        packer = self.make_packer(exclude=["*.png"])

        archive = packer.pack(self.addon, "17th")

        self.assertNotIn("data/cover.png", archive.members)


class TestZipArchive(PackerTestCase):
    """Test the deterministic zip archive tool."""

    def test_pack_writes_archive(self):
        packer = self.make_packer(exclude=["*.png"])

        archive = packer.pack(self.addon, "17th")

        self.assertEqual(archive.path, self.temp_dir / "build" / "archives" / "17th_Music.zip")
        self.assertEqual(archive.addon, "Music")

        with zipfile.ZipFile(archive.path) as zf:
            self.assertEqual(zf.namelist(), archive.members)
            self.assertEqual(zf.read("data/Music/Take_On_Me.ogg"), self.track.read_bytes())
            self.assertEqual(zf.comment, b"prefix=17th\\Music")
            self.assertEqual(zf.getinfo("script_component.hpp").compress_type, zipfile.ZIP_STORED)
            self.assertEqual(zf.getinfo("config.cpp").compress_type, zipfile.ZIP_DEFLATED)
            self.assertEqual(zf.getinfo("config.cpp").date_time, (1980, 1, 1, 0, 0, 0))

    def test_members_staged(self):
        packer = self.make_packer(exclude=["*.png"])
        stale = self.temp_dir / "build" / "addons" / "17th_Music" / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("left over")

        packer.pack(self.addon, "17th")

        staging = self.temp_dir / "build" / "addons" / "17th_Music"
        self.assertFalse(stale.exists())
        self.assertEqual((staging / "config.cpp").read_text(), "class CfgPatches {};\n")
        self.assertTrue((staging / "data" / "Music" / "Take_On_Me.ogg").is_file())
        self.assertFalse((staging / "data" / "cover.png").exists())

    def test_archives_are_byte_identical(self):
        packer = self.make_packer()

        first = packer.pack(self.addon, "17th").path.read_bytes()
        self.track.touch()
        second = packer.pack(self.addon, "17th").path.read_bytes()

        self.assertEqual(first, second)


class TestExternalArchiveTool(PackerTestCase):
    """Test delegation to the external packer."""

    def test_command_line(self):
        tool = ExternalArchiveTool("/opt/armake2")

        command = tool.build_command(Path("/stage/17th_Music"), Path("/out/17th_Music.pbo"),
                                     {"prefix": "17th\\Music"})

        self.assertEqual(command, [
            "/opt/armake2", "pack", "-f", "-e", "prefix=17th\\Music",
            str(Path("/stage/17th_Music")), str(Path("/out/17th_Music.pbo"))
        ])

    def test_pack_invokes_tool(self):
        packer = self.make_packer(tool="armake2", executable="armake2")

        def fake_run(command, **kwargs):
            Path(command[-1]).write_bytes(b"PBO")
            return subprocess.CompletedProcess(command, 0, "", "")

        with patch.object(packer_module.subprocess, "run", side_effect=fake_run) as mock_run:
            archive = packer.pack(self.addon, "17th")

        self.assertEqual(archive.path.name, "17th_Music.pbo")
        command = mock_run.call_args[0][0]
        self.assertEqual(command[:5], ["armake2", "pack", "-f", "-e", "prefix=17th\\Music"])
        self.assertTrue(mock_run.call_args[1]["check"])

    def test_tool_failure_carries_stderr(self):
        packer = self.make_packer(tool="armake2")
        error = subprocess.CalledProcessError(1, ["armake2"], output="", stderr="bad config.cpp")

        with patch.object(packer_module.subprocess, "run", side_effect=error):
            with self.assertRaises(PackingError) as ctx:
                packer.pack(self.addon, "17th")

        self.assertIn("bad config.cpp", str(ctx.exception))

    def test_missing_executable(self):
        packer = self.make_packer(tool="armake2", executable="/nonexistent/armake2")

        with patch.object(packer_module.subprocess, "run", side_effect=FileNotFoundError()):
            with self.assertRaises(PackingError) as ctx:
                packer.pack(self.addon, "17th")

        self.assertIn("/nonexistent/armake2", str(ctx.exception))


class TestCreateArchiveTool(unittest.TestCase):
    """Test tool selection."""

    def test_selection(self):
        self.assertIsInstance(create_archive_tool(PackerOptions(tool="zip")), ZipArchiveTool)
        self.assertIsInstance(create_archive_tool(PackerOptions(tool="armake2")), ExternalArchiveTool)

    def test_unknown_tool(self):
        with self.assertRaises(ValueError):
            create_archive_tool(PackerOptions(tool="rar"))


if __name__ == '__main__':
    unittest.main()
