"""
Integration tests for the addon pipeline.
Tests plugin ordering, failure handling, collision checks and the full build.
"""

import shutil
import tempfile
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ..config import ConfigurationError, PackerOptions, ProjectConfig, SigningOptions
from ..pipeline import AddonPipeline, PipelineError, PipelineStatus
from ..plugins import music as music_module
from ..plugins.base import (
    AddonCollisionError, AddonDefinition, Plugin, PluginError, PluginRegistry
)
from ..processing.packer import PackingError
from ..processing.signing import Signer, load_public_key


class RecordingPlugin(Plugin):
    """Plugin that records its call order and emits one file."""

    name = "recording"
    calls = []

    @classmethod
    def parse_settings(cls, raw):
        return dict(raw)

    def build(self, context):
        self.calls.append(self.name)
        if context.settings.get("fail"):
            raise PluginError("asset folder unreadable", self.name, "/broken")
        addon = AddonDefinition(name=context.settings.get("addon_name", self.name.capitalize()))
        addon.add_file("config.cpp", f"class {self.name} {{}};\n")
        return addon


def make_plugin_class(plugin_name):
    return type(f"{plugin_name.capitalize()}Plugin", (RecordingPlugin,), {"name": plugin_name})


class TestPluginExecution:
    """Test plugin resolution, ordering and failure handling."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        RecordingPlugin.calls = []
        self.registry = PluginRegistry()
        for plugin_name in ("alpha", "beta", "gamma"):
            self.registry.register_plugin_class(make_plugin_class(plugin_name))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def make_pipeline(self, plugins, settings=None, max_workers=1):
        config = ProjectConfig(
            prefix="17th",
            name="17th Battalion",
            plugins=plugins,
            settings=settings or {},
            packer=PackerOptions(tool="zip"),
            build_path=str(self.temp_dir / "build"),
            assets_path=str(self.temp_dir / "assets"),
        )
        return AddonPipeline(config, max_workers=max_workers, registry=self.registry)

    def test_plugins_run_in_declared_order(self):
        pipeline = self.make_pipeline(["gamma", "alpha", "beta"])

        addons = pipeline.generate()

        assert RecordingPlugin.calls == ["gamma", "alpha", "beta"]
        assert [addon.name for addon in addons] == ["Gamma", "Alpha", "Beta"]
        assert pipeline.state.status == PipelineStatus.SUCCEEDED
        assert all(result.success for result in pipeline.state.plugin_results.values())

    def test_parallel_results_keep_declared_order(self):
        pipeline = self.make_pipeline(["gamma", "alpha", "beta"], max_workers=3)

        addons = pipeline.generate()

        assert [addon.name for addon in addons] == ["Gamma", "Alpha", "Beta"]
        assert sorted(RecordingPlugin.calls) == ["alpha", "beta", "gamma"]
        assert pipeline.state.status == PipelineStatus.SUCCEEDED
        assert sorted(pipeline.state.plugin_results) == ["alpha", "beta", "gamma"]
        assert pipeline.state.current_plugin is None

    def test_unknown_plugin_fails_before_any_plugin_runs(self):
        pipeline = self.make_pipeline(["alpha", "sounds", "beta"])

        with pytest.raises(ConfigurationError) as exc_info:
            pipeline.generate()

        assert "sounds" in str(exc_info.value)
        assert RecordingPlugin.calls == []
        assert pipeline.state.status == PipelineStatus.IDLE

    def test_failure_aborts_remaining_plugins(self):
        pipeline = self.make_pipeline(["alpha", "beta", "gamma"], settings={"beta": {"fail": True}})

        with pytest.raises(PipelineError) as exc_info:
            pipeline.generate()

        error = exc_info.value
        assert error.plugin == "beta"
        assert isinstance(error.cause, PluginError)
        assert isinstance(error.__cause__, PluginError)
        assert RecordingPlugin.calls == ["alpha", "beta"]
        assert pipeline.state.status == PipelineStatus.FAILED
        assert pipeline.state.failed_plugin == "beta"
        assert not pipeline.state.plugin_results["beta"].success

    def test_duplicate_addon_names_collide_before_packing(self):
        pipeline = self.make_pipeline(
            ["alpha", "beta"], settings={"alpha": {"addon_name": "Same"}, "beta": {"addon_name": "Same"}}
        )

        with pytest.raises(AddonCollisionError) as exc_info:
            pipeline.build()

        assert exc_info.value.addon == "Same"
        assert not (self.temp_dir / "build" / "archives").exists()

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            self.make_pipeline(["alpha"], max_workers=0)


class TestBuild:
    """End-to-end builds with the built-in plugins, zip archives and real signatures."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.assets = self.temp_dir / "assets"
        self.track = self.assets / "Music" / "80s" / "Take_On_Me.ogg"
        self.track.parent.mkdir(parents=True)
        self.track.write_bytes(b"OggS" + bytes(128))
        (self.assets / "Music" / "80s" / "cover.png").write_bytes(b"\x89PNG")

        self.keys = self.temp_dir / "keys"
        self.keypair = Signer(self.keys).generate("17th")

        audio = MagicMock()
        audio.info.length = 223.0
        self.mutagen_patcher = patch.object(music_module, "MutagenFile", return_value=audio)
        self.mutagen_patcher.start()

    def teardown_method(self):
        self.mutagen_patcher.stop()
        shutil.rmtree(self.temp_dir)

    def make_config(self, plugins=None, settings=None, extensions=None):
        return ProjectConfig(
            prefix="17th",
            name="17th Battalion",
            author="17th",
            plugins=plugins or ["music"],
            settings=settings or {"music": {"extensions": extensions or [".ogg", ".png"]}},
            packer=PackerOptions(tool="zip", exclude=["*.png"]),
            signing=SigningOptions(keys_path=str(self.keys)),
            build_path=str(self.temp_dir / "build"),
            assets_path=str(self.assets),
        )

    def test_music_end_to_end(self):
        pipeline = AddonPipeline(self.make_config())

        report = pipeline.build()

        assert pipeline.state.status == PipelineStatus.SUCCEEDED
        assert [addon.name for addon in report.addons] == ["Music"]

        music = report.addons[0]
        assert (self.track, "data/Music/Take_On_Me.ogg") in music.copied_files

        config_cpp = music.generated["config.cpp"]
        assert "class 17th80s {" in config_cpp
        assert 'displayName = "[17th] 80s";' in config_cpp
        assert "class Take_On_Me {" in config_cpp
        assert 'name = "Take On Me";' in config_cpp
        assert '"17th\\Music\\data\\Music\\Take_On_Me.ogg"' in config_cpp
        assert "duration = 223;" in config_cpp
        assert 'musicClass = "17th80s";' in config_cpp

        release = report.archives[0]
        assert release.archive.path == self.temp_dir / "build" / "archives" / "17th_Music.zip"
        assert release.archive.members == ["config.cpp", "data/Music/Take_On_Me.ogg"]
        assert release.verified

        with zipfile.ZipFile(release.archive.path) as zf:
            assert not any(name.endswith(".png") for name in zf.namelist())

        public_key = load_public_key(self.keys / "17th.pubkey")
        assert Signer.verify(release.archive.path, release.signature, public_key)

    def test_rebuild_is_byte_identical(self):
        first = AddonPipeline(self.make_config()).build().archives[0]
        first_archive = first.archive.path.read_bytes()
        first_signature = first.signature.path.read_bytes()

        second = AddonPipeline(self.make_config()).build().archives[0]

        assert second.archive.path.read_bytes() == first_archive
        assert second.signature.path.read_bytes() == first_signature

    def test_multiple_addons_in_order(self):
        config = self.make_config(
            plugins=["missions", "music"],
            settings={"music": {}, "missions": {"maps": ["Altis"]}},
        )

        report = AddonPipeline(config, max_workers=2).build()

        assert [release.addon for release in report.archives] == ["Missions", "Music"]
        assert all(release.verified for release in report.archives)

    def test_empty_music_root_builds(self):
        shutil.rmtree(self.assets / "Music" / "80s")

        report = AddonPipeline(self.make_config()).build()

        assert report.archives[0].archive.members == ["config.cpp"]
        assert len(report.warnings) == 1

    def test_missing_key_fails_before_packing(self):
        shutil.rmtree(self.keys)

        with pytest.raises(PipelineError):
            AddonPipeline(self.make_config()).build()

        assert not (self.temp_dir / "build" / "archives").exists()

    def test_packing_failures_are_aggregated(self):
        config = self.make_config(
            plugins=["missions", "music"],
            settings={"music": {}, "missions": {"maps": ["Altis"]}},
        )
        pipeline = AddonPipeline(config)
        original_pack = pipeline.packer.pack

        def pack(addon, prefix):
            if addon.name == "Missions":
                self.track.unlink()
            return original_pack(addon, prefix)

        with patch.object(pipeline.packer, "pack", side_effect=pack):
            with pytest.raises(PipelineError) as exc_info:
                pipeline.build()

        error = exc_info.value
        assert [addon_name for addon_name, _ in error.failures] == ["Music"]
        assert error.addon == "Music"
        assert (self.temp_dir / "build" / "archives" / "17th_Missions.zip").is_file()
        assert pipeline.state.status == PipelineStatus.FAILED

    def test_failed_rebuild_removes_stale_release(self):
        first = AddonPipeline(self.make_config()).build().archives[0]
        assert first.archive.path.is_file()
        assert first.signature.path.is_file()

        pipeline = AddonPipeline(self.make_config())
        with patch.object(pipeline.packer.tool, "pack", side_effect=PackingError("disk full", "Music")):
            with pytest.raises(PipelineError):
                pipeline.build()

        assert not first.archive.path.exists()
        assert not first.signature.path.exists()

    def test_unverified_archive_is_removed(self):
        pipeline = AddonPipeline(self.make_config())

        with patch.object(pipeline.signer, "verify", return_value=False):
            with pytest.raises(PipelineError) as exc_info:
                pipeline.build()

        assert "does not verify" in str(exc_info.value)
        archives = self.temp_dir / "build" / "archives"
        assert not (archives / "17th_Music.zip").exists()
        assert not (archives / "17th_Music.zip.17th.sig").exists()
