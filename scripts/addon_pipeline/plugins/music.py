"""
Music plugin: turns a folder of music classes into a CfgMusic addon.

Every immediate subfolder of the music asset root is one music class, every
audio file inside it one track. Folders and files are always enumerated in
sorted order so unchanged inputs regenerate an identical config.cpp.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from mutagen import File as MutagenFile
from mutagen import MutagenError

from ..config import ConfigurationError
from ..processing.templates import TemplateRenderer
from .base import AddonDefinition, BuildContext, Plugin, PluginError

logger = logging.getLogger(__name__)

INVALID_IDENTIFIER_CHARS = re.compile(r'[^A-Za-z0-9_]')


def sanitize_identifier(name: str) -> str:
    """Turn a file or folder name into a config class identifier."""
    return INVALID_IDENTIFIER_CHARS.sub('', name.replace(' ', '_'))


def pretty_name(identifier: str) -> str:
    return identifier.replace('_', ' ')


def read_duration(path: Path) -> int:
    """
    Read a track's duration in whole seconds from its container metadata.

    Raises:
        PluginError: If the file cannot be parsed or reports no duration
    """
    try:
        audio = MutagenFile(str(path))
    except (MutagenError, OSError) as e:
        raise PluginError(f"Failed to read audio metadata: {e}", MusicPlugin.name, path) from e

    length = getattr(getattr(audio, 'info', None), 'length', None)
    if not length or length <= 0:
        raise PluginError("Audio file has no readable duration", MusicPlugin.name, path)

    return max(1, int(round(length)))


@dataclass
class MusicSettings:
    """Settings from ``[settings.music]``."""
    addon_name: str = "Music"
    folder: str = "Music"
    extensions: List[str] = field(default_factory=lambda: [".ogg"])


@dataclass
class MusicClass:
    """One music class, backed by one subfolder of the asset root."""
    class_name: str
    display_name: str
    folder: Path


@dataclass
class MusicTrack:
    """One playable track bound to a music class."""
    class_name: str
    pretty_name: str
    music_class: str
    source: Path
    relative_path: str
    path: str
    duration: int


class MusicPlugin(Plugin):
    """Generates CfgMusicClasses and CfgMusic entries for a music asset tree."""

    name = "music"
    template = "music_config.cpp.j2"

    def __init__(self, settings: MusicSettings, renderer: Optional[TemplateRenderer] = None):
        super().__init__(settings)
        self.renderer = renderer or TemplateRenderer()

    @classmethod
    def parse_settings(cls, raw: Dict[str, Any]) -> MusicSettings:
        unknown = sorted(set(raw) - set(MusicSettings.__dataclass_fields__))
        if unknown:
            raise ConfigurationError(f"settings.music: unknown keys {unknown}")

        settings = MusicSettings(**raw)
        if (not isinstance(settings.addon_name, str) or not settings.addon_name
                or sanitize_identifier(settings.addon_name) != settings.addon_name):
            raise ConfigurationError("settings.music.addon_name must be a valid identifier")
        if not isinstance(settings.folder, str) or not settings.folder:
            raise ConfigurationError("settings.music.folder must be a folder name")
        if (not isinstance(settings.extensions, list) or not settings.extensions
                or not all(isinstance(ext, str) for ext in settings.extensions)):
            raise ConfigurationError("settings.music.extensions must be a non-empty list of strings")

        settings.extensions = [
            ext.lower() if ext.startswith('.') else f".{ext.lower()}" for ext in settings.extensions
        ]
        return settings

    def build(self, context: BuildContext) -> AddonDefinition:
        root = context.assets_root / self.settings.folder
        if not root.is_dir():
            raise PluginError("Music asset folder does not exist", self.name, root)

        addon = AddonDefinition(name=self.settings.addon_name)
        classes = self.scan_classes(root, context.prefix)
        tracks = []
        for music_class in classes:
            tracks.extend(self.scan_tracks(music_class, root, context))

        self._check_unique_tracks(tracks)

        if not classes:
            message = f"No music classes found in {root}; generating an empty music addon"
            logger.warning(message)
            addon.warnings.append(message)

        for track in tracks:
            addon.add_copy(track.source, track.relative_path)

        config_cpp = self.renderer.render(self.template, {
            "patch": context.patch(self.settings.addon_name),
            "classes": classes,
            "tracks": tracks,
            "track_list": ", ".join(f'"{track.class_name}"' for track in tracks),
        })
        addon.add_file("config.cpp", config_cpp)

        logger.info(f"Music addon '{addon.name}': {len(classes)} classes, {len(tracks)} tracks")
        return addon

    def scan_classes(self, root: Path, prefix: str) -> List[MusicClass]:
        """Create one music class per immediate subfolder, sorted by folder name."""
        classes = []
        seen: Dict[str, Path] = {}

        for folder in sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name):
            class_name = f"{prefix}{sanitize_identifier(folder.name)}"
            if class_name in seen:
                raise PluginError(
                    f"Music class '{class_name}' is produced by both '{seen[class_name].name}' and '{folder.name}'",
                    self.name, folder
                )
            seen[class_name] = folder

            classes.append(MusicClass(
                class_name=class_name,
                display_name=f"[{prefix}] {folder.name.replace('_', ' ')}",
                folder=folder,
            ))

        return classes

    def scan_tracks(self, music_class: MusicClass, root: Path, context: BuildContext) -> List[MusicTrack]:
        """Create tracks for every audio file of a music class, sorted by file name."""
        tracks = []
        audio_files = sorted(
            (p for p in music_class.folder.iterdir()
             if p.is_file() and p.suffix.lower() in self.settings.extensions),
            key=lambda p: p.name
        )

        for audio_file in audio_files:
            identifier = sanitize_identifier(audio_file.stem)
            if not identifier:
                raise PluginError("File name yields an empty track identifier", self.name, audio_file)

            relative_path = PurePosixPath("data", root.name, audio_file.name)
            game_path = "\\".join([context.prefix, self.settings.addon_name, *relative_path.parts])

            tracks.append(MusicTrack(
                class_name=identifier,
                pretty_name=pretty_name(identifier),
                music_class=music_class.class_name,
                source=audio_file,
                relative_path=str(relative_path),
                path=game_path,
                duration=read_duration(audio_file),
            ))

        return tracks

    def _check_unique_tracks(self, tracks: List[MusicTrack]) -> None:
        seen: Dict[str, MusicTrack] = {}
        for track in tracks:
            if track.class_name in seen:
                raise PluginError(
                    f"Track identifier '{track.class_name}' is produced by both "
                    f"'{seen[track.class_name].source}' and '{track.source}'",
                    self.name, track.source
                )
            seen[track.class_name] = track
