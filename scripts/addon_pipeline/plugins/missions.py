"""
Missions plugin: generates one multiplayer mission per configured map.

An optional editor composition (a folder holding ``header.sqe`` and
``composition.sqe``) is placed into every mission. Its objects keep their
relative layout and are moved to the composition center plus the configured
offset.
"""

import logging
import textwrap
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Sequence

import armaclass

from ..config import ConfigurationError, IDENTIFIER_RE
from ..processing.templates import TemplateRenderer
from .base import AddonDefinition, BuildContext, Plugin, PluginError

logger = logging.getLogger(__name__)


@dataclass
class MissionSettings:
    """Settings from ``[settings.missions]``."""
    maps: List[str] = field(default_factory=list)
    addon_name: str = "Missions"
    mission_name: str = "ZeusMission"
    respawn_delay: int = 2
    composition: Optional[str] = None
    composition_offset: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])


POSITION_INFO = "PositionInfo"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def offset_positions(entries: Dict[str, Any], offset: Sequence[float]) -> Dict[str, Any]:
    """
    Return a copy of a parsed class tree with every ``PositionInfo.position``
    shifted by offset.

    Nested classes are searched recursively; everything else is copied as is.
    """
    shifted: Dict[str, Any] = {}
    for key, value in entries.items():
        if isinstance(value, dict):
            if key == POSITION_INFO:
                value = dict(value)
                position = value.get("position")
                if isinstance(position, list):
                    value["position"] = [
                        element + offset[axis] if axis < len(offset) and _is_number(element) else element
                        for axis, element in enumerate(position)
                    ]
            else:
                value = offset_positions(value, offset)
        shifted[key] = value
    return shifted


@dataclass
class Composition:
    """An editor composition loaded from its ``.sqe`` files."""
    path: Path
    header: Dict[str, Any]
    center: List[float]
    items: Dict[str, Any]

    @property
    def name(self) -> str:
        return str(self.header.get("name") or self.path.name)

    @classmethod
    def from_path(cls, path: Path) -> "Composition":
        """
        Load a composition folder.

        Raises:
            PluginError: If a file is missing or unparsable, or center[] or items are missing
        """
        header = cls._read(path / "header.sqe")
        data = cls._read(path / "composition.sqe")

        center = data.get("center")
        if not isinstance(center, list) or len(center) != 3 or not all(_is_number(c) for c in center):
            raise PluginError("composition has no valid center[]", MissionsPlugin.name, path / "composition.sqe")

        items = data.get("items")
        if not isinstance(items, dict):
            raise PluginError("composition has no items class", MissionsPlugin.name, path / "composition.sqe")

        return cls(path=path, header=header, center=list(center), items=items)

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PluginError(f"Failed to read composition file: {e}", MissionsPlugin.name, path) from e

        try:
            return armaclass.parse(text)
        except Exception as e:
            raise PluginError(f"Failed to parse composition file: {e}", MissionsPlugin.name, path) from e

    def placed_items(self, offset: Sequence[float]) -> Dict[str, Any]:
        """Items moved to the composition center plus offset."""
        shift = [c + o for c, o in zip(self.center, offset)]
        return offset_positions(self.items, shift)

    def render_entities(self, offset: Sequence[float]) -> str:
        """Render the placed items as a ``class Entities`` block for ``class Mission``."""
        text = armaclass.generate({"Entities": self.placed_items(offset)})
        return textwrap.indent(text.strip("\n"), "\t") + "\n"


@dataclass
class Mission:
    """A mission generated for one map."""
    prefix: str
    map_name: str
    mission_name: str

    @property
    def class_name(self) -> str:
        return f"{self.prefix}_{self.map_name}{self.mission_name}"

    @property
    def folder_name(self) -> str:
        return f"{self.class_name}.{self.map_name}"

    @property
    def briefing_name(self) -> str:
        return f"[{self.prefix}] {self.class_name}"


class MissionsPlugin(Plugin):
    """Generates mission.sqm files and their CfgMissions registration."""

    name = "missions"
    config_template = "missions_config.cpp.j2"
    mission_template = "mission.sqm.j2"

    def __init__(self, settings: MissionSettings, renderer: Optional[TemplateRenderer] = None):
        super().__init__(settings)
        self.renderer = renderer or TemplateRenderer()

    @classmethod
    def parse_settings(cls, raw: Dict[str, Any]) -> MissionSettings:
        unknown = sorted(set(raw) - set(MissionSettings.__dataclass_fields__))
        if unknown:
            raise ConfigurationError(f"settings.missions: unknown keys {unknown}")

        settings = MissionSettings(**raw)
        errors = []

        if not isinstance(settings.maps, list) or not settings.maps:
            errors.append("maps must be a non-empty list of map names")
        elif not all(isinstance(m, str) and IDENTIFIER_RE.match(m) for m in settings.maps):
            errors.append("map names must only contain letters, digits and underscores")
        elif len(set(settings.maps)) != len(settings.maps):
            errors.append("maps must not list a map twice")

        for key in ("addon_name", "mission_name"):
            if not IDENTIFIER_RE.match(str(getattr(settings, key))):
                errors.append(f"{key} must only contain letters, digits and underscores")

        if not isinstance(settings.respawn_delay, int) or settings.respawn_delay < 0:
            errors.append("respawn_delay must be a non-negative integer")

        if settings.composition is not None and (
                not isinstance(settings.composition, str) or not settings.composition):
            errors.append("composition must be a folder path")

        offset = settings.composition_offset
        if not isinstance(offset, list) or len(offset) != 3 or not all(_is_number(v) for v in offset):
            errors.append("composition_offset must be three numbers (x, y, z)")

        if errors:
            raise ConfigurationError(f"settings.missions: {'; '.join(errors)}", errors)

        return settings

    def build(self, context: BuildContext) -> AddonDefinition:
        addon = AddonDefinition(name=self.settings.addon_name)
        missions = [
            Mission(context.prefix, map_name, self.settings.mission_name)
            for map_name in self.settings.maps
        ]

        entities = None
        if self.settings.composition:
            composition = Composition.from_path(self.composition_path(context))
            entities = composition.render_entities(self.settings.composition_offset)
            logger.info(f"Placing composition '{composition.name}' into {len(missions)} missions")

        entries = []
        for mission in missions:
            sqm = self.renderer.render(self.mission_template, {
                "author": context.author,
                "respawn_delay": self.settings.respawn_delay,
                "briefing_name": mission.briefing_name,
                "entities": entities,
            })
            addon.add_file(PurePosixPath("missions", mission.folder_name, "mission.sqm"), sqm)

            entries.append({
                "class_name": mission.class_name,
                "briefing_name": mission.briefing_name,
                "directory": "\\".join(
                    [context.prefix, self.settings.addon_name, "missions", mission.folder_name]
                ),
            })
            logger.debug(f"Generated mission {mission.folder_name}")

        config_cpp = self.renderer.render(self.config_template, {
            "patch": context.patch(self.settings.addon_name),
            "missions": entries,
        })
        addon.add_file("config.cpp", config_cpp)

        logger.info(f"Missions addon '{addon.name}': {len(missions)} missions")
        return addon

    def composition_path(self, context: BuildContext) -> Path:
        """Composition folder; relative paths resolve against the asset root."""
        path = Path(self.settings.composition)
        return path if path.is_absolute() else context.assets_root / path
