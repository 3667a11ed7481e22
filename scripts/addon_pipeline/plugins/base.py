"""
Abstract base classes for addon plugins.
Defines the interface that all plugins must implement and the addon definition they produce.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from ..config import ConfigurationError, ProjectConfig


def normalize_destination(path: Union[str, PurePosixPath]) -> str:
    """Normalize an addon-relative destination to a forward-slash path."""
    normalized = str(path).replace('\\', '/')
    while normalized.startswith('./'):
        normalized = normalized[2:]
    normalized = normalized.lstrip('/')

    parts = PurePosixPath(normalized).parts
    if not parts or '..' in parts:
        raise ValueError(f"Invalid addon destination path: {path!r}")

    return str(PurePosixPath(*parts))


class AddonCollisionError(Exception):
    """Raised when two files resolve to the same destination path."""

    def __init__(self, addon: str, destination: str):
        super().__init__(f"Addon '{addon}': destination '{destination}' is already taken")
        self.addon = addon
        self.destination = destination


@dataclass
class AddonDefinition:
    """Generated sources plus a copy manifest for one addon."""
    name: str
    generated: Dict[str, str] = field(default_factory=dict)
    copies: Dict[str, Path] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def add_file(self, destination: Union[str, PurePosixPath], content: str) -> str:
        """Add a generated text file; returns the normalized destination."""
        destination = normalize_destination(destination)
        self._claim(destination)
        self.generated[destination] = content
        return destination

    def add_copy(self, source: Union[str, Path], destination: Union[str, PurePosixPath]) -> str:
        """Add a file to be copied verbatim; returns the normalized destination."""
        destination = normalize_destination(destination)
        self._claim(destination)
        self.copies[destination] = Path(source)
        return destination

    def _claim(self, destination: str) -> None:
        if destination in self.generated or destination in self.copies:
            raise AddonCollisionError(self.name, destination)

    @property
    def copied_files(self) -> List[Tuple[Path, str]]:
        """(source, destination) pairs sorted by destination."""
        return [(self.copies[dest], dest) for dest in sorted(self.copies)]

    def destinations(self) -> List[str]:
        """All destination paths of the addon, sorted."""
        return sorted(set(self.generated) | set(self.copies))

    def archive_name(self, prefix: str) -> str:
        return f"{prefix}_{self.name}"


@dataclass(frozen=True)
class BuildContext:
    """Everything a plugin may read while building its addon."""
    project: ProjectConfig
    settings: Dict[str, Any]
    assets_root: Path
    archive_extension: str

    @property
    def prefix(self) -> str:
        return self.project.prefix

    @property
    def author(self) -> str:
        return self.project.author

    def patch(self, addon_name: str) -> Dict[str, str]:
        """Values for the CfgPatches registration block of an addon."""
        archive_name = f"{self.prefix}_{addon_name}"
        return {
            "class_name": archive_name,
            "name": addon_name,
            "author": self.author,
            "file_name": f"{archive_name}.{self.archive_extension}",
        }

    @classmethod
    def for_plugin(cls, project: ProjectConfig, plugin_name: str) -> "BuildContext":
        """Create an isolated context holding a private copy of the plugin settings."""
        return cls(
            project=project,
            settings=copy.deepcopy(dict(project.settings.get(plugin_name, {}))),
            assets_root=Path(project.assets_path),
            archive_extension=project.packer.archive_extension,
        )


class PluginError(Exception):
    """Base exception for plugin errors."""

    def __init__(self, message: str, plugin: str, path: Optional[Union[str, Path]] = None):
        location = f" ({path})" if path is not None else ""
        super().__init__(f"{message}{location}")
        self.plugin = plugin
        self.path = path


class Plugin(ABC):
    """Abstract base class for addon plugins."""

    #: Name used in the project's ``plugins`` list
    name: str = ""

    def __init__(self, settings: Any):
        """Initialize plugin with its parsed settings."""
        self.settings = settings

    @classmethod
    @abstractmethod
    def parse_settings(cls, raw: Dict[str, Any]) -> Any:
        """
        Parse the plugin's configuration block.

        Args:
            raw: The ``[settings.<name>]`` table from the project file

        Returns:
            Typed settings object for this plugin

        Raises:
            ConfigurationError: If the block is invalid
        """
        pass

    @abstractmethod
    def build(self, context: BuildContext) -> AddonDefinition:
        """
        Scan inputs and produce one addon definition.

        Args:
            context: Build context for this plugin

        Returns:
            The complete addon definition

        Raises:
            PluginError: If scanning or generation fails
        """
        pass

    def get_plugin_info(self) -> Dict[str, Any]:
        """
        Get information about this plugin.

        Returns:
            Dictionary with plugin metadata
        """
        return {
            "name": self.name,
            "class": self.__class__.__name__,
            "settings": self.settings,
        }


class PluginRegistry:
    """Registry mapping plugin names to plugin classes."""

    def __init__(self):
        """Initialize empty plugin registry."""
        self._plugin_classes: Dict[str, Type[Plugin]] = {}

    def register_plugin_class(self, plugin_class: Type[Plugin]) -> None:
        """
        Register a plugin class under its ``name``.

        Raises:
            ValueError: If plugin_class doesn't inherit from Plugin or has no name
        """
        if not issubclass(plugin_class, Plugin):
            raise ValueError(f"Plugin class {plugin_class} must inherit from Plugin")
        if not plugin_class.name:
            raise ValueError(f"Plugin class {plugin_class.__name__} has no name")

        self._plugin_classes[plugin_class.name] = plugin_class

    def create_plugin(self, name: str, project: ProjectConfig) -> Plugin:
        """
        Create a plugin instance with its settings parsed from the project.

        Raises:
            ConfigurationError: If the name is unknown or its settings are invalid
        """
        if name not in self._plugin_classes:
            raise ConfigurationError(
                f"Unknown plugin '{name}'. Available: {self.list_available_plugins()}"
            )

        plugin_class = self._plugin_classes[name]
        raw_settings = dict(project.settings.get(name, {}))
        return plugin_class(plugin_class.parse_settings(raw_settings))

    def list_available_plugins(self) -> List[str]:
        return sorted(self._plugin_classes)


# Global plugin registry instance
plugin_registry = PluginRegistry()
