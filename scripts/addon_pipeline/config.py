"""
Project configuration for the addon pipeline.
Loads the TOML project file, applies environment overrides and validates the result.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml

PACK_TOOLS = {
    "armake2": "pbo",
    "zip": "zip",
}

IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_]+$')


class ConfigurationError(Exception):
    """Raised for malformed or missing configuration."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


@dataclass(frozen=True)
class PackerOptions:
    """Options for the archive packer."""
    tool: str = "armake2"
    executable: str = "armake2"
    exclude: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    header_extensions: List[str] = field(default_factory=lambda: ["hpp"])
    extension: Optional[str] = None

    @property
    def archive_extension(self) -> str:
        """File extension of packed archives, without the dot."""
        if self.extension:
            return self.extension.lstrip('.')
        return PACK_TOOLS.get(self.tool, "pbo")


@dataclass(frozen=True)
class SigningOptions:
    """Options for archive signing."""
    key_name: Optional[str] = None
    keys_path: str = "keys"


@dataclass(frozen=True)
class ProjectConfig:
    """Main configuration class for an addon project."""

    prefix: str
    name: str
    author: str = ""

    # Ordered list of enabled plugins and their settings blocks
    plugins: List[str] = field(default_factory=list)
    settings: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    packer: PackerOptions = field(default_factory=PackerOptions)
    signing: SigningOptions = field(default_factory=SigningOptions)

    # Paths
    build_path: str = "build"
    assets_path: str = "assets"

    # Passed through to the release step untouched
    release_target: str = ""

    @property
    def key_name(self) -> str:
        return self.signing.key_name or self.prefix

    @property
    def addons_build_dir(self) -> Path:
        return Path(self.build_path) / "addons"

    @property
    def archives_dir(self) -> Path:
        return Path(self.build_path) / "archives"

    @classmethod
    def from_file(cls, config_path: Union[str, Path], apply_env: bool = True) -> "ProjectConfig":
        """
        Load configuration from a TOML project file.

        Relative paths in the file resolve against the file's directory.

        Raises:
            ConfigurationError: If the file is missing, malformed or invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            data = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        config = cls._from_dict(data, base_dir=config_path.parent)
        if apply_env:
            config = config.with_env_overrides()

        errors = config.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid configuration in {config_path}: {'; '.join(errors)}", errors
            )

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "ProjectConfig":
        """Create configuration from a dictionary."""
        missing = [key for key in ("prefix", "name") if not data.get(key)]
        if missing:
            raise ConfigurationError(f"Missing required fields: {', '.join(missing)}", missing)

        def resolve(path: str) -> str:
            if base_dir is None or Path(path).is_absolute():
                return path
            return str(base_dir / path)

        packer_data = data.get('packer', {})
        if not isinstance(packer_data, dict):
            raise ConfigurationError("'packer' must be a table")
        list_errors = [
            f"packer.{option} must be a list of strings"
            for option in ("exclude", "include", "header_extensions")
            if not isinstance(packer_data.get(option, []), list)
        ]
        if list_errors:
            raise ConfigurationError("; ".join(list_errors), list_errors)
        packer = PackerOptions(
            tool=packer_data.get('tool', 'armake2'),
            executable=packer_data.get('executable', 'armake2'),
            exclude=list(packer_data.get('exclude', [])),
            include=[
                resolve(folder) if isinstance(folder, str) else folder
                for folder in packer_data.get('include', [])
            ],
            header_extensions=list(packer_data.get('header_extensions', ['hpp'])),
            extension=packer_data.get('extension'),
        )

        signing_data = data.get('signing', {})
        if not isinstance(signing_data, dict):
            raise ConfigurationError("'signing' must be a table")
        signing = SigningOptions(
            key_name=signing_data.get('key_name'),
            keys_path=resolve(signing_data.get('keys_path', 'keys')),
        )

        settings = data.get('settings', {})
        if not isinstance(settings, dict):
            raise ConfigurationError("'settings' must be a table keyed by plugin name")

        return cls(
            prefix=str(data['prefix']),
            name=str(data['name']),
            author=str(data.get('author', '')),
            plugins=data.get('plugins', []),
            settings=settings,
            packer=packer,
            signing=signing,
            build_path=resolve(data.get('build_path', 'build')),
            assets_path=resolve(data.get('assets_path', 'assets')),
            release_target=str(data.get('release_target', '')),
        )

    def with_env_overrides(self) -> "ProjectConfig":
        """Return a copy with environment variable overrides applied."""
        config = self

        if os.getenv('ADDON_PIPELINE_BUILD_PATH'):
            config = replace(config, build_path=os.getenv('ADDON_PIPELINE_BUILD_PATH', 'build'))

        if os.getenv('ADDON_PIPELINE_ASSETS_PATH'):
            config = replace(config, assets_path=os.getenv('ADDON_PIPELINE_ASSETS_PATH', 'assets'))

        if os.getenv('ADDON_PIPELINE_PACK_TOOL'):
            config = replace(config, packer=replace(
                config.packer, tool=os.getenv('ADDON_PIPELINE_PACK_TOOL', 'armake2')
            ))

        if os.getenv('ADDON_PIPELINE_PACK_EXECUTABLE'):
            config = replace(config, packer=replace(
                config.packer, executable=os.getenv('ADDON_PIPELINE_PACK_EXECUTABLE', 'armake2')
            ))

        if os.getenv('ADDON_PIPELINE_KEYS_PATH'):
            config = replace(config, signing=replace(
                config.signing, keys_path=os.getenv('ADDON_PIPELINE_KEYS_PATH', 'keys')
            ))

        return config

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not IDENTIFIER_RE.match(self.prefix):
            errors.append("prefix must only contain letters, digits and underscores")

        if not self.name.strip():
            errors.append("name must not be empty")

        if not isinstance(self.plugins, list) or not all(isinstance(p, str) for p in self.plugins):
            errors.append("plugins must be a list of plugin names")
        elif len(set(self.plugins)) != len(self.plugins):
            errors.append("plugins must not list a plugin twice")

        for plugin_name, block in self.settings.items():
            if not isinstance(block, dict):
                errors.append(f"settings.{plugin_name} must be a table")

        if self.packer.tool not in PACK_TOOLS:
            errors.append(f"packer.tool must be one of {sorted(PACK_TOOLS)}")

        for option in ("exclude", "include", "header_extensions"):
            values = getattr(self.packer, option)
            if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                errors.append(f"packer.{option} must be a list of strings")

        if self.signing.key_name is not None and not IDENTIFIER_RE.match(self.signing.key_name):
            errors.append("signing.key_name must only contain letters, digits and underscores")

        return errors
