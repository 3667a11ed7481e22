"""
Addon plugins for the pipeline.
Each plugin scans project assets and produces one addon definition.
"""

from .base import (
    AddonCollisionError, AddonDefinition, BuildContext, Plugin,
    PluginError, PluginRegistry, plugin_registry
)
from .music import MusicPlugin, MusicClass, MusicTrack, sanitize_identifier, pretty_name
from .missions import MissionsPlugin, Mission

# Register plugin classes with the global registry
plugin_registry.register_plugin_class(MusicPlugin)
plugin_registry.register_plugin_class(MissionsPlugin)

__all__ = [
    # Base classes and registry
    "Plugin",
    "AddonDefinition",
    "BuildContext",
    "PluginRegistry",
    "plugin_registry",

    # Exceptions
    "PluginError",
    "AddonCollisionError",

    # Concrete plugins
    "MusicPlugin",
    "MusicClass",
    "MusicTrack",
    "MissionsPlugin",
    "Mission",

    # Utilities
    "sanitize_identifier",
    "pretty_name",
]
