"""
Addon Pipeline for class-based game configuration addons

Turns a declarative project file and raw asset folders into signed, distributable
addon archives. Plugins generate the config sources of each addon, the packer
builds deterministic archives and the signer produces detached Ed25519 signatures.
"""

__version__ = "0.1.0"
__author__ = "Addon Pipeline Developers"

from .config import ProjectConfig, ConfigurationError
from .plugins import Plugin, PluginError, AddonDefinition, AddonCollisionError, plugin_registry
from .processing import ArchivePacker, PackingError, Signer, SigningError, TemplateRenderer
from .pipeline import AddonPipeline, PipelineError, PipelineStatus, BuildReport

__all__ = [
    "ProjectConfig",
    "ConfigurationError",
    "Plugin",
    "PluginError",
    "AddonDefinition",
    "AddonCollisionError",
    "plugin_registry",
    "ArchivePacker",
    "PackingError",
    "Signer",
    "SigningError",
    "TemplateRenderer",
    "AddonPipeline",
    "PipelineError",
    "PipelineStatus",
    "BuildReport",
]
