"""
Processing modules for template rendering, archive packing and signing.
"""

from .templates import TemplateRenderer, TemplateRenderError, RawText, escape_config_string
from .packer import (
    ArchivePacker,
    ArchiveTool,
    ArchiveMember,
    ExternalArchiveTool,
    ZipArchiveTool,
    PackedArchive,
    PackingError,
    create_archive_tool
)
from .signing import Keypair, Signature, Signer, SigningError, load_public_key, read_signature

__all__ = [
    "TemplateRenderer",
    "TemplateRenderError",
    "RawText",
    "escape_config_string",
    "ArchivePacker",
    "ArchiveTool",
    "ArchiveMember",
    "ExternalArchiveTool",
    "ZipArchiveTool",
    "PackedArchive",
    "PackingError",
    "create_archive_tool",
    "Keypair",
    "Signature",
    "Signer",
    "SigningError",
    "load_public_key",
    "read_signature",
]
