"""
Archive packing for addon definitions.

The packer selects, filters and orders the member set of an addon, stages it
into the build directory and hands the staged tree to an archive tool.
"""

import fnmatch
import logging
import shutil
import subprocess
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..config import PackerOptions
from ..plugins.base import AddonDefinition

logger = logging.getLogger(__name__)

# ZIP timestamps cannot represent dates before 1980
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class PackingError(Exception):
    """Raised when an addon cannot be packed."""

    def __init__(self, message: str, addon: str, path: Optional[Union[str, Path]] = None):
        location = f" ({path})" if path is not None else ""
        super().__init__(f"Addon '{addon}': {message}{location}")
        self.addon = addon
        self.path = path


@dataclass
class ArchiveMember:
    """One file inside a packed archive."""
    path: str
    source: Optional[Path] = None
    content: Optional[bytes] = None
    is_header: bool = False


@dataclass
class PackedArchive:
    """Result of packing one addon."""
    addon: str
    path: Path
    members: List[str] = field(default_factory=list)


class ArchiveTool(ABC):
    """Capability that turns a staged directory into an archive file."""

    @abstractmethod
    def pack(self, staging_dir: Path, members: List[ArchiveMember], output_path: Path,
             header: Dict[str, str]) -> None:
        """
        Pack the staged members into output_path.

        Args:
            staging_dir: Directory holding every member at its relative path
            members: Members in archive order
            output_path: Archive file to create
            header: Header metadata (e.g. ``prefix``)

        Raises:
            PackingError: If the archive cannot be produced
        """
        pass


class ExternalArchiveTool(ArchiveTool):
    """Delegates the proprietary container encoding to an external packer."""

    def __init__(self, executable: str = "armake2"):
        self.executable = executable

    def build_command(self, staging_dir: Path, output_path: Path, header: Dict[str, str]) -> List[str]:
        command = [self.executable, "pack", "-f"]
        for key in sorted(header):
            command.extend(["-e", f"{key}={header[key]}"])
        command.extend([str(staging_dir), str(output_path)])
        return command

    def pack(self, staging_dir: Path, members: List[ArchiveMember], output_path: Path,
             header: Dict[str, str]) -> None:
        command = self.build_command(staging_dir, output_path, header)
        addon = staging_dir.name
        logger.debug(f"Running: {' '.join(command)}")

        try:
            subprocess.run(command, capture_output=True, text=True, check=True)
        except FileNotFoundError as e:
            raise PackingError(f"archive tool not found: {self.executable}", addon) from e
        except subprocess.CalledProcessError as e:
            diagnostic = (e.stderr or e.stdout or "").strip()
            raise PackingError(
                f"{self.executable} exited with status {e.returncode}: {diagnostic}", addon
            ) from e


class ZipArchiveTool(ArchiveTool):
    """Deterministic zip archives: fixed timestamps and modes, header members stored."""

    def pack(self, staging_dir: Path, members: List[ArchiveMember], output_path: Path,
             header: Dict[str, str]) -> None:
        if output_path.exists():
            output_path.unlink()

        with zipfile.ZipFile(output_path, "w") as zf:
            zf.comment = "\n".join(f"{key}={header[key]}" for key in sorted(header)).encode("utf-8")

            for member in members:
                zi = zipfile.ZipInfo(member.path, date_time=ZIP_EPOCH)
                zi.compress_type = zipfile.ZIP_STORED if member.is_header else zipfile.ZIP_DEFLATED
                zi.external_attr = (0o644 & 0xFFFF) << 16
                zi.create_system = 3

                data = (staging_dir / member.path).read_bytes()
                zf.writestr(zi, data)


def create_archive_tool(options: PackerOptions) -> ArchiveTool:
    """Create the archive tool selected by the packer options."""
    if options.tool == "zip":
        return ZipArchiveTool()
    if options.tool == "armake2":
        return ExternalArchiveTool(options.executable)
    raise ValueError(f"Unknown archive tool '{options.tool}'")


class ArchivePacker:
    """Packs addon definitions into archives."""

    def __init__(self, options: PackerOptions, staging_root: Union[str, Path],
                 output_dir: Union[str, Path], tool: Optional[ArchiveTool] = None):
        """
        Initialize the packer.

        Args:
            options: Packer options from the project configuration
            staging_root: Directory under which each addon is staged
            output_dir: Directory receiving the packed archives
            tool: Archive tool; defaults to the one selected in options
        """
        self.options = options
        self.staging_root = Path(staging_root)
        self.output_dir = Path(output_dir)
        self.tool = tool or create_archive_tool(options)
        self._header_suffixes = {
            ext.lower() if ext.startswith('.') else f".{ext.lower()}" for ext in options.header_extensions
        }

    def is_excluded(self, path: str) -> bool:
        return any(fnmatch.fnmatchcase(path, pattern) for pattern in self.options.exclude)

    def is_header(self, path: str) -> bool:
        return Path(path).suffix.lower() in self._header_suffixes

    def resolve_members(self, addon: AddonDefinition) -> List[ArchiveMember]:
        """
        Resolve the sorted member set of an addon.

        Generated and copied files minus excluded paths, plus every file of the
        configured include folders.

        Raises:
            PackingError: If a copy source is missing or an include file collides
        """
        members: Dict[str, ArchiveMember] = {}

        for destination, content in addon.generated.items():
            if not self.is_excluded(destination):
                members[destination] = ArchiveMember(destination, content=content.encode("utf-8"))

        for source, destination in addon.copied_files:
            if self.is_excluded(destination):
                continue
            if not source.is_file():
                raise PackingError("referenced file is missing", addon.name, source)
            members[destination] = ArchiveMember(destination, source=source)

        for folder in self.options.include:
            folder = Path(folder)
            if not folder.is_dir():
                raise PackingError("include folder is missing", addon.name, folder)

            for source in sorted(p for p in folder.rglob("*") if p.is_file()):
                destination = source.relative_to(folder).as_posix()
                if self.is_excluded(destination):
                    continue
                if destination in members:
                    raise PackingError(
                        f"include file collides with addon member '{destination}'", addon.name, source
                    )
                members[destination] = ArchiveMember(destination, source=source)

        ordered = [members[path] for path in sorted(members)]
        for member in ordered:
            member.is_header = self.is_header(member.path)
        return ordered

    def stage(self, members: List[ArchiveMember], staging_dir: Path) -> None:
        """Write every member into a freshly cleared staging directory."""
        if staging_dir.exists():
            shutil.rmtree(staging_dir)
        staging_dir.mkdir(parents=True)

        for member in members:
            target = staging_dir / member.path
            target.parent.mkdir(parents=True, exist_ok=True)
            if member.content is not None:
                target.write_bytes(member.content)
            else:
                shutil.copyfile(member.source, target)

    def archive_path(self, addon: AddonDefinition, prefix: str) -> Path:
        return self.output_dir / f"{addon.archive_name(prefix)}.{self.options.archive_extension}"

    def pack(self, addon: AddonDefinition, prefix: str) -> PackedArchive:
        """
        Pack one addon.

        Args:
            addon: The addon definition to pack
            prefix: Project prefix

        Returns:
            The packed archive

        Raises:
            PackingError: If members are missing or the archive tool fails
        """
        archive_name = addon.archive_name(prefix)
        output_path = self.archive_path(addon, prefix)
        try:
            if output_path.exists():
                output_path.unlink()
        except OSError as e:
            raise PackingError(f"failed to remove previous archive: {e}", addon.name, output_path) from e

        members = self.resolve_members(addon)
        staging_dir = self.staging_root / archive_name

        try:
            self.stage(members, staging_dir)
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackingError(f"failed to stage members: {e}", addon.name, staging_dir) from e

        header = {"prefix": f"{prefix}\\{addon.name}"}
        self.tool.pack(staging_dir, members, output_path, header)

        if not output_path.is_file():
            raise PackingError("archive tool produced no archive", addon.name, output_path)

        logger.info(f"Packed {output_path.name} ({len(members)} members)")
        return PackedArchive(addon=addon.name, path=output_path, members=[m.path for m in members])
