"""
Addon pipeline coordinator.
Runs the enabled plugins in configured order, then packs, signs and verifies every addon.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple
from dataclasses import dataclass, field

from .config import ConfigurationError, ProjectConfig
from .plugins import plugin_registry
from .plugins.base import AddonCollisionError, AddonDefinition, BuildContext, Plugin, PluginRegistry
from .processing.packer import ArchivePacker, ArchiveTool, PackedArchive
from .processing.signing import Keypair, Signature, Signer, signature_path


class PipelineStatus(Enum):
    """Lifecycle of a pipeline run."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PluginResult:
    """Result of one plugin execution."""
    plugin: str
    success: bool
    duration: float
    message: str
    addon: Optional[AddonDefinition] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class PipelineState:
    """Current state of the pipeline execution."""
    status: PipelineStatus = PipelineStatus.IDLE
    current_plugin: Optional[str] = None
    current_index: int = 0
    total_plugins: int = 0
    plugin_results: Dict[str, PluginResult] = field(default_factory=dict)
    failed_plugin: Optional[str] = None
    error: Optional[BaseException] = None
    start_time: Optional[float] = None


@dataclass
class ReleaseArchive:
    """A packed archive together with its verified signature."""
    addon: str
    archive: PackedArchive
    signature: Signature
    verified: bool


@dataclass
class BuildReport:
    """Everything a successful build produced, in configuration order."""
    addons: List[AddonDefinition] = field(default_factory=list)
    archives: List[ReleaseArchive] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class PipelineError(Exception):
    """Raised when a plugin or an addon stage fails."""
    def __init__(self, message: str, plugin: Optional[str] = None, addon: Optional[str] = None,
                 cause: Optional[BaseException] = None,
                 failures: Optional[List[Tuple[str, BaseException]]] = None):
        super().__init__(message)
        self.plugin = plugin
        self.addon = addon
        self.cause = cause
        self.failures = failures or []


class AddonPipeline:
    """
    Main pipeline coordinator for an addon project.

    Plugins are resolved through a closed registry before anything runs. Each
    plugin gets an isolated build context and returns its addon definition;
    nothing is shared between plugins. Results are always reported in the
    order the project file lists the plugins, also when a worker pool is used.
    """

    def __init__(self, config: ProjectConfig, max_workers: int = 1,
                 registry: Optional[PluginRegistry] = None,
                 tool: Optional[ArchiveTool] = None,
                 signer: Optional[Signer] = None):
        """
        Initialize the addon pipeline.

        Args:
            config: Project configuration
            max_workers: Worker threads for plugins and addon packaging; 1 runs sequentially
            registry: Plugin registry; defaults to the built-in plugins
            tool: Archive tool override; defaults to the one selected in the packer options
            signer: Signer override; defaults to one over the configured keys directory
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.config = config
        self.max_workers = max_workers
        self.registry = registry or plugin_registry
        self.state = PipelineState()
        self._state_lock = threading.Lock()
        self.logger = self._setup_logging()

        self.packer = ArchivePacker(
            config.packer,
            staging_root=config.addons_build_dir,
            output_dir=config.archives_dir,
            tool=tool,
        )
        self.signer = signer or Signer(config.signing.keys_path)

    def _setup_logging(self) -> logging.Logger:
        """Set up logging for the pipeline."""
        logger = logging.getLogger("addon_pipeline")
        logger.setLevel(logging.INFO)

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def resolve_plugins(self) -> List[Plugin]:
        """
        Instantiate every enabled plugin.

        Raises:
            ConfigurationError: Listing every unknown plugin and invalid settings block
        """
        plugins = []
        errors = []

        for name in self.config.plugins:
            try:
                plugins.append(self.registry.create_plugin(name, self.config))
            except ConfigurationError as e:
                errors.append(str(e))
            except (TypeError, ValueError) as e:
                errors.append(f"settings.{name}: {e}")

        if errors:
            raise ConfigurationError(f"Cannot resolve plugins: {'; '.join(errors)}", errors)

        return plugins

    def generate(self) -> List[AddonDefinition]:
        """
        Run every enabled plugin and return their addon definitions.

        Returns:
            Addon definitions in configuration order

        Raises:
            ConfigurationError: If plugins cannot be resolved; no plugin has run
            PipelineError: If a plugin fails; remaining plugins are not started
            AddonCollisionError: If two addons share a name
        """
        plugins = self.resolve_plugins()

        self.state = PipelineState(status=PipelineStatus.RUNNING, total_plugins=len(plugins))
        self.state.start_time = time.time()
        self.logger.info(f"Starting addon pipeline for '{self.config.name}' ({len(plugins)} plugins)")

        try:
            if self.max_workers > 1 and len(plugins) > 1:
                addons = self._generate_parallel(plugins)
            else:
                addons = [self._run_plugin(index, plugin) for index, plugin in enumerate(plugins, 1)]

            self.check_collisions(addons)
        except (PipelineError, AddonCollisionError) as e:
            self.state.status = PipelineStatus.FAILED
            self.state.error = e
            if isinstance(e, PipelineError):
                self.state.failed_plugin = e.plugin
            self._generate_execution_summary()
            raise

        self.state.current_plugin = None
        self.state.status = PipelineStatus.SUCCEEDED
        return addons

    def _generate_parallel(self, plugins: List[Plugin]) -> List[AddonDefinition]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._run_plugin, index, plugin)
                for index, plugin in enumerate(plugins, 1)
            ]

            addons = []
            for future in futures:
                try:
                    addons.append(future.result())
                except PipelineError:
                    for pending in futures:
                        pending.cancel()
                    raise

        return addons

    def _run_plugin(self, index: int, plugin: Plugin) -> AddonDefinition:
        """
        Execute a single plugin with error handling and timing.

        Args:
            index: 1-based position of the plugin in the configuration
            plugin: Plugin to run
        """
        with self._state_lock:
            self.state.current_plugin = plugin.name
            self.state.current_index = index
        self.logger.info(f"Running plugin {index}/{self.state.total_plugins}: {plugin.name}")

        context = BuildContext.for_plugin(self.config, plugin.name)
        start_time = time.time()

        try:
            addon = plugin.build(context)
        except Exception as e:
            duration = time.time() - start_time
            with self._state_lock:
                self.state.plugin_results[plugin.name] = PluginResult(
                    plugin=plugin.name,
                    success=False,
                    duration=duration,
                    message=f"Plugin {plugin.name} failed: {e}",
                    errors=[str(e)],
                )
            self.logger.error(f"Plugin {plugin.name} failed after {duration:.2f}s: {e}")
            raise PipelineError(f"Plugin '{plugin.name}' failed: {e}", plugin=plugin.name, cause=e) from e

        duration = time.time() - start_time
        with self._state_lock:
            self.state.plugin_results[plugin.name] = PluginResult(
                plugin=plugin.name,
                success=True,
                duration=duration,
                message=f"Addon {addon.name}: {len(addon.generated)} generated, {len(addon.copies)} copied",
                addon=addon,
                warnings=list(addon.warnings),
            )
        self.logger.info(f"Plugin {plugin.name} completed in {duration:.2f}s")
        return addon

    def check_collisions(self, addons: List[AddonDefinition]) -> None:
        """
        Ensure no two addons resolve to the same archive.

        Raises:
            AddonCollisionError: If two addons share a name
        """
        seen: Dict[str, AddonDefinition] = {}
        for addon in addons:
            archive_name = addon.archive_name(self.config.prefix)
            if archive_name in seen:
                destination = str(self.config.archives_dir / f"{archive_name}.{self.config.packer.archive_extension}")
                raise AddonCollisionError(addon.name, destination)
            seen[archive_name] = addon

    def package(self, addon: AddonDefinition, keypair: Keypair) -> ReleaseArchive:
        """
        Pack, sign and verify one addon.

        Raises:
            PackingError: If the addon cannot be packed
            SigningError: If the archive cannot be signed
            PipelineError: If the fresh signature does not verify
        """
        archive_path = self.packer.archive_path(addon, self.config.prefix)
        stale = [archive_path, signature_path(archive_path, keypair.name)]
        self._discard(stale[1:])

        try:
            archive = self.packer.pack(addon, self.config.prefix)
            signature = self.signer.sign(archive.path, keypair)

            verified = self.signer.verify(archive.path, signature, keypair.public_key)
            if not verified:
                raise PipelineError(
                    f"Signature {signature.path.name} does not verify against {archive.path.name}",
                    addon=addon.name,
                )
        except Exception:
            # No unsigned or unverified archive may remain in the release folder
            self._discard(stale)
            raise

        return ReleaseArchive(addon=addon.name, archive=archive, signature=signature, verified=verified)

    def build(self) -> BuildReport:
        """
        Run the full pipeline: generate, pack, sign and verify every addon.

        Every addon is attempted; packing and signing failures are collected and
        reported together once all addons were processed.

        Returns:
            Build report with release-ready archives in configuration order

        Raises:
            ConfigurationError: If plugins cannot be resolved
            PipelineError: If a plugin, the signing key or any addon stage fails
            AddonCollisionError: If two addons share a name
        """
        addons = self.generate()
        self.state.status = PipelineStatus.RUNNING

        try:
            keypair = self.signer.load(self.config.key_name)
        except Exception as e:
            self._fail(e)
            raise PipelineError(f"Cannot load signing key '{self.config.key_name}': {e}", cause=e) from e

        outcomes = self._package_all(addons, keypair)

        failures = [(addon.name, outcome) for addon, outcome in zip(addons, outcomes)
                    if isinstance(outcome, Exception)]
        if failures:
            for addon_name, error in failures:
                self.logger.error(f"Addon {addon_name} failed: {error}")
            summary = "; ".join(f"{addon_name}: {error}" for addon_name, error in failures)
            error = PipelineError(
                f"{len(failures)} of {len(addons)} addons failed: {summary}",
                addon=failures[0][0],
                cause=failures[0][1],
                failures=failures,
            )
            self._fail(error)
            raise error

        report = BuildReport(
            addons=addons,
            archives=list(outcomes),
            warnings=[warning for addon in addons for warning in addon.warnings],
        )
        self.state.status = PipelineStatus.SUCCEEDED
        self._generate_execution_summary(report)
        return report

    def _package_all(self, addons: List[AddonDefinition], keypair: Keypair) -> List[Any]:
        """Package every addon, returning a ReleaseArchive or the raised exception per addon."""
        def attempt(addon: AddonDefinition):
            try:
                return self.package(addon, keypair)
            except Exception as e:
                return e

        if self.max_workers > 1 and len(addons) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                return list(executor.map(attempt, addons))

        return [attempt(addon) for addon in addons]

    def _discard(self, paths: List[Path]) -> None:
        for path in paths:
            try:
                if path.exists():
                    path.unlink()
                    self.logger.debug(f"Removed stale {path.name}")
            except OSError as e:
                self.logger.warning(f"Could not remove stale {path}: {e}")

    def _fail(self, error: BaseException) -> None:
        self.state.status = PipelineStatus.FAILED
        self.state.error = error
        self._generate_execution_summary()

    def _generate_execution_summary(self, report: Optional[BuildReport] = None):
        """Generate and log execution summary."""
        total_duration = time.time() - (self.state.start_time or time.time())
        succeeded = [r for r in self.state.plugin_results.values() if r.success]
        failed = [r for r in self.state.plugin_results.values() if not r.success]

        self.logger.info("=" * 60)
        self.logger.info("ADDON PIPELINE SUMMARY")
        self.logger.info("=" * 60)
        self.logger.info(f"Status: {self.state.status.value}")
        self.logger.info(f"Total execution time: {total_duration:.2f}s")
        self.logger.info(f"Plugins completed: {len(succeeded)}/{self.state.total_plugins}")
        self.logger.info(f"Plugins failed: {len(failed)}")

        if failed:
            self.logger.info("Failed plugins:")
            for result in failed:
                self.logger.info(f"  - {result.plugin}: {result.message}")

        for result in self.state.plugin_results.values():
            for warning in result.warnings:
                self.logger.warning(f"  ! {result.plugin}: {warning}")

        if report is not None:
            self.logger.info("Release archives:")
            for release in report.archives:
                self.logger.info(f"  ✓ {Path(release.archive.path).name} ({release.signature.path.name})")

        self.logger.info("=" * 60)
