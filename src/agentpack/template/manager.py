"""Render installed agent packages into a project.

``plan_and_render`` is the entry point. For every installed package it
collects the files the package exports, resolves where each one goes under
the package's own output directory, checks that the write cannot escape the
project, and then either copies the file (literal) or renders it with its
directives (``.j2`` templates).
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from agentpack.core.config import RenderConfiguration, RenderOverrides, setup_render_configuration
from agentpack.core.destinations import (
    SKIP_REASON_MESSAGES,
    SkipReason,
    evaluate_destination_safety,
    is_within,
)
from agentpack.core.lockfile import ContentStore, Lockfile, read_lockfile
from agentpack.core.manifest import ProjectManifest, read_manifest
from agentpack.directives.cache import CACHE_FILENAME, ResultCache
from agentpack.directives.models import Directive, ExecutionContext
from agentpack.directives.scheduler import ExecutionOptions, ExecutionSession
from agentpack.errors import AgentpackError, ErrorCode, SecurityViolation
from agentpack.prompting import PromptUser, prompt_user
from agentpack.reporting import ProgressReporter, TemplateStarted
from agentpack.runtime.home import get_agentpack_home, get_store_dir
from agentpack.template.exports import SUPPORTED_TOOLS, ExportItem, collect_from_exports
from agentpack.template.renderer import (
    copy_literal_file,
    is_templated,
    render_template_file,
    strip_template_suffix,
)
from agentpack.tools.runner import ToolInvoker, invoke_tool

logger = logging.getLogger(__name__)

BACKUP_DIRNAME = ".agentpack-backup"
FALLBACK_PACKAGE_VERSION = "0.0.0"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RenderOptions:
    """Options for :func:`plan_and_render`.

    Attributes:
        force: Overwrite existing destinations (after backing them up).
        dry_run: Run directives but write nothing.
        package_name: Render only this package.
        profile_name: Render only the packages of this manifest profile.
        tool: Primary tool override (claude or codex).
        tool_safe_mode: Safe mode override for agent CLIs.
        no_cache: Neither read nor write the result cache.
        cache_path: Cache file location (default ``<project>/agents-cache.toml``).
        store_dir: Content store root (default ``<home>/store``).
        local_package_paths: Package name to local source directory.
        home: agentpack home directory (default from ``environ``).
        environ: Environment for config lookup, templates and agent CLIs.
    """

    force: bool = False
    dry_run: bool = False
    package_name: Optional[str] = None
    profile_name: Optional[str] = None
    tool: Optional[str] = None
    tool_safe_mode: Optional[bool] = None
    no_cache: bool = False
    cache_path: Optional[Path] = None
    store_dir: Optional[Path] = None
    local_package_paths: dict[str, Path] = field(default_factory=dict)
    home: Optional[Path] = None
    environ: Optional[Mapping[str, str]] = None
    reporter: Optional[ProgressReporter] = None
    prompt_user: PromptUser = prompt_user
    invoke_tool: ToolInvoker = invoke_tool
    clock: Callable[[], datetime] = _utc_now


@dataclass(frozen=True)
class SkippedFile:
    dest: Path
    code: SkipReason
    reason: str


@dataclass(frozen=True)
class RenderedFileMetadata:
    """A file the package produced (or would have), for per-tool exposure."""

    package_name: str
    source: Path
    dest: Path
    tool: str
    is_mcp_config: bool


@dataclass
class DirectiveTrace:
    source: Path
    dest: Path
    output: str
    directives: list[Directive]
    context: ExecutionContext


@dataclass
class RenderResult:
    written: list[Path] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)
    backed_up: list[Path] = field(default_factory=list)
    directive_traces: list[DirectiveTrace] = field(default_factory=list)
    package_files: dict[str, list[Path]] = field(default_factory=dict)
    rendered_files: list[RenderedFileMetadata] = field(default_factory=list)

    def skip(self, dest: Path, code: SkipReason) -> None:
        self.skipped.append(SkippedFile(dest=dest, code=code, reason=SKIP_REASON_MESSAGES[code]))


@dataclass(frozen=True)
class DiscoveredPackage:
    name: str
    root: Path  # output directory under the modules root
    store_path: Path  # read-only package contents


class BackupManager:
    """Copy files aside before they are overwritten.

    Backups go to ``<project>/.agentpack-backup/<timestamp>/<relative path>``.
    Each target is backed up at most once per manager.
    """

    def __init__(
        self,
        project_root: Path,
        dry_run: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.project_root = Path(project_root)
        self.dry_run = dry_run
        self.clock = clock
        self._backup_root: Optional[Path] = None
        self._targets: set[Path] = set()
        self._backed_up: list[Path] = []

    @property
    def backed_up_paths(self) -> list[Path]:
        """Backup file paths relative to the project root."""
        return list(self._backed_up)

    def backup_file(self, target: Path) -> None:
        if self.dry_run:
            return
        target = Path(os.path.abspath(target))
        if target in self._targets:
            return
        if not (target.is_file() or target.is_symlink()):
            return

        if self._backup_root is None:
            stamp = self.clock().isoformat().replace(":", "-").replace(".", "-").replace("+", "_")
            self._backup_root = self.project_root / BACKUP_DIRNAME / stamp

        relative = Path(os.path.relpath(target, self.project_root))
        backup_path = self._backup_root / relative
        try:
            backup_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(target, backup_path)
        except OSError as exc:
            logger.warning("Failed to back up %s: %s", target, exc)
            return

        self._targets.add(target)
        self._backed_up.append(Path(os.path.relpath(backup_path, self.project_root)))


def discover_installed_packages(
    modules_root: Path,
    lockfile: Optional[Lockfile],
    store: ContentStore,
    local_overrides: Optional[Mapping[str, Path]] = None,
) -> list[DiscoveredPackage]:
    """List packages under *modules_root* that are tracked or overridden.

    Scoped packages live at ``@scope/name``, others at ``name``. A directory
    with neither a lockfile entry nor a local override is left out.
    """
    overrides = dict(local_overrides or {})
    modules_root = Path(modules_root)
    if not modules_root.is_dir():
        return []

    candidates: list[tuple[str, Path]] = []
    for first in sorted(modules_root.iterdir()):
        if not first.is_dir():
            continue
        if first.name.startswith("@"):
            for second in sorted(first.iterdir()):
                if second.is_dir():
                    candidates.append((f"{first.name}/{second.name}", second))
        else:
            candidates.append((first.name, first))

    packages: list[DiscoveredPackage] = []
    for name, root in candidates:
        if name in overrides:
            packages.append(DiscoveredPackage(name=name, root=root, store_path=Path(overrides[name])))
            continue
        locked = lockfile.get(name) if lockfile is not None else None
        if locked is None:
            logger.debug("Skipping %s: not in lockfile", name)
            continue
        packages.append(
            DiscoveredPackage(name=name, root=root, store_path=store.package_path(name, locked.version))
        )

    return sorted(packages, key=lambda p: p.name)


def filter_packages_by_options(
    packages: list[DiscoveredPackage],
    manifest: Optional[ProjectManifest],
    package_name: Optional[str] = None,
    profile_name: Optional[str] = None,
) -> list[DiscoveredPackage]:
    """Narrow *packages* to one package or to a manifest profile.

    Raises:
        AgentpackError: CONFIG_NOT_FOUND without a manifest for a profile, or
            INVALID_ARGUMENT for an undefined, empty or unsatisfiable profile.
    """
    if package_name:
        return [p for p in packages if p.name == package_name]

    if not profile_name:
        return list(packages)

    if manifest is None:
        raise AgentpackError(
            "agents.toml is required when selecting a profile", ErrorCode.CONFIG_NOT_FOUND
        )
    members = manifest.profiles.get(profile_name) or []
    if not members:
        raise AgentpackError(
            f"Profile '{profile_name}' is not defined or has no packages",
            ErrorCode.INVALID_ARGUMENT,
        )
    discovered = {p.name for p in packages}
    missing = [name for name in members if name not in discovered]
    if missing:
        raise AgentpackError(
            f"Profile '{profile_name}' references packages that are not installed: {', '.join(missing)}",
            ErrorCode.INVALID_ARGUMENT,
            {"missing": missing},
        )
    allowed = set(members)
    return [p for p in packages if p.name in allowed]


def plan_and_render(
    project_root: Path,
    modules_root: Path,
    options: Optional[RenderOptions] = None,
) -> RenderResult:
    """Render every selected installed package.

    Raises:
        DirectiveParseError: A template has malformed directives.
        DirectiveExecutionError: Directives of a template failed. Files
            written before the failing template stay on disk.
        ConfigError: Configuration, manifest or lockfile is invalid.
    """
    options = options or RenderOptions()
    project_root = Path(os.path.abspath(project_root))
    modules_root = Path(os.path.abspath(modules_root))
    environ = dict(os.environ) if options.environ is None else dict(options.environ)
    home = options.home if options.home is not None else get_agentpack_home(environ)

    config = setup_render_configuration(
        project_root,
        RenderOverrides(tool=options.tool, tool_safe_mode=options.tool_safe_mode),
        home=home,
        environ=environ,
    )

    store = ContentStore(options.store_dir if options.store_dir is not None else get_store_dir(home))
    packages = discover_installed_packages(
        modules_root, read_lockfile(project_root), store, options.local_package_paths
    )
    project_manifest = read_manifest(project_root)
    selected = filter_packages_by_options(
        packages, project_manifest, options.package_name, options.profile_name
    )

    cache: Optional[ResultCache] = None
    if not options.no_cache:
        cache = ResultCache(options.cache_path or project_root / CACHE_FILENAME, clock=options.clock)
        cache.load()
        removed = cache.prune(p.name for p in packages)
        if removed:
            logger.debug("Pruned cache entries for %s", ", ".join(removed))

    result = RenderResult()
    backups = BackupManager(project_root, dry_run=options.dry_run, clock=options.clock)
    session = ExecutionSession()

    for package in selected:
        _render_package(
            package,
            project_root=project_root,
            project_manifest=project_manifest,
            config=config,
            options=options,
            environ=environ,
            cache=cache,
            backups=backups,
            session=session,
            result=result,
        )

    result.backed_up = backups.backed_up_paths
    return result


def _render_package(
    package: DiscoveredPackage,
    *,
    project_root: Path,
    project_manifest: Optional[ProjectManifest],
    config: RenderConfiguration,
    options: RenderOptions,
    environ: dict[str, str],
    cache: Optional[ResultCache],
    backups: BackupManager,
    session: ExecutionSession,
    result: RenderResult,
) -> None:
    manifest = read_manifest(package.store_path)
    exports = manifest.exports if manifest is not None else {}

    items: list[ExportItem] = []
    for tool in SUPPORTED_TOOLS:
        collection = collect_from_exports(package.store_path, tool, exports.get(tool))
        for escaped in collection.escaped:
            result.skip(escaped, SkipReason.EXPORT_OUTSIDE_TEMPLATES)
        items.extend(collection.items)

    unique: dict[Path, ExportItem] = {}
    for item in items:
        if item.source in unique:
            logger.debug("Skipping duplicate template %s (%s)", item.source, item.tool)
            continue
        logger.debug("Collecting template %s (%s)", item.source, item.tool)
        unique[item.source] = item

    package_version = (
        manifest.package.version if manifest is not None and manifest.package.version else FALLBACK_PACKAGE_VERSION
    )
    base_context: dict[str, Any] = {
        "project": {
            "root": str(project_root),
            "name": project_manifest.package.name if project_manifest else None,
            "version": project_manifest.package.version if project_manifest else None,
        },
        "pkg": {
            "name": manifest.package.name if manifest else None,
            "version": manifest.package.version if manifest else None,
        },
        "env": environ,
        "now": options.clock().isoformat(),
        "files": dict(config.files_map),
    }

    for item in unique.values():
        dest = _destination_for(package.root, item.rel)
        safety = evaluate_destination_safety(project_root, dest)
        if safety.reason is not None:
            result.skip(dest, safety.reason)
            continue

        metadata = RenderedFileMetadata(
            package_name=package.name,
            source=dest,
            dest=dest,
            tool=item.tool,
            is_mcp_config=item.is_mcp_config,
        )
        exists = dest.is_file() and not dest.is_symlink()
        if exists and not options.force:
            result.skip(dest, SkipReason.EXISTS)
            result.rendered_files.append(metadata)
            continue

        if options.reporter is not None:
            options.reporter.emit(TemplateStarted(package.name, item.rel))

        output: Optional[str] = None
        if is_templated(item.rel):
            execution = ExecutionOptions(
                project_dir=project_root,
                package_dir=package.store_path,
                current_tool=config.primary_tool,
                available_tools=list(config.profile_tools),
                tool_safe_mode=config.tool_safe_mode,
                template=f"{package.name}:{item.rel}",
                prompt_user=options.prompt_user,
                invoke_tool=options.invoke_tool,
                reporter=options.reporter,
                cache=cache,
                package_name=package.name,
                package_version=package_version,
                base_context=base_context,
                environ=environ,
                session=session,
            )
            rendered = render_template_file(item.source, base_context, execution, name=execution.template)
            output = rendered.output
            result.directive_traces.append(
                DirectiveTrace(
                    source=item.source,
                    dest=dest,
                    output=rendered.output,
                    directives=rendered.directives,
                    context=rendered.context,
                )
            )

        if not options.dry_run:
            if dest.exists() or dest.is_symlink():
                backups.backup_file(dest)
            if safety.unlink_dest_symlink:
                try:
                    dest.unlink()
                except OSError as exc:
                    logger.warning("Failed to unlink symlink %s: %s", dest, exc)
                    result.skip(dest, SkipReason.UNLINK_FAILED)
                    continue
            if output is None:
                copy_literal_file(item.source, dest)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_text(output, encoding="utf-8")

        result.written.append(dest)
        result.rendered_files.append(metadata)
        result.package_files.setdefault(package.name, []).append(dest)


def _destination_for(package_root: Path, rel: str) -> Path:
    dest = Path(os.path.abspath(package_root / strip_template_suffix(rel)))
    if not is_within(package_root, dest):
        raise SecurityViolation(f"Template path escapes package output directory: {rel}", {"rel": rel})
    return dest


__all__ = [
    "BACKUP_DIRNAME",
    "BackupManager",
    "DirectiveTrace",
    "DiscoveredPackage",
    "RenderOptions",
    "RenderResult",
    "RenderedFileMetadata",
    "SkippedFile",
    "discover_installed_packages",
    "filter_packages_by_options",
    "plan_and_render",
]
