"""Tests for agentpack.template.manager -- end-to-end package rendering.

Each test builds a small project on disk:

    project/
      agents-lock.toml
      agent_modules/@acme/rules/        (output directory)
    store/@acme/rules/1.0.0/            (package contents)
      agents.toml
      templates/...
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pytest

from agentpack.core.destinations import SkipReason
from agentpack.core.lockfile import ContentStore, read_lockfile
from agentpack.core.manifest import ProjectManifest
from agentpack.directives.cache import ResultCache
from agentpack.directives.models import PackageCache
from agentpack.errors import AgentpackError, DirectiveExecutionError, DirectiveParseError, ErrorCode
from agentpack.template.manager import (
    BACKUP_DIRNAME,
    BackupManager,
    DiscoveredPackage,
    RenderOptions,
    discover_installed_packages,
    filter_packages_by_options,
    plan_and_render,
)

FIXED_NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)

PACKAGE = "@acme/rules"

PACKAGE_MANIFEST = """\
[package]
name = "@acme/rules"
version = "1.0.0"

[exports.claude]
template = "templates/CLAUDE.md.j2"
commandsDir = "templates/commands"
mcpServers = "templates/mcp.json"

[exports.codex]
template = "templates/AGENTS.md"
"""

CLAUDE_TEMPLATE = (
    "User: {{ ask('Name?') }} / {{ var s = delegate('Summarize', {expectJson:true}) }} {{ vars.s.result }}\n"
    "Package {{ pkg.name }} {{ pkg.version }}\n"
)
LITERAL_TEMPLATE = "Literal {{ ask('Never asked?') }}\n"


@dataclass
class Workspace:
    project: Path
    modules: Path
    store: Path
    home: Path
    package_store: Path

    @property
    def output(self) -> Path:
        return self.modules / "@acme" / "rules"

    def template(self, rel: str) -> Path:
        return self.package_store / "templates" / rel


@pytest.fixture()
def workspace(tmp_path: Path) -> Workspace:
    project = tmp_path / "project"
    modules = project / "agent_modules"
    store = tmp_path / "store"
    home = tmp_path / "home"
    package_store = store / "@acme" / "rules" / "1.0.0"

    (modules / "@acme" / "rules").mkdir(parents=True)
    home.mkdir()
    (package_store / "templates" / "commands").mkdir(parents=True)

    (project / "agents-lock.toml").write_text(
        '[packages."@acme/rules"]\nversion = "1.0.0"\n', encoding="utf-8"
    )
    (package_store / "agents.toml").write_text(PACKAGE_MANIFEST, encoding="utf-8")
    (package_store / "templates" / "CLAUDE.md.j2").write_text(CLAUDE_TEMPLATE, encoding="utf-8")
    (package_store / "templates" / "AGENTS.md").write_text(LITERAL_TEMPLATE, encoding="utf-8")
    (package_store / "templates" / "commands" / "run.md").write_text("run\n", encoding="utf-8")
    (package_store / "templates" / "mcp.json").write_text("{}\n", encoding="utf-8")

    return Workspace(project=project, modules=modules, store=store, home=home, package_store=package_store)


def _options(workspace: Workspace, prompt, tool, **kwargs) -> RenderOptions:
    return RenderOptions(
        home=workspace.home,
        store_dir=workspace.store,
        environ={},
        prompt_user=prompt,
        invoke_tool=tool,
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


class TestPlanAndRender:
    def test_renders_templates_and_copies_literals(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        out = workspace.output
        assert (out / "CLAUDE.md").read_text(encoding="utf-8") == "User: Alice / ok\nPackage @acme/rules 1.0.0\n"
        assert (out / "AGENTS.md").read_text(encoding="utf-8") == LITERAL_TEMPLATE
        assert (out / "commands" / "run.md").read_text(encoding="utf-8") == "run\n"
        assert sorted(result.written) == sorted(
            [out / "CLAUDE.md", out / "AGENTS.md", out / "commands" / "run.md", out / "mcp.json"]
        )
        assert result.skipped == []
        assert result.package_files[PACKAGE] == result.written

    def test_literal_files_never_run_directives(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        assert [call[0] for call in fake_prompt.calls] == ["Name?"]
        assert len(fake_tool.requests) == 1

    def test_metadata_records_tool_and_mcp_flag(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        by_name = {meta.dest.name: meta for meta in result.rendered_files}
        assert by_name["mcp.json"].is_mcp_config
        assert by_name["mcp.json"].tool == "claude"
        assert by_name["AGENTS.md"].tool == "codex"
        assert not by_name["CLAUDE.md"].is_mcp_config

    def test_trace_records_directives(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        [trace] = result.directive_traces
        assert trace.dest == workspace.output / "CLAUDE.md"
        assert len(trace.directives) == 2
        assert trace.context.vars == {"s": {"result": "ok"}}

    def test_reporter_sees_template_and_analysis(
        self, workspace: Workspace, fake_prompt, fake_tool, reporter
    ) -> None:
        plan_and_render(
            workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool, reporter=reporter)
        )
        assert reporter.names().count("TemplateStarted") == 4
        assert reporter.names().count("AnalysisNotice") == 1


class TestOverwritePolicy:
    def test_existing_file_is_skipped_but_listed(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        dest = workspace.output / "CLAUDE.md"
        dest.write_text("hand edited\n", encoding="utf-8")

        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        assert dest.read_text(encoding="utf-8") == "hand edited\n"
        assert [(s.dest, s.code) for s in result.skipped] == [(dest, SkipReason.EXISTS)]
        assert dest in {meta.dest for meta in result.rendered_files}
        assert dest not in result.written
        assert fake_tool.requests == []

    def test_force_backs_up_once(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        dest = workspace.output / "CLAUDE.md"
        dest.write_text("hand edited\n", encoding="utf-8")

        result = plan_and_render(
            workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool, force=True)
        )

        [backup] = result.backed_up
        assert backup.parts[0] == BACKUP_DIRNAME
        assert backup.parts[-4:] == ("agent_modules", "@acme", "rules", "CLAUDE.md")
        assert (workspace.project / backup).read_text(encoding="utf-8") == "hand edited\n"
        assert dest.read_text(encoding="utf-8").startswith("User: Alice")

    def test_dry_run_writes_nothing(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        result = plan_and_render(
            workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool, dry_run=True)
        )

        assert len(result.written) == 4
        assert not (workspace.output / "CLAUDE.md").exists()
        assert len(fake_tool.requests) == 1
        assert result.directive_traces[0].output.startswith("User: Alice / ok")


class TestSafety:
    def test_destination_symlink_outside_is_skipped(
        self, workspace: Workspace, tmp_path: Path, fake_prompt, fake_tool
    ) -> None:
        outside = tmp_path / "elsewhere.md"
        outside.write_text("keep me\n", encoding="utf-8")
        dest = workspace.output / "AGENTS.md"
        dest.symlink_to(outside)

        result = plan_and_render(
            workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool, force=True)
        )

        assert (dest, SkipReason.DEST_SYMLINK_OUTSIDE) in [(s.dest, s.code) for s in result.skipped]
        assert outside.read_text(encoding="utf-8") == "keep me\n"

    def test_destination_symlink_inside_is_replaced(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        target = workspace.project / "notes.md"
        target.write_text("notes\n", encoding="utf-8")
        dest = workspace.output / "AGENTS.md"
        dest.symlink_to(target)

        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        assert dest in result.written
        assert not dest.is_symlink()
        assert target.read_text(encoding="utf-8") == "notes\n"

    def test_export_outside_templates_is_skipped(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        manifest = workspace.package_store / "agents.toml"
        manifest.write_text(
            PACKAGE_MANIFEST + '\n[exports.gemini]\ntemplate = "templates/../agents.toml"\n', encoding="utf-8"
        )

        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        codes = [s.code for s in result.skipped]
        assert codes == [SkipReason.EXPORT_OUTSIDE_TEMPLATES]
        assert not (workspace.output / "agents.toml").exists()

    def test_symlink_cycle_in_directory_export(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        commands = workspace.template("commands")
        (commands / "loop").symlink_to(commands, target_is_directory=True)

        result = plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        assert workspace.output / "commands" / "run.md" in result.written


class TestCacheAndErrors:
    def test_second_render_is_byte_identical_from_cache(
        self, workspace: Workspace, fake_prompt, make_tool
    ) -> None:
        first_tool = make_tool()
        plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, first_tool))
        first_output = (workspace.output / "CLAUDE.md").read_bytes()

        second_prompt = type(fake_prompt)()
        second_tool = make_tool()
        plan_and_render(
            workspace.project,
            workspace.modules,
            _options(workspace, second_prompt, second_tool, force=True),
        )

        assert (workspace.output / "CLAUDE.md").read_bytes() == first_output
        assert second_prompt.calls == []
        assert second_tool.requests == []

    def test_no_cache_skips_cache_file(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        plan_and_render(
            workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool, no_cache=True)
        )
        assert not (workspace.project / "agents-cache.toml").exists()

    def test_custom_cache_path(self, workspace: Workspace, tmp_path: Path, fake_prompt, fake_tool) -> None:
        cache_path = tmp_path / "caches" / "render.toml"
        plan_and_render(
            workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool, cache_path=cache_path)
        )
        assert cache_path.exists()

    def test_stale_packages_are_pruned(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        cache_path = workspace.project / "agents-cache.toml"
        stale = ResultCache(cache_path)
        stale.load()
        stale.store.packages["gone"] = PackageCache(version="0.1.0")
        stale.save(stale.store)

        plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        reloaded = ResultCache(cache_path)
        assert list(reloaded.load().packages) == [PACKAGE]

    def test_directive_failure_aborts(self, workspace: Workspace, fake_prompt, failing_tool) -> None:
        with pytest.raises(DirectiveExecutionError) as excinfo:
            plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, failing_tool))

        assert excinfo.value.failures[0].template == f"{PACKAGE}:CLAUDE.md.j2"
        assert not (workspace.output / "CLAUDE.md").exists()

    def test_parse_error_aborts(self, workspace: Workspace, fake_prompt, fake_tool) -> None:
        workspace.template("CLAUDE.md.j2").write_text("{{ ask(unquoted) }}\n", encoding="utf-8")

        with pytest.raises(DirectiveParseError, match="CLAUDE.md.j2"):
            plan_and_render(workspace.project, workspace.modules, _options(workspace, fake_prompt, fake_tool))

        assert fake_prompt.calls == []


class TestDiscovery:
    def test_untracked_directories_are_ignored(self, workspace: Workspace) -> None:
        (workspace.modules / "stray").mkdir()

        packages = discover_installed_packages(
            workspace.modules, read_lockfile(workspace.project), ContentStore(workspace.store)
        )

        assert [p.name for p in packages] == [PACKAGE]
        assert packages[0].store_path == workspace.package_store
        assert packages[0].root == workspace.output

    def test_local_override_wins(self, workspace: Workspace, tmp_path: Path) -> None:
        (workspace.modules / "local-pkg").mkdir()
        source = tmp_path / "src" / "local-pkg"

        packages = discover_installed_packages(
            workspace.modules,
            read_lockfile(workspace.project),
            ContentStore(workspace.store),
            {"local-pkg": source},
        )

        assert [p.name for p in packages] == [PACKAGE, "local-pkg"]
        assert packages[1].store_path == source

    def test_missing_modules_root(self, tmp_path: Path) -> None:
        assert discover_installed_packages(tmp_path / "nope", None, ContentStore(tmp_path)) == []


class TestFiltering:
    @pytest.fixture()
    def packages(self, tmp_path: Path) -> list[DiscoveredPackage]:
        return [DiscoveredPackage(name=n, root=tmp_path / n, store_path=tmp_path / n) for n in ("a", "b", "c")]

    def test_package_name_wins(self, packages: list[DiscoveredPackage]) -> None:
        manifest = ProjectManifest(profiles={"p": ["a"]})
        selected = filter_packages_by_options(packages, manifest, package_name="b", profile_name="p")
        assert [p.name for p in selected] == ["b"]

    def test_profile_selects_members(self, packages: list[DiscoveredPackage]) -> None:
        manifest = ProjectManifest(profiles={"p": ["c", "a"]})
        assert [p.name for p in filter_packages_by_options(packages, manifest, profile_name="p")] == ["a", "c"]

    def test_profile_requires_manifest(self, packages: list[DiscoveredPackage]) -> None:
        with pytest.raises(AgentpackError) as excinfo:
            filter_packages_by_options(packages, None, profile_name="p")
        assert excinfo.value.code == ErrorCode.CONFIG_NOT_FOUND

    @pytest.mark.parametrize("profiles", [{}, {"p": []}, {"p": ["a", "zzz"]}])
    def test_bad_profiles(self, packages: list[DiscoveredPackage], profiles: dict) -> None:
        with pytest.raises(AgentpackError) as excinfo:
            filter_packages_by_options(packages, ProjectManifest(profiles=profiles), profile_name="p")
        assert excinfo.value.code == ErrorCode.INVALID_ARGUMENT


class TestBackupManager:
    def test_dry_run_does_not_copy(self, tmp_path: Path) -> None:
        target = tmp_path / "a.md"
        target.write_text("x", encoding="utf-8")
        manager = BackupManager(tmp_path, dry_run=True, clock=lambda: FIXED_NOW)

        manager.backup_file(target)

        assert manager.backed_up_paths == []
        assert not (tmp_path / BACKUP_DIRNAME).exists()

    def test_missing_target_is_ignored(self, tmp_path: Path) -> None:
        manager = BackupManager(tmp_path, clock=lambda: FIXED_NOW)
        manager.backup_file(tmp_path / "missing.md")
        assert manager.backed_up_paths == []
