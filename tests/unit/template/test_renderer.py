"""Tests for agentpack.template.renderer."""

from __future__ import annotations

from pathlib import Path

import pytest

from agentpack.core.config import ToolSpec
from agentpack.directives.parser import parse_directives
from agentpack.directives.scheduler import ExecutionOptions
from agentpack.errors import AgentpackError, DirectiveExecutionError, DirectiveParseError, ErrorCode
from agentpack.template.renderer import (
    copy_literal_file,
    is_templated,
    render_template_file,
    render_template_text,
    strip_template_suffix,
    substitute_directives,
)


@pytest.fixture()
def execution(tmp_path: Path, claude_spec: ToolSpec, fake_prompt, fake_tool) -> ExecutionOptions:
    return ExecutionOptions(
        project_dir=tmp_path,
        package_dir=tmp_path,
        current_tool=claude_spec,
        template="demo:CLAUDE.md.j2",
        prompt_user=fake_prompt,
        invoke_tool=fake_tool,
    )


class TestWorkedExample:
    def test_answer_and_bound_json_result(self, execution: ExecutionOptions, fake_prompt, fake_tool) -> None:
        text = "User: {{ ask('Name?') }} / {{ var s = delegate('Summarize', {expectJson:true}) }} {{ vars.s.result }}"

        rendered = render_template_text(text, {}, execution)

        assert rendered.output == "User: Alice / ok"
        assert len(fake_prompt.calls) == 1
        assert len(fake_tool.requests) == 1
        assert rendered.context.vars["s"] == {"result": "ok"}


class TestSubstitution:
    def test_bound_directive_alone_on_line_leaves_no_blank_line(self, execution: ExecutionOptions) -> None:
        text = "# Title\n  {{ var who = ask('Name?') }}\nOwner: {{ vars.who }}\n"
        assert render_template_text(text, {}, execution).output == "# Title\nOwner: Alice\n"

    def test_bound_directive_with_trim_markers(self, execution: ExecutionOptions) -> None:
        text = "A\n\n{{~ var who = ask('Name?') ~}}\n\nB={{ vars.who }}"
        assert render_template_text(text, {}, execution).output == "AB=Alice"

    @pytest.mark.parametrize("marker", ["-", "~"])
    def test_unbound_directive_with_trim_markers(self, execution: ExecutionOptions, marker: str) -> None:
        text = f"[ \n {{{{{marker} ask('Name?') {marker}}}}} \n ]"
        assert render_template_text(text, {}, execution).output == "[Alice]"

    def test_placeholder_uses_directive_id(self) -> None:
        directives = parse_directives("Hi {{ ask('Name?') }}!")
        assert substitute_directives("Hi {{ ask('Name?') }}!", directives) == (
            f'Hi {{{{ snippets["{directives[0].id}"] }}}}!'
        )

    def test_resolved_values_are_not_evaluated(
        self, tmp_path: Path, claude_spec: ToolSpec, make_tool
    ) -> None:
        tool = make_tool(lambda request: {"result": "{{ 7 * 7 }} and {% raw %}"})
        execution = ExecutionOptions(project_dir=tmp_path, package_dir=tmp_path, current_tool=claude_spec, invoke_tool=tool)

        output = render_template_text("Value: {{ delegate('Emit braces') }}", {}, execution).output

        assert output == "Value: {{ 7 * 7 }} and {% raw %}"


class TestContextValues:
    def test_value_formatting(self, execution: ExecutionOptions) -> None:
        context = {"flag": True, "data": {"a": 1}, "items": ["x"], "nothing": None}
        text = "{{ flag }}|{{ data }}|{{ items }}|[{{ nothing }}]|[{{ missing.deep.name }}]"
        assert render_template_text(text, context, execution).output == 'true|{"a": 1}|["x"]|[]|[]'

    def test_base_context_and_conditionals(self, execution: ExecutionOptions) -> None:
        text = "{% if pkg.name %}{{ pkg.name }}@{{ pkg.version }}{% endif %}"
        context = {"pkg": {"name": "@acme/rules", "version": "1.0.0"}}
        assert render_template_text(text, context, execution).output == "@acme/rules@1.0.0"

    def test_trailing_newline_is_kept(self, execution: ExecutionOptions) -> None:
        assert render_template_text("line\n", {}, execution).output == "line\n"


class TestErrors:
    def test_parse_error_names_template(self, execution: ExecutionOptions, fake_tool) -> None:
        with pytest.raises(DirectiveParseError, match=r"^demo:CLAUDE\.md\.j2: "):
            render_template_text("{{ delegate('ok') }} {{ ask(name) }}", {}, execution, name="demo:CLAUDE.md.j2")
        assert fake_tool.requests == []

    def test_jinja_syntax_error(self, execution: ExecutionOptions) -> None:
        with pytest.raises(AgentpackError) as excinfo:
            render_template_text("{% if %}", {}, execution, name="demo:X.j2")
        assert excinfo.value.code == ErrorCode.TEMPLATE_RENDER_FAILED

    def test_syntax_error_fails_before_directives_run(
        self, execution: ExecutionOptions, fake_prompt, fake_tool
    ) -> None:
        text = "{{ ask('Name?') }}\n{{ delegate('Summarize') }}\n{% for x in %}"
        with pytest.raises(AgentpackError) as excinfo:
            render_template_text(text, {}, execution, name="demo:X.j2")
        assert excinfo.value.code == ErrorCode.TEMPLATE_RENDER_FAILED
        assert fake_prompt.calls == []
        assert fake_tool.requests == []

    def test_directive_failure_propagates(self, tmp_path: Path, claude_spec: ToolSpec, failing_tool) -> None:
        execution = ExecutionOptions(
            project_dir=tmp_path, package_dir=tmp_path, current_tool=claude_spec, invoke_tool=failing_tool
        )
        with pytest.raises(DirectiveExecutionError):
            render_template_text("{{ delegate('Summarize') }}", {}, execution)


class TestFiles:
    def test_suffix_helpers(self) -> None:
        assert is_templated("commands/run.md.j2")
        assert not is_templated("commands/run.md")
        assert strip_template_suffix("CLAUDE.md.j2") == "CLAUDE.md"
        assert strip_template_suffix("mcp.json") == "mcp.json"

    def test_render_template_file(self, tmp_path: Path, execution: ExecutionOptions) -> None:
        source = tmp_path / "CLAUDE.md.j2"
        source.write_text("Hello {{ ask('Name?') }}\n", encoding="utf-8")
        assert render_template_file(source, {}, execution).output == "Hello Alice\n"

    def test_literal_copy_is_byte_identical(self, tmp_path: Path) -> None:
        source = tmp_path / "src" / "AGENTS.md"
        source.parent.mkdir()
        payload = b"Literal {{ ask('never') }}\r\n\xe2\x9c\x93"
        source.write_bytes(payload)
        dest = tmp_path / "out" / "nested" / "AGENTS.md"

        copy_literal_file(source, dest)

        assert dest.read_bytes() == payload
