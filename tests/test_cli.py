# =============================================================================
# test_cli.py - Command-Line Interface Tests
# =============================================================================
# Tests for the ffibridge command run through click's CliRunner.
#
# Test coverage includes:
#   - generate: per-language output, scaffolding flag, configuration file
#   - scaffolding and print-json
#   - metadata encode and metadata list
#   - Exit codes for generation errors, bad arguments and internal errors
# =============================================================================

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from ffibridge import __version__
from ffibridge.cli.errors import ExitCode
from ffibridge.cli.main import main
from ffibridge.pipeline import BindingsGenerator

from conftest import ARITHMETIC_IDL


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workdir(runner, monkeypatch):
    """An isolated directory holding arithmetic.idl."""
    monkeypatch.delenv("FFIBRIDGE_CONFIG", raising=False)
    with runner.isolated_filesystem():
        Path("arithmetic.idl").write_text(ARITHMETIC_IDL, encoding="utf-8")
        yield Path(".")


class TestGenerate:
    def test_python_bindings(self, runner, workdir):
        """Should write the module and summarize the outcome."""
        result = runner.invoke(main, ["generate", "arithmetic.idl", "-l", "python", "-o", "out", "--no-format"])
        assert result.exit_code == 0, result.output
        assert Path("out/python/arithmetic.py").is_file()
        assert "python: 1 file(s) in out" in result.output

    def test_several_languages_with_scaffolding(self, runner, workdir):
        result = runner.invoke(main, [
            "generate", "arithmetic.idl", "-l", "kotlin", "-l", "swift",
            "-o", "out", "--no-format", "--scaffolding",
        ])
        assert result.exit_code == 0, result.output
        assert Path("out/swift/arithmetic.swift").is_file()
        assert Path("out/kotlin/ffibridge/arithmetic/arithmetic.kt").is_file()
        assert Path("out/scaffolding/arithmetic_scaffolding.rs").is_file()

    def test_verbose_lists_files(self, runner, workdir):
        result = runner.invoke(main, ["-v", "generate", "arithmetic.idl", "-l", "python", "-o", "out", "--no-format"])
        assert result.exit_code == 0, result.output
        assert "arithmetic.py" in result.output

    def test_config_beside_source(self, runner, workdir):
        """ffibridge.yaml next to the source is picked up automatically."""
        Path("ffibridge.yaml").write_text("arithmetic:\n  namespace: arith\n", encoding="utf-8")
        result = runner.invoke(main, ["generate", "arithmetic.idl", "-l", "python", "-o", "out", "--no-format"])
        assert result.exit_code == 0, result.output
        assert Path("out/python/arith.py").is_file()

    def test_explicit_config(self, runner, workdir):
        Path("custom.yaml").write_text(
            "arithmetic:\n  bindings:\n    python:\n      out_dir: py\n", encoding="utf-8"
        )
        result = runner.invoke(main, [
            "generate", "arithmetic.idl", "-l", "python", "-o", "out", "--no-format", "-c", "custom.yaml",
        ])
        assert result.exit_code == 0, result.output
        assert Path("out/py/arithmetic.py").is_file()

    def test_failed_language(self, runner, workdir):
        """Ruby cannot express async functions; Python still succeeds."""
        result = runner.invoke(main, [
            "generate", "arithmetic.idl", "-l", "python", "-l", "ruby", "-o", "out", "--no-format",
        ])
        assert result.exit_code == ExitCode.GENERATION_ERROR
        assert "generation failed for 1 language(s)" in result.output
        assert Path("out/python/arithmetic.py").is_file()
        assert not Path("out/ruby").exists()


class TestOtherCommands:
    def test_scaffolding(self, runner, workdir):
        result = runner.invoke(main, ["scaffolding", "arithmetic.idl", "-o", "src", "--no-format"])
        assert result.exit_code == 0, result.output
        assert Path("src/arithmetic_scaffolding.rs").is_file()

    def test_print_json_stdout(self, runner, workdir):
        result = runner.invoke(main, ["print-json", "arithmetic.idl"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["namespace"] == "arithmetic"

    def test_print_json_file(self, runner, workdir):
        result = runner.invoke(main, ["print-json", "arithmetic.idl", "-o", "arithmetic.json"])
        assert result.exit_code == 0, result.output
        data = json.loads(Path("arithmetic.json").read_text(encoding="utf-8"))
        assert data["namespace"] == "arithmetic"

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestMetadataCommands:
    """encode writes a section blob; list finds it again."""

    def test_encode_then_list(self, runner, workdir):
        result = runner.invoke(main, ["metadata", "encode", "arithmetic.idl", "-o", "arithmetic.ffibmeta"])
        assert result.exit_code == 0, result.output
        assert "namespace 'arithmetic'" in result.output

        # Sections are found wherever they land in a library's bytes
        blob = Path("arithmetic.ffibmeta").read_bytes()
        Path("libarithmetic.so").write_bytes(b"\x7fELF" + bytes(64) + blob + bytes(16))

        result = runner.invoke(main, ["metadata", "list", "libarithmetic.so"])
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].split() == ["Namespace", "Kind", "Name"]
        assert ["arithmetic", "function", "add"] in [line.split() for line in lines[2:]]
        assert ["arithmetic", "object", "Counter"] in [line.split() for line in lines[2:]]

    def test_generate_from_library(self, runner, workdir):
        runner.invoke(main, ["metadata", "encode", "arithmetic.idl", "-o", "libarithmetic.so"])
        result = runner.invoke(main, [
            "generate", "libarithmetic.so", "--crate", "arithmetic", "-l", "python", "-o", "out", "--no-format",
        ])
        assert result.exit_code == 0, result.output
        assert Path("out/python/arithmetic.py").is_file()

    def test_list_without_metadata(self, runner, workdir):
        Path("libempty.so").write_bytes(bytes(128))
        result = runner.invoke(main, ["metadata", "list", "libempty.so"])
        assert result.exit_code == ExitCode.GENERATION_ERROR


class TestExitCodes:
    def test_syntax_error(self, runner, workdir):
        Path("broken.idl").write_text("namespace broken {\n    u32 add(u32 a,\n", encoding="utf-8")
        result = runner.invoke(main, ["generate", "broken.idl", "-l", "python", "--no-format"])
        assert result.exit_code == ExitCode.GENERATION_ERROR
        assert "error:" in result.output

    def test_missing_source(self, runner, workdir):
        result = runner.invoke(main, ["generate", "missing.idl", "-l", "python"])
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_unknown_language(self, runner, workdir):
        result = runner.invoke(main, ["generate", "arithmetic.idl", "-l", "cobol"])
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_invalid_config(self, runner, workdir):
        Path("bad.yaml").write_text("arithmetic:\n  colour: blue\n", encoding="utf-8")
        result = runner.invoke(main, ["generate", "arithmetic.idl", "-l", "python", "-c", "bad.yaml"])
        assert result.exit_code == ExitCode.GENERATION_ERROR
        assert "unknown setting(s) colour" in result.output

    def test_internal_error(self, runner, workdir, monkeypatch):
        def explode(self, source, library=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(BindingsGenerator, "generate", explode)
        result = runner.invoke(main, ["generate", "arithmetic.idl", "-l", "python"])
        assert result.exit_code == ExitCode.INTERNAL_ERROR
        assert "Internal error: boom" in result.output
