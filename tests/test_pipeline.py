# =============================================================================
# test_pipeline.py - Generation Pipeline Tests
# =============================================================================
# Tests for BindingsGenerator: the full run from source to written files.
#
# Test coverage includes:
#   - Per-language output directories and overrides
#   - Independent failure of one language
#   - Byte-identical regeneration
#   - Validation policy and skipped items
#   - Scaffolding output locations
#   - Formatter warnings and atomic writes
# =============================================================================

import json
import logging
import sys
from pathlib import Path

import pytest

from ffibridge.backends import PythonBackend
from ffibridge.config import ConfigOverlay
from ffibridge.errors import (
    DuplicateDefinition,
    EmissionError,
    EmissionIoError,
    GenerationFailed,
    ValidationFailed,
)
from ffibridge.formatting import FormatWarning, format_files
from ffibridge.idl import load_idl
from ffibridge.metadata import encode_section
from ffibridge.pipeline import BindingsGenerator, GenerationOptions, write_atomic
from ffibridge.scaffolding import ScaffoldingEmitter

from conftest import ARITHMETIC_IDL


def generator(out_dir: Path, *languages: str, config: str = "", **options) -> BindingsGenerator:
    options.setdefault("format_output", False)
    return BindingsGenerator(
        GenerationOptions(languages=languages, out_dir=out_dir, **options),
        ConfigOverlay.from_yaml(config),
    )


def tree(root: Path) -> dict[str, bytes]:
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*")) if p.is_file()
    }


# =============================================================================
# Output Layout
# =============================================================================

class TestOutputLayout:
    """Each language writes under its own directory."""

    def test_language_directories(self, arithmetic_idl, tmp_path):
        out = tmp_path / "out"
        report = generator(out, "python", "kotlin").generate(arithmetic_idl)
        assert report.ok
        assert (out / "python" / "arithmetic.py").is_file()
        assert (out / "kotlin" / "ffibridge" / "arithmetic" / "arithmetic.kt").is_file()
        assert [o.language for o in report.outcomes] == ["python", "kotlin"]

    def test_outcome_lists_written_files(self, arithmetic_idl, tmp_path):
        report = generator(tmp_path, "swift").generate(arithmetic_idl)
        outcome = report.outcomes[0]
        assert outcome.out_dir == tmp_path / "swift"
        assert sorted(p.name for p in outcome.files) == [
            "arithmetic.swift", "arithmeticFFI.h", "arithmeticFFI.modulemap",
        ]

    def test_configured_out_dir(self, arithmetic_idl, tmp_path):
        config = "arithmetic:\n  bindings:\n    python:\n      out_dir: bindings/py\n"
        generator(tmp_path, "python", config=config).generate(arithmetic_idl)
        assert (tmp_path / "bindings" / "py" / "arithmetic.py").is_file()

    def test_namespace_rename_names_files(self, arithmetic_idl, tmp_path):
        generator(tmp_path, "python", config="arithmetic:\n  namespace: arith\n").generate(arithmetic_idl)
        assert (tmp_path / "python" / "arith.py").is_file()

    def test_repeated_language_emitted_once(self, arithmetic_idl, tmp_path):
        report = generator(tmp_path, "python", "python").generate(arithmetic_idl)
        assert len(report.outcomes) == 1

    def test_regeneration_is_byte_identical(self, arithmetic_idl, tmp_path):
        generator(tmp_path / "a", "python", "kotlin", "swift", scaffolding=True).generate(arithmetic_idl)
        generator(tmp_path / "b", "python", "kotlin", "swift", scaffolding=True).generate(arithmetic_idl)
        first, second = tree(tmp_path / "a"), tree(tmp_path / "b")
        assert first and first == second

    def test_no_language(self, arithmetic_idl, tmp_path):
        with pytest.raises(ValueError, match="no target language requested"):
            generator(tmp_path).generate(arithmetic_idl)


# =============================================================================
# Failures
# =============================================================================

class TestFailures:
    """A failing language writes nothing and does not affect the others."""

    def test_failed_language_isolated(self, arithmetic_idl, tmp_path):
        with pytest.raises(GenerationFailed) as exc_info:
            generator(tmp_path, "python", "ruby").generate(arithmetic_idl)
        outcomes = {o.language: o for o in exc_info.value.outcomes}
        assert outcomes["python"].ok
        assert not outcomes["ruby"].ok
        assert outcomes["ruby"].files == []
        assert (tmp_path / "python" / "arithmetic.py").is_file()
        assert not (tmp_path / "ruby").exists()
        assert "generation failed for 1 language(s)" in str(exc_info.value)

    def test_unknown_language(self, arithmetic_idl, tmp_path):
        with pytest.raises(GenerationFailed) as exc_info:
            generator(tmp_path, "cobol").generate(arithmetic_idl)
        error = exc_info.value.outcomes[0].errors[0]
        assert isinstance(error, EmissionError)
        assert "unknown language" in str(error)

    def test_backend_crash_isolated(self, arithmetic_idl, tmp_path, monkeypatch):
        """A bug inside one backend fails that language only."""
        def crash(self, function):
            raise KeyError("bug")

        monkeypatch.setattr(PythonBackend, "emit_function", crash)
        with pytest.raises(GenerationFailed) as exc_info:
            generator(tmp_path, "python", "kotlin").generate(arithmetic_idl)
        outcomes = {o.language: o for o in exc_info.value.outcomes}
        assert outcomes["kotlin"].ok
        assert outcomes["kotlin"].files
        assert not outcomes["python"].ok
        assert "internal backend error: KeyError" in str(outcomes["python"].errors[0])
        assert not (tmp_path / "python").exists()

    def test_scaffolding_crash_reported(self, arithmetic_idl, tmp_path, monkeypatch):
        def crash(self):
            raise AttributeError("bug")

        monkeypatch.setattr(ScaffoldingEmitter, "render", crash)
        with pytest.raises(GenerationFailed) as exc_info:
            generator(tmp_path, "python", scaffolding=True).generate(arithmetic_idl)
        outcomes = {o.language: o for o in exc_info.value.outcomes}
        assert outcomes["python"].ok
        assert not outcomes["scaffolding"].ok
        error = outcomes["scaffolding"].errors[0]
        assert error.language == "scaffolding"
        assert "internal backend error: AttributeError" in str(error)

    def test_duplicates_write_nothing(self, arithmetic_idl, tmp_path):
        library = tmp_path / "libarithmetic.so"
        library.write_bytes(encode_section(load_idl(ARITHMETIC_IDL)))
        out = tmp_path / "out"
        with pytest.raises(DuplicateDefinition):
            generator(out, "python").generate(arithmetic_idl, library)
        assert not out.exists()

    def test_duplicates_resolved_by_config(self, arithmetic_idl, tmp_path):
        library = tmp_path / "libarithmetic.so"
        library.write_bytes(encode_section(load_idl(ARITHMETIC_IDL)))
        config = "arithmetic:\n  duplicates: keep_first\n"
        report = generator(tmp_path / "out", "python", config=config).generate(arithmetic_idl, library)
        assert report.ok


# =============================================================================
# Validation
# =============================================================================

UNSAFE_IDL = """
namespace shop {
    u32 total();
};

interface Cart {
    constructor();
};

[Threadsafe]
interface Store {
    constructor();
    void checkout(Cart cart);
};
"""


class TestValidation:
    @pytest.fixture
    def unsafe_idl(self, tmp_path):
        path = tmp_path / "shop.idl"
        path.write_text(UNSAFE_IDL, encoding="utf-8")
        return path

    def test_warned_item_skipped(self, unsafe_idl, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="ffibridge.pipeline"):
            report = generator(tmp_path / "out", "python").generate(unsafe_idl)
        text = (tmp_path / "out" / "python" / "shop.py").read_text(encoding="utf-8")
        assert "class Cart:" in text
        assert "class Store" not in text
        assert [d.code.value for d in report.interface.diagnostics] == ["thread-safety"]
        assert "(thread-safety)" in caplog.text

    def test_warnings_as_errors(self, unsafe_idl, tmp_path):
        with pytest.raises(ValidationFailed):
            generator(tmp_path / "out", "python", warnings_as_errors=True).generate(unsafe_idl)
        assert not (tmp_path / "out").exists()

    def test_configured_fatal_code(self, unsafe_idl, tmp_path):
        config = "shop:\n  validation:\n    fatal: [thread-safety]\n"
        with pytest.raises(ValidationFailed):
            generator(tmp_path / "out", "python", config=config).generate(unsafe_idl)


# =============================================================================
# Scaffolding and JSON
# =============================================================================

class TestScaffoldingOutput:
    def test_alongside_bindings(self, arithmetic_idl, tmp_path):
        report = generator(tmp_path, "python", scaffolding=True).generate(arithmetic_idl)
        assert report.outcomes[-1].language == "scaffolding"
        assert (tmp_path / "scaffolding" / "arithmetic_scaffolding.rs").is_file()

    def test_scaffolding_mode(self, arithmetic_idl, tmp_path):
        generator(tmp_path).generate_scaffolding(arithmetic_idl)
        assert (tmp_path / "arithmetic_scaffolding.rs").is_file()

    def test_scaffolding_out_dir_config(self, arithmetic_idl, tmp_path):
        config = "arithmetic:\n  scaffolding:\n    out_dir: native/src\n"
        generator(tmp_path, config=config).generate_scaffolding(arithmetic_idl)
        assert (tmp_path / "native" / "src" / "arithmetic_scaffolding.rs").is_file()

    def test_interface_json(self, arithmetic_idl, tmp_path):
        data = json.loads(generator(tmp_path).interface_json(arithmetic_idl))
        assert data["namespace"] == "arithmetic"


# =============================================================================
# Formatting and Writing
# =============================================================================

class TestFormatting:
    """Formatter problems are warnings; files stay written."""

    def test_missing_formatter(self, arithmetic_idl, tmp_path, monkeypatch):
        monkeypatch.setattr(PythonBackend, "formatter", ("ffibridge-missing-formatter",))
        report = generator(tmp_path, "python", format_output=True).generate(arithmetic_idl)
        outcome = report.outcomes[0]
        assert outcome.ok
        assert outcome.warnings == [
            FormatWarning("ffibridge-missing-formatter", "not found; generated files were left unformatted")
        ]
        assert (tmp_path / "python" / "arithmetic.py").is_file()

    def test_failing_formatter(self, tmp_path):
        target = tmp_path / "x.py"
        target.write_text("x = 1\n", encoding="utf-8")
        command = (sys.executable, "-c", "import sys; sys.stderr.write('cannot parse\\n'); sys.exit(3)")
        warning = format_files(command, [target])
        assert "exited with status 3: cannot parse" in str(warning)

    def test_nothing_to_format(self):
        assert format_files(("black",), []) is None


class TestWriteAtomic:
    def test_creates_parents(self, tmp_path):
        target = tmp_path / "a" / "b" / "out.txt"
        write_atomic(target, "hello\n")
        assert target.read_text(encoding="utf-8") == "hello\n"
        assert [p.name for p in target.parent.iterdir()] == ["out.txt"]

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "out.txt"
        target.write_text("old", encoding="utf-8")
        write_atomic(target, "new")
        assert target.read_text(encoding="utf-8") == "new"

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")
        with pytest.raises(EmissionIoError, match="cannot write"):
            write_atomic(blocker / "out.txt", "x", language="python")
