"""
Generation Pipeline
===================

Drives one generation run:

    extract -> build -> validate/apply policy -> lower to ABI
        -> per-language emission (in parallel) -> write -> format

Extraction, building and validation run once, sequentially. The
per-language branches share only the read-only InterfaceDescription and
ComponentFfi, so they run on a thread pool. A language that fails writes
nothing and never affects the files of another language; once every
branch has finished, any failures are raised together as GenerationFailed.

Output Layout
-------------
    <out_dir>/<language>/...      bindings (default)
    <out_dir>/scaffolding/...     scaffolding, in generate mode
    <out_dir>/...                 scaffolding, in scaffolding mode

A per-language ``out_dir`` in the configuration overrides the default;
relative overrides resolve against the run's output directory.
"""

import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

from ffibridge.backends import BackendContext, create_backend, emit_bindings
from ffibridge.config import ConfigOverlay, LanguageConfig, NamespaceConfig, ValidationPolicy
from ffibridge.diagnostics import Diagnostic
from ffibridge.errors import EmissionError, EmissionIoError, GenerationFailed
from ffibridge.extractor import extract
from ffibridge.ffi.lowering import lower_interface
from ffibridge.ffi.types import ComponentFfi
from ffibridge.formatting import FormatWarning, format_files
from ffibridge.ir.builder import InterfaceBuilder
from ffibridge.ir.model import InterfaceDescription
from ffibridge.ir.serialize import to_json
from ffibridge.ir.validator import apply_policy, validate
from ffibridge.scaffolding import ScaffoldingEmitter

logger = logging.getLogger(__name__)

SCAFFOLDING = "scaffolding"

PathLike = Union[str, Path]


# =============================================================================
# Options and Outcomes
# =============================================================================

@dataclass
class GenerationOptions:
    """
    Knobs of one run.

    Attributes:
        languages: Target languages for bindings
        out_dir: Base output directory
        format_output: Run the external formatter over written files
        scaffolding: Also emit scaffolding in bindings mode
        crate: Namespace to select from a compiled library
        warnings_as_errors: Promote every validator warning
        max_workers: Thread pool size (default: one per language)
    """
    languages: tuple[str, ...] = ()
    out_dir: Path = Path(".")
    format_output: bool = True
    scaffolding: bool = False
    crate: Optional[str] = None
    warnings_as_errors: bool = False
    max_workers: Optional[int] = None


@dataclass
class LanguageOutcome:
    """
    Result of one fan-out branch.

    Attributes:
        language: Backend name, or "scaffolding"
        out_dir: Directory the branch writes into
        files: Written files (empty when the branch failed)
        errors: Emission and write errors
        warnings: Formatter warnings; they do not make the branch fail
    """
    language: str
    out_dir: Path
    files: list[Path] = field(default_factory=list)
    errors: list[EmissionError] = field(default_factory=list)
    warnings: list[FormatWarning] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class LoadedInterface:
    """A built, validated and lowered interface ready for emission."""
    ir: InterfaceDescription
    ffi: ComponentFfi
    config: NamespaceConfig
    diagnostics: list[Diagnostic] = field(default_factory=list)


@dataclass
class GenerationReport:
    interface: LoadedInterface
    outcomes: list[LanguageOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)


# =============================================================================
# File Writing
# =============================================================================

def write_atomic(path: Path, content: str, language: Optional[str] = None) -> None:
    """
    Write content to path through a temporary file in the same directory.

    Raises:
        EmissionIoError: If the directory or file cannot be written
    """
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", newline="\n", dir=path.parent,
            prefix=f".{path.name}.", suffix=".tmp", delete=False,
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(content)
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise EmissionIoError(str(path), e.strerror or str(e), language=language) from e


def _write_outputs(outcome: LanguageOutcome, files: dict[str, str]) -> None:
    for relative, content in sorted(files.items()):
        target = outcome.out_dir / relative
        try:
            write_atomic(target, content, outcome.language)
        except EmissionIoError as e:
            outcome.errors.append(e)
            return
        outcome.files.append(target)


def _backend_failure(language: str, e: Exception) -> EmissionError:
    """Confine a backend's unexpected exception to its own language."""
    logger.debug(f"{language}: backend raised {type(e).__name__}", exc_info=True)
    return EmissionError(f"internal backend error: {type(e).__name__}: {e}", language=language)


def resolve_out_dir(base: Path, language_config: LanguageConfig, default: Optional[str]) -> Path:
    if language_config.out_dir is not None:
        override = Path(language_config.out_dir)
        return override if override.is_absolute() else base / override
    return base / default if default else base


# =============================================================================
# Generator
# =============================================================================

class BindingsGenerator:
    """
    Runs the pipeline for one interface source.

    Example:
        generator = BindingsGenerator(GenerationOptions(
            languages=("python", "kotlin"), out_dir=Path("out"),
        ))
        report = generator.generate(Path("arithmetic.idl"))
    """

    def __init__(self, options: Optional[GenerationOptions] = None, config: Optional[ConfigOverlay] = None):
        self.options = options or GenerationOptions()
        self.config = config

    # -------------------------------------------------------------------------
    # Front half
    # -------------------------------------------------------------------------

    def load(self, source: PathLike, library: Optional[PathLike] = None) -> LoadedInterface:
        """
        Extract, build, validate and lower an interface.

        Args:
            source: Textual definition or compiled library
            library: Additional compiled library, merged after source

        Raises:
            FfiBridgeError: Any extraction, build or validation failure
        """
        extraction = extract(idl_path=source, library_path=library, crate=self.options.crate)
        for note in extraction.diagnostics:
            logger.info(str(note))

        config = self.config if self.config is not None else ConfigOverlay.discover(Path(source))
        primary = self.options.crate or extraction.namespace
        ns_config = config.for_namespace(primary)

        ir = InterfaceBuilder(config).build(extraction.batches, namespace=primary)
        policy = ValidationPolicy.strict() if self.options.warnings_as_errors else ns_config.validation
        ir, diagnostics = apply_policy(ir, validate(ir), policy)
        for diagnostic in diagnostics:
            logger.warning(str(diagnostic))

        ffi = lower_interface(ir)
        return LoadedInterface(ir, ffi, ns_config, list(extraction.diagnostics) + diagnostics)

    def interface_json(self, source: PathLike, library: Optional[PathLike] = None) -> str:
        """The resolved interface as JSON IR."""
        return to_json(self.load(source, library).ir)

    # -------------------------------------------------------------------------
    # Fan-out
    # -------------------------------------------------------------------------

    def _emit_language(self, loaded: LoadedInterface, language: str) -> LanguageOutcome:
        language_config = loaded.config.language(language)
        outcome = LanguageOutcome(language, resolve_out_dir(self.options.out_dir, language_config, language))
        try:
            backend = create_backend(language, BackendContext(loaded.ir, loaded.ffi, language_config))
        except ValueError as e:
            outcome.errors.append(EmissionError(str(e), language=language))
            return outcome

        try:
            result = emit_bindings(backend, loaded.ir)
        except Exception as e:
            outcome.errors.append(_backend_failure(language, e))
            return outcome
        if not result.ok:
            outcome.errors.extend(result.errors)
            logger.debug(f"{language}: {len(result.errors)} error(s), nothing written")
            return outcome

        _write_outputs(outcome, result.files)
        if outcome.ok and self.options.format_output:
            warning = format_files(backend.formatter, outcome.files)
            if warning is not None:
                outcome.warnings.append(warning)
        logger.debug(f"{language}: wrote {len(outcome.files)} file(s) to {outcome.out_dir}")
        return outcome

    def _emit_scaffolding(self, loaded: LoadedInterface, default_subdir: Optional[str]) -> LanguageOutcome:
        outcome = LanguageOutcome(
            SCAFFOLDING,
            resolve_out_dir(self.options.out_dir, loaded.config.scaffolding, default_subdir),
        )
        emitter = ScaffoldingEmitter(loaded.ir, loaded.ffi, loaded.config.scaffolding)
        try:
            files = emitter.render()
        except Exception as e:
            outcome.errors.append(_backend_failure(SCAFFOLDING, e))
            return outcome
        _write_outputs(outcome, files)
        if outcome.ok and self.options.format_output:
            warning = format_files(emitter.formatter, outcome.files)
            if warning is not None:
                outcome.warnings.append(warning)
        return outcome

    def _finish(self, report: GenerationReport) -> GenerationReport:
        for outcome in report.outcomes:
            for warning in outcome.warnings:
                logger.warning(str(warning))
        if not report.ok:
            raise GenerationFailed(report.outcomes)
        return report

    def generate(self, source: PathLike, library: Optional[PathLike] = None) -> GenerationReport:
        """
        Generate bindings for every requested language.

        Raises:
            ValueError: If no language was requested
            GenerationFailed: If at least one language failed; the
                              others have written their files
        """
        languages: Sequence[str] = list(dict.fromkeys(self.options.languages))
        if not languages:
            raise ValueError("no target language requested")

        loaded = self.load(source, library)
        report = GenerationReport(loaded)
        workers = self.options.max_workers or len(languages)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ffibridge") as pool:
            futures = [pool.submit(self._emit_language, loaded, lang) for lang in languages]
            report.outcomes = [f.result() for f in futures]

        if self.options.scaffolding:
            report.outcomes.append(self._emit_scaffolding(loaded, SCAFFOLDING))
        return self._finish(report)

    def generate_scaffolding(self, source: PathLike, library: Optional[PathLike] = None) -> GenerationReport:
        """Generate the native scaffolding only."""
        loaded = self.load(source, library)
        report = GenerationReport(loaded, [self._emit_scaffolding(loaded, None)])
        return self._finish(report)
