"""
Configuration Overlay
=====================

Per-namespace configuration that adjusts the interface before it reaches
the emitters: renames, omissions, duplicate handling, validation policy,
and per-language output options.

Configuration can come from:
- Default values (defined here)
- A YAML file passed with ``--config``
- ``ffibridge.yaml`` next to the interface source
- The ``FFIBRIDGE_CONFIG`` environment variable (path to a YAML file)

File Format
-----------
    arithmetic:                  # namespace the settings apply to
      namespace: arith           # rename the namespace
      rename:
        Counter: Tally
      omit:
        - internal_helper
        - Tally.reset
      duplicates: keep_first     # error | keep_first | keep_last
      overrides: [Point]
      validation:
        fatal: [thread-safety]   # or [all]
      bindings:
        python:
          out_dir: bindings/py
          cdylib_name: arith
        kotlin:
          package_name: org.example.arith
      scaffolding:
        out_dir: native/src
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from ffibridge.errors import ConfigError


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ffibridge.yaml"
CONFIG_ENV_VAR = "FFIBRIDGE_CONFIG"

# Warning codes the validation policy may promote
PROMOTABLE_CODES = ("thread-safety", "error-type", "abi-recursion", "skipped-dependency")


class DuplicatePolicy(Enum):
    """What to do when two source batches declare the same top-level name."""
    ERROR = "error"
    KEEP_FIRST = "keep_first"
    KEEP_LAST = "keep_last"


@dataclass
class ValidationPolicy:
    """
    Which validator warnings abort the run.

    With the default (empty) policy no warning is fatal: affected items
    are skipped from every emitter and the warning is reported.

    Attributes:
        fatal: Warning codes promoted to errors; "all" promotes every code
    """
    fatal: frozenset = field(default_factory=frozenset)

    def is_fatal(self, code: str) -> bool:
        return "all" in self.fatal or code in self.fatal

    @classmethod
    def strict(cls) -> "ValidationPolicy":
        return cls(fatal=frozenset({"all"}))


@dataclass
class LanguageConfig:
    """
    Output settings for one target language.

    Attributes:
        out_dir: Output directory override (relative paths resolve against
                 the run's output directory)
        options: Language-specific extra options (package_name, ...)
    """
    out_dir: Optional[Path] = None
    options: dict[str, Any] = field(default_factory=dict)

    def option(self, name: str, default: Any = None) -> Any:
        return self.options.get(name, default)


@dataclass
class NamespaceConfig:
    """Settings for one namespace."""
    namespace: Optional[str] = None
    rename: dict[str, str] = field(default_factory=dict)
    omit: list[str] = field(default_factory=list)
    duplicates: DuplicatePolicy = DuplicatePolicy.ERROR
    overrides: list[str] = field(default_factory=list)
    validation: ValidationPolicy = field(default_factory=ValidationPolicy)
    bindings: dict[str, LanguageConfig] = field(default_factory=dict)
    scaffolding: LanguageConfig = field(default_factory=LanguageConfig)

    def language(self, name: str) -> LanguageConfig:
        return self.bindings.get(name, LanguageConfig())


@dataclass
class ConfigOverlay:
    """
    Configuration for all namespaces of a run.

    Namespaces without an entry get NamespaceConfig defaults.
    """
    namespaces: dict[str, NamespaceConfig] = field(default_factory=dict)
    source: Optional[Path] = None

    def for_namespace(self, namespace: str) -> NamespaceConfig:
        return self.namespaces.get(namespace, NamespaceConfig())

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def from_dict(cls, data: Any, source: Optional[Path] = None) -> "ConfigOverlay":
        """
        Build an overlay from parsed YAML.

        Raises:
            ConfigError: If the document does not have the expected shape
        """
        where = str(source) if source else "configuration"
        if data is None:
            return cls(source=source)
        if not isinstance(data, dict):
            raise ConfigError(f"{where}: top level must be a mapping of namespaces")

        namespaces = {}
        for ns, body in data.items():
            namespaces[str(ns)] = _parse_namespace(body or {}, f"{where}: {ns}")
        return cls(namespaces=namespaces, source=source)

    @classmethod
    def from_yaml(cls, text: str, source: Optional[Path] = None) -> "ConfigOverlay":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"{source or 'configuration'}: invalid YAML: {e}") from e
        return cls.from_dict(data, source)

    @classmethod
    def from_file(cls, path: Path) -> "ConfigOverlay":
        path = Path(path)
        logger.debug(f"Loading configuration from {path}")
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read configuration {path}: {e}") from e
        return cls.from_yaml(text, source=path)

    @classmethod
    def discover(cls, source: Optional[Path] = None) -> "ConfigOverlay":
        """
        Find the configuration for an interface source.

        Checks ``FFIBRIDGE_CONFIG`` first, then ``ffibridge.yaml`` beside
        the source. Returns an empty overlay when neither exists.
        """
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return cls.from_file(Path(env_path))
        if source is not None:
            candidate = Path(source).parent / CONFIG_FILENAME
            if candidate.is_file():
                return cls.from_file(candidate)
        return cls()


# =============================================================================
# Shape Parsing
# =============================================================================

def _expect(value: Any, kind: type, where: str) -> Any:
    if not isinstance(value, kind):
        raise ConfigError(f"{where}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _parse_language(body: Any, where: str) -> LanguageConfig:
    body = dict(_expect(body or {}, dict, where))
    out_dir = body.pop("out_dir", None)
    return LanguageConfig(
        out_dir=Path(out_dir) if out_dir is not None else None,
        options=body,
    )


def _parse_namespace(body: Any, where: str) -> NamespaceConfig:
    body = _expect(body, dict, where)
    known = {
        "namespace", "rename", "omit", "duplicates", "overrides",
        "validation", "bindings", "scaffolding",
    }
    unknown = set(body) - known
    if unknown:
        raise ConfigError(f"{where}: unknown setting(s) {', '.join(sorted(unknown))}")

    config = NamespaceConfig()
    if "namespace" in body:
        config.namespace = str(_expect(body["namespace"], str, f"{where}.namespace"))
    if "rename" in body:
        renames = _expect(body["rename"], dict, f"{where}.rename")
        config.rename = {str(k): str(v) for k, v in renames.items()}
    if "omit" in body:
        config.omit = [str(n) for n in _expect(body["omit"], list, f"{where}.omit")]
    if "duplicates" in body:
        try:
            config.duplicates = DuplicatePolicy(body["duplicates"])
        except ValueError:
            choices = ", ".join(p.value for p in DuplicatePolicy)
            raise ConfigError(
                f"{where}.duplicates: unknown policy {body['duplicates']!r} (choose {choices})"
            ) from None
    if "overrides" in body:
        config.overrides = [str(n) for n in _expect(body["overrides"], list, f"{where}.overrides")]
    if "validation" in body:
        validation = _expect(body["validation"] or {}, dict, f"{where}.validation")
        fatal = [str(c) for c in _expect(validation.get("fatal", []), list, f"{where}.validation.fatal")]
        bad = [c for c in fatal if c != "all" and c not in PROMOTABLE_CODES]
        if bad:
            raise ConfigError(f"{where}.validation.fatal: unknown warning code(s) {', '.join(bad)}")
        config.validation = ValidationPolicy(fatal=frozenset(fatal))
    if "bindings" in body:
        bindings = _expect(body["bindings"], dict, f"{where}.bindings")
        config.bindings = {
            str(lang): _parse_language(opts, f"{where}.bindings.{lang}")
            for lang, opts in bindings.items()
        }
    if "scaffolding" in body:
        config.scaffolding = _parse_language(body["scaffolding"], f"{where}.scaffolding")
    return config
