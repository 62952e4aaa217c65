"""
Tests for the Configuration Overlay
===================================

YAML parsing, shape validation and file discovery.
"""

from pathlib import Path

import pytest

from ffibridge.config import (
    CONFIG_ENV_VAR,
    CONFIG_FILENAME,
    ConfigOverlay,
    DuplicatePolicy,
    LanguageConfig,
    ValidationPolicy,
)
from ffibridge.errors import ConfigError


FULL_CONFIG = """
arithmetic:
  namespace: arith
  rename:
    Counter: Tally
  omit:
    - greet
    - Counter.finish
  duplicates: keep_last
  overrides: [Point]
  validation:
    fatal: [thread-safety]
  bindings:
    python:
      out_dir: bindings/py
      cdylib_name: arith
    kotlin:
      package_name: org.example.arith
  scaffolding:
    out_dir: native/src
"""


# =============================================================================
# Parsing
# =============================================================================

class TestParsing:
    """Tests for ConfigOverlay.from_yaml()."""

    def test_full_document(self):
        config = ConfigOverlay.from_yaml(FULL_CONFIG).for_namespace("arithmetic")
        assert config.namespace == "arith"
        assert config.rename == {"Counter": "Tally"}
        assert config.omit == ["greet", "Counter.finish"]
        assert config.duplicates == DuplicatePolicy.KEEP_LAST
        assert config.overrides == ["Point"]
        assert config.validation.is_fatal("thread-safety")
        assert not config.validation.is_fatal("error-type")

    def test_language_settings(self):
        config = ConfigOverlay.from_yaml(FULL_CONFIG).for_namespace("arithmetic")
        python = config.language("python")
        assert python.out_dir == Path("bindings/py")
        assert python.option("cdylib_name") == "arith"
        assert config.language("kotlin").option("package_name") == "org.example.arith"
        assert config.scaffolding.out_dir == Path("native/src")

    def test_missing_language_gets_defaults(self):
        config = ConfigOverlay.from_yaml(FULL_CONFIG).for_namespace("arithmetic")
        assert config.language("ruby") == LanguageConfig()

    def test_unknown_namespace_gets_defaults(self):
        config = ConfigOverlay.from_yaml(FULL_CONFIG).for_namespace("other")
        assert config.namespace is None
        assert config.duplicates == DuplicatePolicy.ERROR
        assert not config.validation.is_fatal("thread-safety")

    def test_empty_document(self):
        overlay = ConfigOverlay.from_yaml("")
        assert overlay.namespaces == {}

    def test_fatal_all(self):
        config = ConfigOverlay.from_yaml("m:\n  validation:\n    fatal: [all]\n").for_namespace("m")
        assert config.validation.is_fatal("abi-recursion")
        assert config.validation == ValidationPolicy.strict()


class TestParsingErrors:
    """Malformed documents raise ConfigError."""

    def test_invalid_yaml(self):
        with pytest.raises(ConfigError, match="invalid YAML"):
            ConfigOverlay.from_yaml("m: [unclosed")

    def test_top_level_not_mapping(self):
        with pytest.raises(ConfigError, match="top level must be a mapping"):
            ConfigOverlay.from_yaml("- a\n- b\n")

    def test_unknown_setting(self):
        with pytest.raises(ConfigError, match="unknown setting"):
            ConfigOverlay.from_yaml("m:\n  renames: {}\n")

    def test_bad_duplicates_policy(self):
        with pytest.raises(ConfigError, match="unknown policy"):
            ConfigOverlay.from_yaml("m:\n  duplicates: merge\n")

    def test_unknown_fatal_code(self):
        with pytest.raises(ConfigError, match="unknown warning code"):
            ConfigOverlay.from_yaml("m:\n  validation:\n    fatal: [typo]\n")

    def test_wrong_shape(self):
        with pytest.raises(ConfigError, match="expected list"):
            ConfigOverlay.from_yaml("m:\n  omit: greet\n")

    def test_error_names_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("m:\n  bogus: 1\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="bad.yaml"):
            ConfigOverlay.from_file(path)


# =============================================================================
# Discovery
# =============================================================================

class TestDiscovery:
    """Tests for ConfigOverlay.discover()."""

    def test_beside_source(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        (tmp_path / CONFIG_FILENAME).write_text("m:\n  namespace: renamed\n", encoding="utf-8")
        overlay = ConfigOverlay.discover(tmp_path / "m.idl")
        assert overlay.for_namespace("m").namespace == "renamed"
        assert overlay.source == tmp_path / CONFIG_FILENAME

    def test_environment_wins(self, tmp_path, monkeypatch):
        (tmp_path / CONFIG_FILENAME).write_text("m:\n  namespace: beside\n", encoding="utf-8")
        env_file = tmp_path / "env.yaml"
        env_file.write_text("m:\n  namespace: from_env\n", encoding="utf-8")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(env_file))
        overlay = ConfigOverlay.discover(tmp_path / "m.idl")
        assert overlay.for_namespace("m").namespace == "from_env"

    def test_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        overlay = ConfigOverlay.discover(tmp_path / "m.idl")
        assert overlay.namespaces == {}
        assert overlay.source is None
