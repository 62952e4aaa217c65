# =============================================================================
# test_builder.py - IR Builder Tests
# =============================================================================
# Tests for merging source batches into one InterfaceDescription.
#
# Test coverage includes:
#   - Reference resolution to item kinds
#   - Merge order and duplicate policies
#   - Configuration omissions and renames
#   - External references and the import table
#   - Interface checksum stability
# =============================================================================

import pytest

from ffibridge.config import ConfigOverlay
from ffibridge.errors import ConfigConflict, DuplicateDefinition, InterfaceError
from ffibridge.idl import load_idl
from ffibridge.ir.builder import InterfaceBuilder, build_interface
from ffibridge.ir.types import (
    EnumType,
    ExternalType,
    NamedType,
    ObjectType,
    OptionalType,
    RecordType,
)

from conftest import ARITHMETIC_IDL


def config(text: str) -> ConfigOverlay:
    return ConfigOverlay.from_yaml(text)


@pytest.fixture
def batch():
    return load_idl(ARITHMETIC_IDL, "arithmetic.idl")


# =============================================================================
# Resolution
# =============================================================================

class TestResolution:
    """NamedType references become the reference class of their item kind."""

    def test_kinds_resolved(self, batch):
        ir = build_interface([batch])
        assert ir.get("divide").throws == EnumType("MathError")
        assert ir.get("midpoint").return_type == OptionalType(RecordType("Point"))

    def test_forward_reference(self):
        """Items may be used before they are declared."""
        batch = load_idl("""
            namespace m { Widget make(); };
            interface Widget { constructor(); };
        """)
        ir = build_interface([batch])
        assert ir.get("make").return_type == ObjectType("Widget")

    def test_unresolved_left_for_validator(self):
        batch = load_idl("namespace m { Missing make(); };")
        ir = build_interface([batch])
        assert ir.get("make").return_type == NamedType("Missing")

    def test_namespace_and_docstring(self, batch):
        ir = build_interface([batch])
        assert ir.namespace == "arithmetic"
        assert ir.docstring == "Integer arithmetic exposed to every language."

    def test_no_batches(self):
        with pytest.raises(InterfaceError):
            build_interface([])

    def test_primary_namespace_missing(self, batch):
        with pytest.raises(InterfaceError, match="no source declares namespace 'other'"):
            build_interface([batch], namespace="other")


# =============================================================================
# Merging
# =============================================================================

class TestMerge:
    """Tests for combining several batches of one namespace."""

    def test_items_from_both_batches(self, batch):
        extra = load_idl("namespace arithmetic { u32 square(u32 x); };", "extra.idl")
        ir = build_interface([batch, extra])
        assert ir.items[-1].name == "square"
        assert len(ir.items) == len(batch.items) + 1

    def test_duplicate_across_batches(self, batch):
        with pytest.raises(DuplicateDefinition) as exc_info:
            build_interface([batch, load_idl(ARITHMETIC_IDL, "libarithmetic.so")])
        error = exc_info.value
        assert error.first == "arithmetic.idl"
        assert error.second == "libarithmetic.so"

    def test_keep_first(self, batch):
        other = load_idl("namespace arithmetic { string add(); };", "other.idl")
        ir = build_interface([batch, other], config("arithmetic:\n  duplicates: keep_first\n"))
        assert ir.get("add").arguments != ()

    def test_keep_last_keeps_position(self, batch):
        other = load_idl("namespace arithmetic { string add(); };", "other.idl")
        ir = build_interface([batch, other], config("arithmetic:\n  duplicates: keep_last\n"))
        assert ir.get("add").arguments == ()
        assert ir.items[0].name == "add"

    def test_override_list(self, batch):
        other = load_idl("namespace arithmetic { string add(); };", "other.idl")
        ir = build_interface([batch, other], config("arithmetic:\n  overrides: [add]\n"))
        assert ir.get("add").arguments != ()

    def test_repeat_inside_one_batch_kept(self):
        """The Validator, not the Builder, reports repeats within one source."""
        batch = load_idl("namespace m { void f(); void f(); };")
        ir = build_interface([batch])
        assert [i.name for i in ir.items] == ["f", "f"]


# =============================================================================
# Configuration Overlay
# =============================================================================

class TestOverlay:
    """Omissions and renames from the configuration overlay."""

    def test_omit_item(self, batch):
        ir = build_interface([batch], config("arithmetic:\n  omit: [greet]\n"))
        assert ir.get("greet") is None

    def test_omit_member(self, batch):
        ir = build_interface([batch], config("arithmetic:\n  omit: [Counter.finish, Counter.zero]\n"))
        counter = ir.get("Counter")
        assert [m.name for m in counter.methods] == ["increment"]
        assert [c.name for c in counter.constructors] == ["new"]

    def test_omit_unknown(self, batch):
        with pytest.raises(ConfigConflict, match="cannot omit unknown item 'nothing'"):
            build_interface([batch], config("arithmetic:\n  omit: [nothing]\n"))

    def test_omit_still_referenced(self, batch):
        with pytest.raises(ConfigConflict, match="'Point' is omitted but still referenced"):
            build_interface([batch], config("arithmetic:\n  omit: [Point]\n"))

    def test_rename_rewrites_references(self, batch):
        ir = build_interface([batch], config("arithmetic:\n  rename:\n    Point: Vec2\n"))
        assert ir.get("Point") is None
        assert ir.get("midpoint").return_type == OptionalType(RecordType("Vec2"))

    def test_rename_unknown(self, batch):
        with pytest.raises(ConfigConflict, match="cannot rename unknown item"):
            build_interface([batch], config("arithmetic:\n  rename:\n    Nope: Other\n"))

    def test_rename_collision(self, batch):
        with pytest.raises(ConfigConflict, match="collides"):
            build_interface([batch], config("arithmetic:\n  rename:\n    Point: Counter\n"))

    def test_namespace_rename(self, batch):
        ir = build_interface([batch], config("arithmetic:\n  namespace: arith\n"))
        assert ir.namespace == "arith"

    def test_conflict_names_config_file(self, batch, tmp_path):
        path = tmp_path / "ffibridge.yaml"
        path.write_text("arithmetic:\n  omit: [nothing]\n", encoding="utf-8")
        with pytest.raises(ConfigConflict, match="ffibridge.yaml"):
            InterfaceBuilder(ConfigOverlay.from_file(path)).build([batch])


# =============================================================================
# External References
# =============================================================================

class TestExternals:
    """References into other namespaces."""

    SHOP = """
        namespace shop { Money total(Currency currency); };
        [External="finance"]
        typedef extern Money;
        [External="finance"]
        typedef extern Currency;
    """

    def test_kind_from_foreign_batch(self):
        shop = load_idl(self.SHOP)
        finance = load_idl("namespace finance {}; dictionary Money { u64 cents; }; enum Currency { \"EUR\" };")
        ir = build_interface([shop, finance], namespace="shop")
        assert ir.get("total").return_type == ExternalType("finance", "Money", "record")
        assert {(d.name, d.kind) for d in ir.imports} == {("Money", "record"), ("Currency", "enum")}

    def test_kind_from_prebuilt_import(self):
        finance = build_interface([load_idl("namespace finance {}; dictionary Money { u64 cents; };")])
        ir = InterfaceBuilder(imports=[finance]).build([load_idl(self.SHOP)])
        assert ir.get("total").return_type == ExternalType("finance", "Money", "record")

    def test_unknown_external_stays_unresolved(self):
        ir = build_interface([load_idl(self.SHOP)])
        assert ir.get("total").return_type == ExternalType("finance", "Money", None)


# =============================================================================
# Checksum
# =============================================================================

class TestChecksum:
    """The interface checksum identifies the interface shape."""

    def test_stable(self, batch):
        assert build_interface([batch]).checksum == build_interface([batch]).checksum

    def test_sixteen_bits(self, batch):
        assert 0 <= build_interface([batch]).checksum <= 0xFFFF

    def test_changes_with_signature(self, batch):
        changed = load_idl(ARITHMETIC_IDL.replace("u32 add(u32 a, u32 b)", "u64 add(u32 a, u32 b)"))
        assert build_interface([changed]).checksum != build_interface([batch]).checksum

    def test_ignores_docstrings(self, batch):
        undocumented = load_idl(ARITHMETIC_IDL.replace("/// Add two numbers.\n", ""))
        assert undocumented.items[0].docstring is None
        assert build_interface([undocumented]).checksum == build_interface([batch]).checksum
