# =============================================================================
# test_validator.py - Interface Validator Tests
# =============================================================================
# Tests for validate() findings and apply_policy() decisions.
#
# Test coverage includes:
#   - Structural errors: unresolved types, duplicate names
#   - Warnings: thread safety, error types, by-value recursion
#   - Skipping warned items and everything that depends on them
#   - Promoting warnings to fatal errors by policy
# =============================================================================

import pytest

from ffibridge.config import ValidationPolicy
from ffibridge.diagnostics import DiagnosticCode, Severity
from ffibridge.errors import (
    DuplicateDefinition,
    InterfaceError,
    UnresolvedTypeReference,
    ValidationFailed,
)
from ffibridge.idl import load_idl
from ffibridge.ir.builder import build_interface
from ffibridge.ir.model import Argument, Function, Object, SourceBatch
from ffibridge.ir.types import RecordType
from ffibridge.ir.validator import apply_policy, dependents_of, validate

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


def build(source: str):
    return build_interface([load_idl(source, "test.idl")])


def codes(diagnostics) -> list[str]:
    return [d.code.value for d in diagnostics]


THREAD_UNSAFE = """
namespace shop {};

interface Cart {
    constructor();
};

[Threadsafe]
interface Store {
    constructor();
    void checkout(Cart cart);
};

dictionary Receipt {
    Store store;
};
"""

RECURSIVE = """
namespace tree {
    Node root();
    u32 depth(Leaf leaf);
};

dictionary Node {
    string label;
    Node? child;
};

dictionary Leaf {
    u32 value;
};
"""


# =============================================================================
# Clean Interfaces
# =============================================================================

class TestCleanInterface:
    def test_arithmetic_is_clean(self):
        assert validate(build(ARITHMETIC_IDL)) == []

    def test_callbacks_are_clean(self):
        assert validate(build(CALLBACK_IDL)) == []

    def test_policy_passes_clean_interface_through(self):
        ir = build(ARITHMETIC_IDL)
        result, diagnostics = apply_policy(ir, validate(ir))
        assert result == ir
        assert diagnostics == []


# =============================================================================
# Structural Errors
# =============================================================================

class TestStructuralErrors:
    """Unresolved types and duplicate names abort the run."""

    def test_unresolved_type(self):
        diagnostics = validate(build("namespace m { Missing make(); };"))
        assert codes(diagnostics) == ["unresolved-type"]
        assert diagnostics[0].severity == Severity.ERROR
        assert diagnostics[0].item == "make"
        assert diagnostics[0].subject == "Missing"

    def test_unresolved_reported_once_per_item(self):
        diagnostics = validate(build("namespace m { Missing swap(Missing a, Missing b); };"))
        assert len(diagnostics) == 1

    def test_kinded_reference_to_missing_item(self):
        """Metadata and JSON sources carry already-kinded references."""
        batch = SourceBatch("m", (Function("make", (Argument("p", RecordType("Ghost")),)),))
        diagnostics = validate(build_interface([batch]))
        assert codes(diagnostics) == ["unresolved-type"]
        assert diagnostics[0].subject == "Ghost"

    def test_reference_of_wrong_kind(self):
        batch = SourceBatch("m", (
            Object("Thing"),
            Function("make", (Argument("p", RecordType("Thing")),)),
        ))
        diagnostics = validate(build_interface([batch]))
        assert codes(diagnostics) == ["unresolved-type"]
        assert diagnostics[0].item == "make"
        assert "referenced as kind 'record' but declared as kind 'object'" in diagnostics[0].message

    def test_duplicate_item(self):
        diagnostics = validate(build("namespace m { void f(); void f(); };"))
        assert codes(diagnostics) == ["duplicate-name"]

    def test_duplicate_argument(self):
        diagnostics = validate(build("namespace m { void f(u8 a, u8 a); };"))
        assert codes(diagnostics) == ["duplicate-name"]
        assert diagnostics[0].subject == "f.a"

    def test_duplicate_field(self):
        diagnostics = validate(build("namespace m {}; dictionary P { u8 x; u8 x; };"))
        assert "field 'x'" in diagnostics[0].message

    def test_semantic_checks_skipped_after_structural_error(self):
        source = THREAD_UNSAFE.replace("void checkout(Cart cart);", "void checkout(Cart cart); Missing m();")
        diagnostics = validate(build(source))
        assert codes(diagnostics) == ["unresolved-type"]

    def test_policy_raises_typed_errors(self):
        ir = build("namespace m { Missing make(); void f(); void f(); };")
        with pytest.raises(ValidationFailed) as exc_info:
            apply_policy(ir, validate(ir))
        errors = exc_info.value.errors
        assert isinstance(errors[0], UnresolvedTypeReference)
        assert isinstance(errors[1], DuplicateDefinition)
        assert "validation failed with 2 error(s)" in str(exc_info.value)


# =============================================================================
# Warnings
# =============================================================================

class TestWarnings:
    """Semantic findings attach a warning to the affected item."""

    def test_thread_safety(self):
        diagnostics = validate(build(THREAD_UNSAFE))
        assert codes(diagnostics) == ["thread-safety"]
        warning = diagnostics[0]
        assert warning.severity == Severity.WARNING
        assert warning.item == "Store"
        assert warning.subject == "Cart"
        assert "checkout" in warning.message

    def test_threadsafe_argument_is_fine(self):
        source = THREAD_UNSAFE.replace("interface Cart", "[Threadsafe]\ninterface Cart")
        assert validate(build(source)) == []

    def test_error_type(self):
        diagnostics = validate(build("namespace m { [Throws=Fault] void f(); }; dictionary Fault { string why; };"))
        assert codes(diagnostics) == ["error-type"]
        assert diagnostics[0].item == "f"

    def test_recursion(self):
        diagnostics = validate(build(RECURSIVE))
        assert codes(diagnostics) == ["abi-recursion"]
        assert diagnostics[0].item == "Node"

    def test_sequence_breaks_recursion(self):
        source = RECURSIVE.replace("Node? child;", "sequence<Node> children;")
        assert validate(build(source)) == []

    def test_callback_passing_recursive_type(self):
        source = RECURSIVE + "callback interface Visitor { void visit(Node node); };"
        diagnostics = validate(build(source))
        assert codes(diagnostics) == ["abi-recursion", "abi-recursion"]
        assert diagnostics[1].item == "Visitor"

    def test_message_format(self):
        diagnostic = validate(build(THREAD_UNSAFE))[0]
        text = str(diagnostic)
        assert text.startswith("test.idl:")
        assert "warning: [Store]" in text
        assert text.endswith("(thread-safety)")


# =============================================================================
# Policy
# =============================================================================

class TestPolicy:
    """Tests for apply_policy()."""

    def test_warned_items_and_dependents_skipped(self):
        ir = build(THREAD_UNSAFE)
        result, diagnostics = apply_policy(ir, validate(ir))
        assert [i.name for i in result.items] == ["Cart"]
        skipped = [d for d in diagnostics if d.code == DiagnosticCode.SKIPPED_DEPENDENCY]
        assert [d.item for d in skipped] == ["Receipt"]
        assert "'Store'" in skipped[0].message

    def test_dependents_of(self):
        ir = build(RECURSIVE)
        assert dependents_of(ir, {"Node"}) == {"root"}
        assert dependents_of(ir, {"Leaf"}) == {"depth"}

    def test_fatal_code(self):
        ir = build(THREAD_UNSAFE)
        policy = ValidationPolicy(fatal=frozenset({"thread-safety"}))
        with pytest.raises(ValidationFailed) as exc_info:
            apply_policy(ir, validate(ir), policy)
        assert isinstance(exc_info.value.errors[0], InterfaceError)
        assert "(thread-safety)" in str(exc_info.value.errors[0])

    def test_other_codes_stay_warnings(self):
        ir = build(THREAD_UNSAFE)
        policy = ValidationPolicy(fatal=frozenset({"abi-recursion"}))
        result, _ = apply_policy(ir, validate(ir), policy)
        assert result.get("Store") is None

    def test_strict_promotes_skipped_dependencies(self):
        ir = build(RECURSIVE)
        with pytest.raises(ValidationFailed) as exc_info:
            apply_policy(ir, validate(ir), ValidationPolicy.strict())
        assert codes(exc_info.value.diagnostics) == ["abi-recursion", "skipped-dependency"]
