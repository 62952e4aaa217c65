"""
Interface Validator
===================

Checks a built InterfaceDescription before any emitter sees it.

``validate()`` is a pure function: it never raises for a well-formed
description and reports every finding as a Diagnostic. ``apply_policy()``
then decides, according to the configured ValidationPolicy, whether the
run aborts or which items are skipped.

Checks
------
Run in this order:

| # | Code            | Severity | Finding                                       |
|---|-----------------|----------|-----------------------------------------------|
| 1 | unresolved-type | error    | a reference is undeclared or of another kind  |
| 2 | duplicate-name  | error    | two items, members, fields or arguments clash |
| 3 | thread-safety   | warning  | concurrent object takes a single-threaded one |
| 4 | error-type      | warning  | error type is not an enum or object           |
| 5 | abi-recursion   | warning  | unbounded recursion through value types       |

Checks 1 and 2 are structural: when either finds something the checks
after it are not run and the whole run aborts. Checks 3 to 5 attach a
warning to the affected item; the item and everything that references it
is then skipped, unless the policy promotes the warning code to fatal.
"""

import logging
from typing import Iterable, Iterator, Optional

from ffibridge.config import ValidationPolicy
from ffibridge.diagnostics import Diagnostic, DiagnosticCode, Severity
from ffibridge.errors import (
    DuplicateDefinition,
    FfiBridgeError,
    InterfaceError,
    UnresolvedTypeReference,
    ValidationFailed,
)
from ffibridge.ir.model import (
    CallbackInterface,
    Enum,
    Function,
    InterfaceDescription,
    Item,
    Object,
    Record,
    ThreadingPolicy,
    iter_callables,
)
from ffibridge.ir.types import (
    NAMED_TYPE_CLASSES,
    EnumType,
    ExternalType,
    ItemRef,
    NamedType,
    ObjectType,
    OptionalType,
    RecordType,
    TypeRef,
    named_references,
)

logger = logging.getLogger(__name__)

# Item kind each resolved reference class expects
REF_KINDS: dict[type, str] = {cls: kind for kind, cls in NAMED_TYPE_CLASSES.items()}


def validate(ir: InterfaceDescription) -> list[Diagnostic]:
    """
    Run every check against an interface.

    Args:
        ir: The built interface description

    Returns:
        Diagnostics in check order; empty when the interface is clean
    """
    diagnostics = list(_check_resolution(ir))
    diagnostics.extend(_check_duplicates(ir))
    if any(d.is_error for d in diagnostics):
        return diagnostics

    diagnostics.extend(_check_thread_safety(ir))
    diagnostics.extend(_check_error_types(ir))
    diagnostics.extend(_check_recursion(ir))
    logger.debug(f"Validated '{ir.namespace}': {len(diagnostics)} finding(s)")
    return diagnostics


# =============================================================================
# Structural Checks
# =============================================================================

def _check_resolution(ir: InterfaceDescription) -> Iterator[Diagnostic]:
    declared = {item.name: item.kind for item in ir.items}
    for item in ir.items:
        reported = set()
        for ref in item.types():
            for named in named_references(ref):
                problem = _resolution_problem(named, declared)
                if problem is None or str(named) in reported:
                    continue
                reported.add(str(named))
                yield Diagnostic(
                    DiagnosticCode.UNRESOLVED_TYPE,
                    Severity.ERROR,
                    f"type '{named}' {problem}",
                    item=item.name,
                    location=item.location,
                    subject=str(named),
                )


def _resolution_problem(named: TypeRef, declared: dict[str, str]) -> Optional[str]:
    """Why a named reference does not resolve, or None when it does."""
    if isinstance(named, ExternalType):
        return "does not resolve to any declared item" if named.kind is None else None
    if isinstance(named, NamedType) or named.name not in declared:
        return "does not resolve to any declared item"
    kind = declared[named.name]
    if NAMED_TYPE_CLASSES.get(kind) is not type(named):
        return f"is referenced as kind '{REF_KINDS[type(named)]}' but declared as kind '{kind}'"
    return None


def _duplicates(names: Iterable[str]) -> list[str]:
    seen, repeated = set(), []
    for name in names:
        if name in seen and name not in repeated:
            repeated.append(name)
        seen.add(name)
    return repeated


def _member_groups(item: Item) -> Iterator[tuple[str, list[str]]]:
    """Yield (scope description, names) for every name scope inside an item."""
    if isinstance(item, Object):
        yield "constructor", [c.name for c in item.constructors]
        yield "method", [m.name for m in item.methods]
    elif isinstance(item, CallbackInterface):
        yield "method", [m.name for m in item.methods]
    elif isinstance(item, Record):
        yield "field", [f.name for f in item.fields]
    elif isinstance(item, Enum):
        yield "variant", [v.name for v in item.variants]
        for variant in item.variants:
            yield f"field of variant '{variant.name}'", [f.name for f in variant.fields]

    for callable_ in iter_callables(item):
        label = item.name if isinstance(item, Function) else f"{item.name}.{callable_.name}"
        yield f"argument of '{label}'", [a.name for a in callable_.arguments]


def _check_duplicates(ir: InterfaceDescription) -> Iterator[Diagnostic]:
    for name in _duplicates(item.name for item in ir.items):
        item = ir.get(name)
        yield Diagnostic(
            DiagnosticCode.DUPLICATE_NAME,
            Severity.ERROR,
            f"'{name}' is declared more than once in namespace '{ir.namespace}'",
            item=name,
            location=item.location if item else None,
            subject=name,
        )

    for item in ir.items:
        for scope, names in _member_groups(item):
            for name in _duplicates(names):
                yield Diagnostic(
                    DiagnosticCode.DUPLICATE_NAME,
                    Severity.ERROR,
                    f"{scope} '{name}' is declared more than once",
                    item=item.name,
                    location=item.location,
                    subject=f"{item.name}.{name}",
                )


# =============================================================================
# Semantic Checks
# =============================================================================

def _reachable(ir: InterfaceDescription, ref: TypeRef) -> Iterator[TypeRef]:
    """Every reference reachable from ref, following record and enum fields."""
    visited: set[str] = set()
    pending = [ref]
    while pending:
        for node in pending.pop().walk():
            yield node
            if isinstance(node, (RecordType, EnumType)) and node.name not in visited:
                visited.add(node.name)
                target = ir.get(node.name)
                if target is not None:
                    pending.extend(target.types())


def _check_thread_safety(ir: InterfaceDescription) -> Iterator[Diagnostic]:
    single_threaded = {
        obj.name for obj in ir.objects if obj.threading == ThreadingPolicy.SINGLE_THREADED
    }
    for obj in ir.objects:
        if obj.threading != ThreadingPolicy.CONCURRENT:
            continue
        for member in (*obj.constructors, *obj.methods):
            for arg in member.arguments:
                offenders = sorted({
                    node.name for node in _reachable(ir, arg.type)
                    if isinstance(node, ObjectType) and node.name in single_threaded
                })
                for offender in offenders:
                    yield Diagnostic(
                        DiagnosticCode.THREAD_SAFETY,
                        Severity.WARNING,
                        f"concurrent object method '{member.name}' takes non-thread-safe "
                        f"type '{offender}' in argument '{arg.name}'",
                        item=obj.name,
                        location=obj.location,
                        subject=offender,
                    )


def _is_valid_error_type(ir: InterfaceDescription, ref: TypeRef) -> bool:
    if isinstance(ref, ExternalType):
        return ref.kind in ("enum", "object")
    if isinstance(ref, (EnumType, ObjectType)):
        return isinstance(ir.get(ref.name), (Enum, Object))
    return False


def _check_error_types(ir: InterfaceDescription) -> Iterator[Diagnostic]:
    for item in ir.items:
        for callable_ in iter_callables(item):
            if callable_.throws is None or _is_valid_error_type(ir, callable_.throws):
                continue
            label = item.name if isinstance(item, Function) else f"{item.name}.{callable_.name}"
            yield Diagnostic(
                DiagnosticCode.ERROR_TYPE,
                Severity.WARNING,
                f"'{label}' throws '{callable_.throws}', which is not a declared enum or object",
                item=item.name,
                location=item.location,
                subject=str(callable_.throws),
            )


def _direct_value_edges(ir: InterfaceDescription, item: Item) -> set[str]:
    """
    Value types an item contains without indirection.

    Records are followed through optionals as well, since an optional
    record is stored inline by every native representation.
    """
    edges = set()

    def visit(ref: TypeRef) -> None:
        if isinstance(ref, (RecordType, EnumType)):
            edges.add(ref.name)
        elif isinstance(ref, OptionalType) and isinstance(item, Record):
            visit(ref.inner)

    for ref in item.types():
        visit(ref)
    return {name for name in edges if isinstance(ir.get(name), (Record, Enum))}


def _recursive_value_types(ir: InterfaceDescription) -> set[str]:
    """Names of records and enums that take part in a by-value cycle."""
    graph = {item.name: _direct_value_edges(ir, item) for item in ir.items if isinstance(item, (Record, Enum))}
    cyclic: set[str] = set()

    for start in graph:
        stack = list(graph[start])
        seen: set[str] = set()
        while stack:
            name = stack.pop()
            if name == start:
                cyclic.add(start)
                break
            if name in seen:
                continue
            seen.add(name)
            stack.extend(graph.get(name, ()))
    return cyclic


def _check_recursion(ir: InterfaceDescription) -> Iterator[Diagnostic]:
    cyclic = _recursive_value_types(ir)
    for name in sorted(cyclic, key=lambda n: [i.name for i in ir.items].index(n)):
        item = ir.get(name)
        yield Diagnostic(
            DiagnosticCode.ABI_RECURSION,
            Severity.WARNING,
            f"'{name}' contains itself by value and has no finite representation",
            item=name,
            location=item.location,
            subject=name,
        )

    for callback in ir.callback_interfaces:
        for method in callback.methods:
            reached = sorted({
                node.name for ref in method.types() for node in _reachable(ir, ref)
                if isinstance(node, ItemRef) and node.name in cyclic
            })
            for name in reached:
                yield Diagnostic(
                    DiagnosticCode.ABI_RECURSION,
                    Severity.WARNING,
                    f"callback method '{method.name}' passes recursive value type '{name}'",
                    item=callback.name,
                    location=callback.location,
                    subject=name,
                )


# =============================================================================
# Policy
# =============================================================================

def _typed_error(diagnostic: Diagnostic) -> FfiBridgeError:
    if diagnostic.code == DiagnosticCode.UNRESOLVED_TYPE:
        return UnresolvedTypeReference(diagnostic.subject, item=diagnostic.item, location=diagnostic.location)
    if diagnostic.code == DiagnosticCode.DUPLICATE_NAME:
        return DuplicateDefinition(diagnostic.subject, location=diagnostic.location)
    return InterfaceError(
        f"{diagnostic.message} ({diagnostic.code.value})",
        location=diagnostic.location,
        item=diagnostic.item,
    )


def dependents_of(ir: InterfaceDescription, names: set[str]) -> set[str]:
    """Items that reference any of names, directly or transitively."""
    references = {
        item.name: {
            node.name for ref in item.types() for node in named_references(ref)
            if isinstance(node, ItemRef)
        }
        for item in ir.items
    }
    closed = set(names)
    changed = True
    while changed:
        changed = False
        for name, refs in references.items():
            if name not in closed and refs & closed:
                closed.add(name)
                changed = True
    return closed - set(names)


def apply_policy(
    ir: InterfaceDescription,
    diagnostics: list[Diagnostic],
    policy: Optional[ValidationPolicy] = None,
) -> tuple[InterfaceDescription, list[Diagnostic]]:
    """
    Apply a validation policy to the validator's findings.

    Args:
        ir: The validated interface
        diagnostics: Output of validate()
        policy: Which warning codes are fatal (default: none)

    Returns:
        (interface without skipped items, final diagnostics including
        skipped-dependency warnings)

    Raises:
        ValidationFailed: On any structural error or promoted warning
    """
    policy = policy or ValidationPolicy()
    diagnostics = list(diagnostics)

    if any(d.is_error for d in diagnostics):
        errors = [d for d in diagnostics if d.is_error]
        raise ValidationFailed(diagnostics, [_typed_error(d) for d in errors])

    affected = {d.item for d in diagnostics if d.severity == Severity.WARNING and d.item}
    dependents = dependents_of(ir, affected)
    skipped_all = affected | dependents
    for item in ir.items:
        if item.name not in dependents:
            continue
        blockers = sorted({
            node.name for ref in item.types() for node in named_references(ref)
            if isinstance(node, ItemRef) and node.name in skipped_all
        })
        diagnostics.append(
            Diagnostic(
                DiagnosticCode.SKIPPED_DEPENDENCY,
                Severity.WARNING,
                "skipped because it references skipped item(s) "
                + ", ".join(f"'{b}'" for b in blockers),
                item=item.name,
                location=item.location,
                subject=blockers[0],
            )
        )

    final = [
        d.promoted() if d.severity == Severity.WARNING and policy.is_fatal(d.code.value) else d
        for d in diagnostics
    ]
    fatal = [d for d in final if d.is_error]
    if fatal:
        raise ValidationFailed(final, [_typed_error(d) for d in fatal])

    skipped = {d.item for d in final if d.severity == Severity.WARNING and d.item}
    for name in sorted(skipped):
        logger.debug(f"Skipping '{name}' from every emitter")
    return ir.without(skipped), final
