"""
IR Builder
==========

Merges raw source batches into one resolved InterfaceDescription.

Build Steps
-----------
1. **Merge**: batches of the primary namespace are merged in caller
   priority order. Item order follows first-seen source order. A name
   declared by two different batches is a DuplicateDefinition unless the
   configured duplicates policy (or a per-name override) says otherwise.
   Repeats inside one batch are left for the Validator to report.
2. **Overlay**: configured omissions, then item renames and the
   namespace rename are applied. Renamed items keep their position and
   every reference to them is rewritten.
3. **Resolve**: all declarations are collected into a lookup first, then
   every NamedType is replaced by the reference class for the item kind
   it names, and External references get their kind from the imported
   descriptions. Unresolvable names are left in place for the Validator.
4. **Checksum**: the 16-bit interface checksum is computed over the
   final items.

Batches of other namespaces are not merged; their items become the
import table that External references resolve against.

Example
-------
>>> builder = InterfaceBuilder(config)
>>> ir = builder.build([idl_batch, library_batch])
"""

import logging
from dataclasses import replace
from typing import Optional, Sequence

from ffibridge.config import ConfigOverlay, DuplicatePolicy, NamespaceConfig
from ffibridge.errors import ConfigConflict, DuplicateDefinition, InterfaceError
from ffibridge.ir.checksum import interface_checksum
from ffibridge.ir.model import (
    CallbackInterface,
    ExternalDeclaration,
    Function,
    InterfaceDescription,
    Item,
    Object,
    SourceBatch,
)
from ffibridge.ir.types import (
    NAMED_TYPE_CLASSES,
    ExternalType,
    NamedType,
    TypeRef,
    ItemRef,
    named_references,
)

logger = logging.getLogger(__name__)


class InterfaceBuilder:
    """
    Two-pass builder for InterfaceDescription.

    Attributes:
        config: Configuration overlay keyed by namespace
        imports: Already-built descriptions of other namespaces
    """

    def __init__(
        self,
        config: Optional[ConfigOverlay] = None,
        imports: Sequence[InterfaceDescription] = (),
    ):
        self.config = config or ConfigOverlay()
        self.imports = list(imports)

    def build(
        self,
        batches: Sequence[SourceBatch],
        namespace: Optional[str] = None,
    ) -> InterfaceDescription:
        """
        Merge, overlay and resolve batches into one description.

        Args:
            batches: Raw batches in priority order
            namespace: Primary namespace; defaults to the first batch's

        Raises:
            DuplicateDefinition: Two batches declare one name without a policy
            ConfigConflict: The overlay contradicts the declared items
            InterfaceError: No batch declares the primary namespace
        """
        if not batches:
            raise InterfaceError("no interface sources to build from")

        primary = namespace or batches[0].namespace
        ns_config = self.config.for_namespace(primary)
        primary_batches = [b for b in batches if b.namespace == primary]
        foreign_batches = [b for b in batches if b.namespace != primary]
        if not primary_batches:
            raise InterfaceError(f"no source declares namespace '{primary}'")

        items = self._merge(primary_batches, ns_config)
        items = self._apply_omissions(items, ns_config)
        items = self._apply_renames(items, ns_config)
        items, imports = self._resolve(items, foreign_batches)

        final_namespace = ns_config.namespace or primary
        docstring = next((b.docstring for b in primary_batches if b.docstring), None)
        ir = InterfaceDescription(
            namespace=final_namespace,
            items=tuple(items),
            imports=tuple(imports),
            checksum=interface_checksum(final_namespace, items),
            docstring=docstring,
        )
        logger.debug(
            f"Built interface '{final_namespace}': {len(ir.items)} items, "
            f"{len(ir.imports)} imports, checksum 0x{ir.checksum:04X}"
        )
        return ir

    # =========================================================================
    # Merge
    # =========================================================================

    def _merge(self, batches: list[SourceBatch], ns_config: NamespaceConfig) -> list[Item]:
        merged: list[Item] = []
        first_seen: dict[str, tuple[int, str, int]] = {}   # name -> (batch, origin, position)

        for batch_index, batch in enumerate(batches):
            for item in batch.items:
                previous = first_seen.get(item.name)
                if previous is None:
                    first_seen[item.name] = (batch_index, batch.origin, len(merged))
                    merged.append(item)
                    continue
                if previous[0] == batch_index:
                    merged.append(item)
                    continue

                policy = ns_config.duplicates
                if item.name in ns_config.overrides:
                    policy = DuplicatePolicy.KEEP_FIRST

                if policy == DuplicatePolicy.ERROR:
                    raise DuplicateDefinition(
                        item.name,
                        first=previous[1],
                        second=batch.origin,
                        location=item.location,
                    )
                if policy == DuplicatePolicy.KEEP_LAST:
                    merged[previous[2]] = item
                logger.debug(
                    f"Duplicate '{item.name}' from {batch.origin} resolved by {policy.value}"
                )
        return merged

    # =========================================================================
    # Overlay
    # =========================================================================

    def _conflict(self, message: str, item: Optional[str] = None, hint: Optional[str] = None) -> ConfigConflict:
        if self.config.source:
            message = f"{message} (in {self.config.source})"
        return ConfigConflict(message, item=item, hint=hint)

    def _apply_omissions(self, items: list[Item], ns_config: NamespaceConfig) -> list[Item]:
        if not ns_config.omit:
            return items

        by_name = {item.name: item for item in items}
        omitted_items = set()
        member_omits: dict[str, set[str]] = {}

        for entry in ns_config.omit:
            owner, _, member = entry.partition(".")
            if owner not in by_name:
                raise self._conflict(f"cannot omit unknown item '{owner}'")
            if member:
                target = by_name[owner]
                if not isinstance(target, (Object, CallbackInterface)):
                    raise self._conflict(f"cannot omit member '{member}': '{owner}' has no methods", item=owner)
                names = {m.name for m in target.methods}
                if isinstance(target, Object):
                    names |= {c.name for c in target.constructors}
                if member not in names:
                    raise self._conflict(f"cannot omit unknown member '{entry}'", item=owner)
                member_omits.setdefault(owner, set()).add(member)
            else:
                omitted_items.add(owner)

        result = []
        for item in items:
            if item.name in omitted_items:
                logger.debug(f"Omitting '{item.name}' by configuration")
                continue
            dropped = member_omits.get(item.name)
            if dropped and isinstance(item, Object):
                item = replace(
                    item,
                    constructors=tuple(c for c in item.constructors if c.name not in dropped),
                    methods=tuple(m for m in item.methods if m.name not in dropped),
                )
            elif dropped and isinstance(item, CallbackInterface):
                item = replace(item, methods=tuple(m for m in item.methods if m.name not in dropped))
            result.append(item)

        for item in result:
            for ref in item.types():
                for named in named_references(ref):
                    if isinstance(named, ItemRef) and named.name in omitted_items:
                        raise self._conflict(
                            f"'{named.name}' is omitted but still referenced",
                            item=item.name,
                            hint=f"omit '{item.name}' as well, or keep '{named.name}'",
                        )
        return result

    def _apply_renames(self, items: list[Item], ns_config: NamespaceConfig) -> list[Item]:
        renames = ns_config.rename
        if not renames:
            return items

        names = [item.name for item in items]
        for old, new in renames.items():
            if old not in names:
                raise self._conflict(f"cannot rename unknown item '{old}'")
            if new in names and new not in renames:
                raise self._conflict(f"renaming '{old}' to '{new}' collides with an existing item", item=old)
        targets = list(renames.values())
        for new in set(targets):
            if targets.count(new) > 1:
                raise self._conflict(f"several items are renamed to '{new}'")

        def rename_ref(ref: TypeRef) -> TypeRef:
            if isinstance(ref, ItemRef) and ref.name in renames:
                return type(ref)(renames[ref.name])
            return ref

        result = []
        for item in items:
            item = item.map_types(rename_ref)
            if item.name in renames:
                logger.debug(f"Renaming '{item.name}' to '{renames[item.name]}'")
                item = replace(item, name=renames[item.name])
            result.append(item)
        return result

    # =========================================================================
    # Resolution
    # =========================================================================

    def _import_table(self, foreign_batches: list[SourceBatch]) -> dict[tuple[str, str], str]:
        table: dict[tuple[str, str], str] = {}
        for ir in self.imports:
            for item in ir.items:
                table.setdefault((ir.namespace, item.name), item.kind)
        for batch in foreign_batches:
            for item in batch.items:
                table.setdefault((batch.namespace, item.name), item.kind)
        return table

    def _resolve(
        self,
        items: list[Item],
        foreign_batches: list[SourceBatch],
    ) -> tuple[list[Item], list[ExternalDeclaration]]:
        # Pass 1: collect declarations
        local: dict[str, str] = {}
        for item in items:
            local.setdefault(item.name, item.kind)
        imported = self._import_table(foreign_batches)

        used_imports: dict[tuple[str, str], ExternalDeclaration] = {}

        # Pass 2: resolve every reference against the lookups
        def resolve_ref(ref: TypeRef) -> TypeRef:
            if isinstance(ref, NamedType):
                kind = local.get(ref.name)
                if kind in NAMED_TYPE_CLASSES:
                    return NAMED_TYPE_CLASSES[kind](ref.name)
                return ref
            if isinstance(ref, ExternalType):
                kind = ref.kind or imported.get((ref.namespace, ref.name))
                if kind is None:
                    return ref
                key = (ref.namespace, ref.name)
                used_imports.setdefault(key, ExternalDeclaration(ref.namespace, ref.name, kind))
                return ExternalType(ref.namespace, ref.name, kind)
            return ref

        resolved = [item.map_types(resolve_ref) for item in items]
        return resolved, list(used_imports.values())


def build_interface(
    batches: Sequence[SourceBatch],
    config: Optional[ConfigOverlay] = None,
    imports: Sequence[InterfaceDescription] = (),
    namespace: Optional[str] = None,
) -> InterfaceDescription:
    """Convenience wrapper around InterfaceBuilder.build()."""
    return InterfaceBuilder(config, imports).build(batches, namespace)
