"""
ABI Lowering
============

Turns an InterfaceDescription into its ComponentFfi: every exported
symbol with its C-compatible signature, the checksum functions, the
callback vtables and the future families async calls need.

Both the scaffolding emitter and every bindings backend read the same
ComponentFfi, so symbol names and signatures agree by construction.

Symbol Names
------------
All symbols start with ``ffibridge_<namespace>_`` and use lower-cased
item and member names:

    fn_func_<function>                 fn_clone_<object>
    fn_constructor_<object>_<ctor>     fn_free_<object>
    fn_method_<object>_<method>        fn_init_callback_vtable_<callback>
    checksum_func_<function>           checksum_constructor_<object>_<ctor>
    checksum_method_<object>_<method>  contract_version
    buffer_alloc  buffer_from_bytes  buffer_free
    future_poll_<suffix>  future_complete_<suffix>
    future_cancel_<suffix>  future_free_<suffix>

Two callables that map to one symbol raise DuplicateDefinition.
"""

import logging
from typing import Optional

from ffibridge.errors import DuplicateDefinition
from ffibridge.ffi.types import (
    VOID_SUFFIX,
    CallbackVTable,
    ComponentFfi,
    FfiArgument,
    FfiFunction,
    FfiType,
    FutureFamily,
    ObjectFunctions,
    VTableMethod,
)
from ffibridge.ir.checksum import callable_checksum
from ffibridge.ir.model import (
    CallbackInterface,
    Function,
    InterfaceDescription,
    Object,
    SelfMode,
)
from ffibridge.ir.serialize import callable_to_json
from ffibridge.ir.types import (
    OptionalType,
    PrimitiveKind,
    PrimitiveType,
    TypeRef,
    is_handle_type,
)

logger = logging.getLogger(__name__)

CONTRACT_VERSION = 1

PRIMITIVE_FFI_TYPES: dict[PrimitiveKind, FfiType] = {
    PrimitiveKind.I8: FfiType.INT8,
    PrimitiveKind.U8: FfiType.UINT8,
    PrimitiveKind.I16: FfiType.INT16,
    PrimitiveKind.U16: FfiType.UINT16,
    PrimitiveKind.I32: FfiType.INT32,
    PrimitiveKind.U32: FfiType.UINT32,
    PrimitiveKind.I64: FfiType.INT64,
    PrimitiveKind.U64: FfiType.UINT64,
    PrimitiveKind.F32: FfiType.FLOAT32,
    PrimitiveKind.F64: FfiType.FLOAT64,
    PrimitiveKind.BOOLEAN: FfiType.INT8,
}


def lower_type(ref: TypeRef) -> FfiType:
    """
    The FFI type a value of ref crosses the boundary as.

    Numbers keep their exact width and signedness; handle types and
    optional handle types cross as a handle; everything else is a buffer.
    """
    if isinstance(ref, PrimitiveType) and ref.kind in PRIMITIVE_FFI_TYPES:
        return PRIMITIVE_FFI_TYPES[ref.kind]
    if is_handle_type(ref):
        return FfiType.HANDLE
    if isinstance(ref, OptionalType) and is_handle_type(ref.inner):
        return FfiType.HANDLE
    return FfiType.BUFFER


def lower_return(ref: Optional[TypeRef]) -> Optional[FfiType]:
    return lower_type(ref) if ref is not None else None


def symbol_prefix(namespace: str) -> str:
    return f"ffibridge_{namespace.lower()}_"


class FfiLowering:
    """
    Builds the ComponentFfi for one interface.

    Example:
        ffi = FfiLowering(ir).lower()
        ffi.function_for("Counter", "increment").name
        # 'ffibridge_counter_fn_method_counter_increment'
    """

    def __init__(self, ir: InterfaceDescription):
        self.ir = ir
        self.ffi = ComponentFfi(
            namespace=ir.namespace,
            prefix=symbol_prefix(ir.namespace),
            contract_version=CONTRACT_VERSION,
            checksum=ir.checksum,
        )
        self._owners: dict[str, str] = {}   # symbol -> what declared it

    def lower(self) -> ComponentFfi:
        """
        Raises:
            DuplicateDefinition: If two exports would share a symbol
        """
        self._builtins()
        for item in self.ir.items:
            if isinstance(item, Function):
                self._function(item)
            elif isinstance(item, Object):
                self._object(item)
            elif isinstance(item, CallbackInterface):
                self._callback(item)
        logger.debug(
            f"Lowered '{self.ir.namespace}' to {len(self.ffi.functions)} symbols, "
            f"{len(self.ffi.futures)} future families"
        )
        return self.ffi

    # =========================================================================
    # Registration
    # =========================================================================

    def _add(self, fn: FfiFunction, declared_by: str) -> FfiFunction:
        previous = self._owners.get(fn.name)
        if previous is not None:
            raise DuplicateDefinition(fn.name, first=previous, second=declared_by)
        self._owners[fn.name] = declared_by
        self.ffi.functions.append(fn)
        return fn

    def _symbol(self, *parts: str) -> str:
        return self.ffi.prefix + "_".join(p.lower() for p in parts)

    def _builtins(self) -> None:
        self._add(
            FfiFunction(self._symbol("contract_version"), return_type=FfiType.UINT32, has_call_status=False),
            "contract version",
        )
        self._add(
            FfiFunction(
                self._symbol("buffer_alloc"),
                (FfiArgument("size", FfiType.UINT64),),
                FfiType.BUFFER,
            ),
            "buffer allocator",
        )
        self._add(
            FfiFunction(
                self._symbol("buffer_from_bytes"),
                (FfiArgument("bytes", FfiType.FOREIGN_BYTES),),
                FfiType.BUFFER,
            ),
            "buffer allocator",
        )
        self._add(
            FfiFunction(self._symbol("buffer_free"), (FfiArgument("buf", FfiType.BUFFER),)),
            "buffer allocator",
        )

    def _checksum(self, kind: str, owner: str, callable_) -> None:
        parts = ("checksum", kind, owner, callable_.name) if owner else ("checksum", kind, callable_.name)
        symbol = self._symbol(*parts)
        self._add(
            FfiFunction(symbol, return_type=FfiType.UINT16, has_call_status=False),
            f"checksum of {owner + '.' if owner else ''}{callable_.name}",
        )
        self.ffi.checksums[symbol] = callable_checksum(
            self.ir.namespace, owner, callable_to_json(callable_)
        )
        self.ffi.checksum_symbols[(owner, callable_.name)] = symbol

    def _future_family(self, return_type: Optional[FfiType]) -> None:
        suffix = return_type.suffix if return_type else VOID_SUFFIX
        if suffix in self.ffi.futures:
            return
        handle = (FfiArgument("handle", FfiType.HANDLE),)
        family = FutureFamily(
            suffix=suffix,
            return_type=return_type,
            poll=FfiFunction(
                self._symbol("future_poll", suffix),
                handle + (
                    FfiArgument("continuation", FfiType.CONTINUATION),
                    FfiArgument("data", FfiType.UINT64),
                ),
                has_call_status=False,
            ),
            complete=FfiFunction(self._symbol("future_complete", suffix), handle, return_type),
            cancel=FfiFunction(self._symbol("future_cancel", suffix), handle, has_call_status=False),
            free=FfiFunction(self._symbol("future_free", suffix), handle, has_call_status=False),
        )
        for fn in family.functions:
            self._add(fn, f"future family '{suffix}'")
        self.ffi.futures[suffix] = family

    def _callable(
        self,
        symbol: str,
        owner: str,
        callable_,
        return_type: Optional[FfiType],
        receiver: Optional[FfiArgument] = None,
    ) -> FfiFunction:
        args = tuple(FfiArgument(a.name, lower_type(a.type)) for a in callable_.arguments)
        if receiver is not None:
            args = (receiver,) + args
        if callable_.is_async:
            fn = FfiFunction(symbol, args, FfiType.HANDLE, has_call_status=False, is_async=True)
            self._future_family(return_type)
        else:
            fn = FfiFunction(symbol, args, return_type)
        self._add(fn, f"{owner + '.' if owner else ''}{callable_.name}")
        self.ffi.callables[(owner, callable_.name)] = fn
        return fn

    # =========================================================================
    # Items
    # =========================================================================

    def _function(self, function: Function) -> None:
        self._callable(
            self._symbol("fn_func", function.name),
            "",
            function,
            lower_return(function.return_type),
        )
        self._checksum("func", "", function)

    def _object(self, obj: Object) -> None:
        handle = FfiArgument("handle", FfiType.HANDLE)
        clone = self._add(
            FfiFunction(self._symbol("fn_clone", obj.name), (handle,), FfiType.HANDLE),
            f"{obj.name} clone",
        )
        free = self._add(
            FfiFunction(self._symbol("fn_free", obj.name), (handle,)),
            f"{obj.name} free",
        )
        self.ffi.objects[obj.name] = ObjectFunctions(clone=clone, free=free)

        for ctor in obj.constructors:
            self._callable(
                self._symbol("fn_constructor", obj.name, ctor.name),
                obj.name,
                ctor,
                FfiType.HANDLE,
            )
            self._checksum("constructor", obj.name, ctor)

        for method in obj.methods:
            receiver_name = "self_owned" if method.self_mode == SelfMode.CONSUMING else "self"
            self._callable(
                self._symbol("fn_method", obj.name, method.name),
                obj.name,
                method,
                lower_return(method.return_type),
                receiver=FfiArgument(receiver_name, FfiType.HANDLE),
            )
            self._checksum("method", obj.name, method)

    def _callback(self, callback: CallbackInterface) -> None:
        init = self._add(
            FfiFunction(
                self._symbol("fn_init_callback_vtable", callback.name),
                (FfiArgument("vtable", FfiType.VTABLE),),
                has_call_status=False,
            ),
            f"{callback.name} vtable",
        )
        methods = []
        for method in callback.methods:
            args = [FfiArgument("handle", FfiType.HANDLE)]
            args.extend(FfiArgument(a.name, lower_type(a.type)) for a in method.arguments)
            return_type = lower_return(method.return_type)
            if return_type is not None:
                args.append(FfiArgument("out_return", return_type, out=True))
            methods.append(VTableMethod(method.name, tuple(args), return_type))
        self.ffi.vtables[callback.name] = CallbackVTable(callback.name, init, tuple(methods))


def lower_interface(ir: InterfaceDescription) -> ComponentFfi:
    """Convenience wrapper around FfiLowering.lower()."""
    return FfiLowering(ir).lower()
