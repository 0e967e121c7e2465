"""
Host functions imported by the wasm-bindgen module.

Imports are matched on their wasm-bindgen base name: ``__wbg_<name>_<hash>``
is looked up by ``<name>`` so a rebuilt module with new hashes still links,
while a module that needs something new fails to link instead of running
against a stub. Overloaded names (``now``, ``new``, ``then``,
``queueMicrotask``) are told apart by their declared signature.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from wasmtime import FuncType, Linker, Module

from app.exceptions import LinkError
from app.wasm.browser import (
    Canvas,
    CanvasContext2D,
    JSObject,
    Window,
)
from app.wasm.heap import UNDEFINED
from app.wasm.promise import HostFunction, HostPromise

logger = logging.getLogger(__name__)

_WBG_NAME = re.compile(r"^__wbg_(?P<base>.+)_[0-9a-f]{16}$")
_CLOSURE_NAME = re.compile(r"^__wbindgen_closure_wrapper(?P<number>\d+)$")

# closure wrapper number -> destructor index in the module's function table
KNOWN_CLOSURE_DTORS: Dict[int, int] = {982: 36}

ACCEPTED_MODULES = ("wbg",)


class ModuleThrow(Exception):
    """Raised when the module calls __wbindgen_throw."""
    pass


def host_import(base: str, arity: Optional[int] = None, results: Optional[int] = None, catch: bool = False):
    """Mark a resolver method as the implementation of import ``base``."""
    def decorator(fn):
        specs = getattr(fn, "_host_imports", [])
        specs.append((base, arity, results, catch))
        fn._host_imports = specs
        return fn
    return decorator


def _is_like_none(value: Any) -> bool:
    return value is None or value is UNDEFINED


def _is_function(value: Any) -> bool:
    if isinstance(value, HostFunction):
        return True
    return callable(value) and not isinstance(value, (JSObject, HostPromise, type))


def _property_key(name: Any) -> str:
    """JS property-key coercion: integral numbers index as ``"0"``, not ``"0.0"``."""
    if isinstance(name, bool):
        return "true" if name else "false"
    if isinstance(name, float) and name.is_integer():
        return str(int(name))
    return str(name)


def _get_property(obj: Any, name: Any) -> Any:
    if isinstance(obj, JSObject):
        return obj.get_property(_property_key(name))
    if isinstance(obj, dict):
        return obj.get(name, UNDEFINED)
    if isinstance(obj, (list, tuple, str)):
        key = _property_key(name)
        if key == "length":
            return len(obj)
        if key.isdigit():
            index = int(key)
            return obj[index] if index < len(obj) else UNDEFINED
    return UNDEFINED


def _require_property(obj: Any, name: str) -> Any:
    value = _get_property(obj, name)
    if value is UNDEFINED:
        raise TypeError(f"{obj!r} has no property '{name}'")
    return value


def _call_value(fn: Any, this: Any, args: Sequence[Any]) -> Any:
    if isinstance(fn, HostFunction):
        return fn.call(this, *args)
    if _is_function(fn):
        return fn(*args)
    raise TypeError(f"{fn!r} is not a function")


class ImportResolver:
    """Implements every host function the module imports, against one host's state."""

    def __init__(self, host, closure_dtors: Optional[Dict[int, int]] = None):
        self.host = host
        self.table = host.table
        self.browser = host.browser
        self.queue = host.queue
        self.closure_dtors = dict(KNOWN_CLOSURE_DTORS if closure_dtors is None else closure_dtors)
        self.browser.window.queueMicrotask = HostFunction(self._queue_microtask, "queueMicrotask")

    # -- linking ----------------------------------------------------------

    def resolve(self, module_name: str, name: str, ty: Any) -> Optional[Callable[..., Any]]:
        """Return the callback for one import, or None when it is not implemented."""
        if module_name not in ACCEPTED_MODULES and not module_name.endswith("_bg.js"):
            return None
        if not isinstance(ty, FuncType):
            return None
        params, results = len(ty.params), len(ty.results)
        result_kinds = [str(r) for r in ty.results]

        closure = _CLOSURE_NAME.match(name)
        if closure:
            dtor = self.closure_dtors.get(int(closure.group("number")))
            if dtor is None:
                return None
            return self._bind(lambda *args: self.closure_wrapper(dtor, *args), False, result_kinds)

        if name.startswith("__wbindgen_"):
            base = name[len("__wbindgen_"):]
            candidates = _INTRINSICS.get(base, [])
        else:
            match = _WBG_NAME.match(name)
            if not match:
                return None
            candidates = _IMPORTS.get(match.group("base"), [])

        for attr, arity, want_results, catch in candidates:
            if arity is not None and arity != params:
                continue
            if want_results is not None and want_results != results:
                continue
            return self._bind(getattr(self, attr), catch, result_kinds)
        return None

    def link(self, linker: Linker, module: Module) -> None:
        """Define every import of ``module`` on ``linker``; all-or-nothing."""
        resolved: List[Tuple[str, str, FuncType, Callable]] = []
        missing: List[str] = []
        for imp in module.imports:
            callback = self.resolve(imp.module, imp.name, imp.type)
            if callback is None:
                missing.append(f"{imp.module}.{imp.name}")
            else:
                resolved.append((imp.module, imp.name, imp.type, callback))

        if missing:
            logger.error(f"❌ Module declares {len(missing)} unresolved import(s): {missing[:10]}")
            raise LinkError(f"Unresolved module imports: {', '.join(missing)}", missing=missing)

        for module_name, name, ty, callback in resolved:
            linker.define_func(module_name, name, ty, callback)
        logger.info(f"🔗 Linked {len(resolved)} host imports")

    def _bind(self, handler: Callable[..., Any], catch: bool, result_kinds: List[str]) -> Callable[..., Any]:
        def callback(*args):
            if catch:
                try:
                    value = handler(*args)
                except Exception as e:
                    logger.debug(f"Host import raised {type(e).__name__}: {e}")
                    self.host.store_exception(self.table.alloc(e))
                    return _coerce(None, result_kinds)
            else:
                value = handler(*args)
            return _coerce(value, result_kinds)
        return callback

    # -- helpers ----------------------------------------------------------

    @property
    def memory(self):
        return self.host.memory

    def _obj(self, handle: int) -> Any:
        return self.table.get(handle)

    def _str(self, ptr: int, length: int) -> str:
        return self.memory.read_string(ptr, length)

    def _add(self, value: Any) -> int:
        return self.table.alloc(value)

    def _add_or_zero(self, value: Any) -> int:
        return 0 if _is_like_none(value) else self.table.alloc(value)

    def _window_of(self, handle: int) -> Optional[Window]:
        obj = self._obj(handle)
        return obj if isinstance(obj, Window) else None

    def _queue_microtask(self, fn: Any) -> None:
        self.queue.enqueue(lambda: _call_value(fn, UNDEFINED, ()))

    # -- function calls ---------------------------------------------------

    @host_import("call", catch=True)
    def call(self, fn_handle, this_handle, *arg_handles):
        fn = self._obj(fn_handle)
        this = self._obj(this_handle)
        args = [self._obj(h) for h in arg_handles]
        return self._add(_call_value(fn, this, args))

    @host_import("newnoargs")
    def newnoargs(self, ptr, length):
        body = self._str(ptr, length).strip().rstrip(";")
        window = self.browser.window
        if body == "return this":
            return self._add(HostFunction(lambda: window, "anonymous"))

        def unsupported(*_args):
            raise NotImplementedError(f"dynamic function body not supported: {body[:60]}")
        return self._add(HostFunction(unsupported, "anonymous"))

    # -- globals ----------------------------------------------------------

    @host_import("static_accessor_WINDOW")
    @host_import("static_accessor_SELF")
    @host_import("static_accessor_GLOBAL_THIS")
    def static_window(self):
        return self._add(self.browser.window)

    @host_import("static_accessor_GLOBAL")
    def static_global(self):
        return 0

    @host_import("instanceof_Window")
    def instanceof_window(self, handle):
        return isinstance(self._obj(handle), Window)

    @host_import("instanceof_HtmlCanvasElement")
    def instanceof_canvas(self, handle):
        return isinstance(self._obj(handle), Canvas)

    @host_import("instanceof_CanvasRenderingContext2d")
    def instanceof_context(self, handle):
        return isinstance(self._obj(handle), CanvasContext2D)

    # -- document and canvas ----------------------------------------------

    @host_import("document")
    def document(self, handle):
        window = self._window_of(handle)
        return self._add_or_zero(window.document if window else None)

    @host_import("createElement", catch=True)
    def create_element(self, doc_handle, ptr, length):
        return self._add(self._obj(doc_handle).createElement(self._str(ptr, length)))

    @host_import("getElementsByTagName")
    def get_elements_by_tag_name(self, doc_handle, ptr, length):
        return self._add(self._obj(doc_handle).getElementsByTagName(self._str(ptr, length)))

    @host_import("getContext", catch=True)
    def get_context(self, canvas_handle, ptr, length):
        return self._add_or_zero(self._obj(canvas_handle).getContext(self._str(ptr, length)))

    @host_import("fillText", catch=True)
    def fill_text(self, ctx_handle, ptr, length, x, y):
        self._obj(ctx_handle).fillText(self._str(ptr, length), x, y)

    @host_import("setfont")
    def set_font(self, ctx_handle, ptr, length):
        self._obj(ctx_handle).set_property("font", self._str(ptr, length))

    @host_import("settextBaseline")
    def set_text_baseline(self, ctx_handle, ptr, length):
        self._obj(ctx_handle).set_property("textBaseline", self._str(ptr, length))

    @host_import("setwidth")
    def set_width(self, handle, value):
        self._obj(handle).set_property("width", value & 0xFFFFFFFF)

    @host_import("setheight")
    def set_height(self, handle, value):
        self._obj(handle).set_property("height", value & 0xFFFFFFFF)

    @host_import("toDataURL", catch=True)
    def to_data_url(self, retptr, canvas_handle):
        self.memory.write_ret_string(retptr, self._obj(canvas_handle).toDataURL())

    @host_import("width", catch=True)
    def width(self, handle):
        return _require_property(self._obj(handle), "width")

    @host_import("height", catch=True)
    def height(self, handle):
        return _require_property(self._obj(handle), "height")

    @host_import("colorDepth", catch=True)
    def color_depth(self, handle):
        return _require_property(self._obj(handle), "colorDepth")

    @host_import("screen", catch=True)
    def screen(self, handle):
        window = self._window_of(handle)
        return self._add(window.screen if window else self.browser.window.screen)

    # -- storage and navigator --------------------------------------------

    @host_import("localStorage", catch=True)
    def local_storage(self, handle):
        window = self._window_of(handle)
        return self._add_or_zero(window.localStorage if window else self.browser.window.localStorage)

    @host_import("getItem", catch=True)
    def get_item(self, retptr, storage_handle, ptr, length):
        value = self._obj(storage_handle).getItem(self._str(ptr, length))
        self.memory.write_ret_string(retptr, None if _is_like_none(value) else value)

    @host_import("setItem", catch=True)
    def set_item(self, storage_handle, key_ptr, key_len, value_ptr, value_len):
        self._obj(storage_handle).setItem(self._str(key_ptr, key_len), self._str(value_ptr, value_len))

    @host_import("navigator")
    def navigator(self, handle):
        window = self._window_of(handle)
        return self._add(window.navigator if window else self.browser.window.navigator)

    @host_import("language")
    def language(self, retptr, nav_handle):
        value = _get_property(self._obj(nav_handle), "language")
        self.memory.write_ret_string(retptr, None if _is_like_none(value) else value)

    @host_import("platform", catch=True)
    def platform(self, retptr, nav_handle):
        self.memory.write_ret_string(retptr, _require_property(self._obj(nav_handle), "platform"))

    @host_import("userAgent", catch=True)
    def user_agent(self, retptr, nav_handle):
        self.memory.write_ret_string(retptr, _require_property(self._obj(nav_handle), "userAgent"))

    # -- time and randomness ----------------------------------------------

    @host_import("new0")
    def new_date(self):
        return self._add(self.browser.new_date())

    @host_import("now", arity=0)
    def date_now(self):
        return self.browser.date_now()

    @host_import("now", arity=1)
    def performance_now(self, handle):
        return self._obj(handle).now()

    @host_import("getTime")
    def get_time(self, handle):
        return self._obj(handle).getTime()

    @host_import("getTimezoneOffset")
    def get_timezone_offset(self, handle):
        return self._obj(handle).getTimezoneOffset()

    @host_import("performance")
    def performance(self, handle):
        window = self._window_of(handle)
        return self._add_or_zero(window.performance if window else self.browser.window.performance)

    @host_import("random")
    def random(self):
        return self.browser.random_value

    # -- generic objects --------------------------------------------------

    @host_import("length")
    def length(self, handle):
        obj = self._obj(handle)
        value = _get_property(obj, "length")
        return 0 if value is UNDEFINED else value

    @host_import("get", arity=2, catch=True)
    def reflect_get(self, obj_handle, key_handle):
        return self._add(_get_property(self._obj(obj_handle), self._obj(key_handle)))

    @host_import("set", arity=3, catch=True)
    def reflect_set(self, obj_handle, key_handle, value_handle):
        obj = self._obj(obj_handle)
        key = self._obj(key_handle)
        value = self._obj(value_handle)
        if isinstance(obj, JSObject):
            return obj.set_property(_property_key(key), value)
        if isinstance(obj, dict):
            obj[key] = value
            return True
        return False

    @host_import("new", arity=0)
    def new_object(self):
        return self._add({})

    # -- promises ---------------------------------------------------------

    @host_import("new", arity=2, results=1)
    def new_promise(self, a, b):
        state = {"a": a, "b": b}
        promise = HostPromise(self.queue)
        resolve = HostFunction(promise.resolve, "resolve")
        reject = HostFunction(promise.reject, "reject")
        try:
            self.host.invoke_executor(state["a"], state["b"], self._add(resolve), self._add(reject))
        except Exception as e:
            promise.reject(e)
        finally:
            state["a"] = state["b"] = 0
        return self._add(promise)

    @host_import("resolve")
    def promise_resolve(self, handle):
        return self._add(HostPromise.resolved(self.queue, self._obj(handle)))

    @host_import("reject")
    def promise_reject(self, handle):
        return self._add(HostPromise.rejected(self.queue, self._obj(handle)))

    @host_import("then", arity=2)
    def promise_then(self, promise_handle, on_fulfilled_handle):
        return self._add(self._obj(promise_handle).then(self._obj(on_fulfilled_handle)))

    @host_import("then", arity=3)
    def promise_then2(self, promise_handle, on_fulfilled_handle, on_rejected_handle):
        promise = self._obj(promise_handle)
        return self._add(promise.then(self._obj(on_fulfilled_handle), self._obj(on_rejected_handle)))

    @host_import("queueMicrotask", arity=1, results=0)
    def queue_microtask(self, fn_handle):
        self._queue_microtask(self._obj(fn_handle))

    @host_import("queueMicrotask", arity=1, results=1)
    def queue_microtask_property(self, handle):
        return self._add(_get_property(self._obj(handle), "queueMicrotask"))

    # -- wasm-bindgen intrinsics ------------------------------------------

    def closure_wrapper(self, dtor, a, b, *_unused):
        state = {"a": a, "b": b, "cnt": 1, "dtor": dtor}

        def invoke(arg=UNDEFINED):
            state["cnt"] += 1
            current = state["a"]
            state["a"] = 0
            try:
                return self.host.invoke_closure(current, state["b"], self._add(arg))
            finally:
                state["cnt"] -= 1
                if state["cnt"] == 0:
                    self.host.destroy_closure(state["dtor"], current, state["b"])
                else:
                    state["a"] = current

        closure = HostFunction(invoke, "closure")
        closure.original = state
        return self._add(closure)

    @host_import("cb_drop")
    def cb_drop(self, handle):
        state = self.table.take(handle).original
        state["cnt"] -= 1
        if state["cnt"] == 0:
            state["a"] = 0
            return True
        return False

    @host_import("is_function")
    def is_function(self, handle):
        return _is_function(self._obj(handle))

    @host_import("is_undefined")
    def is_undefined(self, handle):
        return self._obj(handle) is UNDEFINED

    @host_import("is_null")
    def is_null(self, handle):
        return self._obj(handle) is None

    @host_import("is_object")
    def is_object(self, handle):
        value = self._obj(handle)
        return isinstance(value, (JSObject, HostPromise, dict, list, Exception))

    @host_import("is_string")
    def is_string(self, handle):
        return isinstance(self._obj(handle), str)

    @host_import("object_clone_ref")
    def object_clone_ref(self, handle):
        return self.table.retain(handle)

    @host_import("object_drop_ref")
    def object_drop_ref(self, handle):
        self.table.drop(handle)

    @host_import("string_new")
    def string_new(self, ptr, length):
        return self._add(self._str(ptr, length))

    @host_import("string_get")
    def string_get(self, retptr, handle):
        value = self._obj(handle)
        self.memory.write_ret_string(retptr, value if isinstance(value, str) else None)

    @host_import("number_new")
    def number_new(self, value):
        return self._add(value)

    @host_import("number_get")
    def number_get(self, retptr, handle):
        value = self._obj(handle)
        is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
        self.memory.write_f64(retptr + 8, float(value) if is_number else 0.0)
        self.memory.write_i32(retptr, 1 if is_number else 0)

    @host_import("throw")
    def throw(self, ptr, length):
        raise ModuleThrow(self._str(ptr, length))


def _coerce(value: Any, result_kinds: List[str]) -> Any:
    if not result_kinds:
        return None
    kind = result_kinds[0]
    if kind in ("f64", "f32"):
        return float(value) if isinstance(value, (int, float)) else 0.0
    if value is None or value is UNDEFINED or value is False:
        return 0
    if value is True:
        return 1
    return int(value)


def _build_registry(prefix_intrinsic: bool) -> Dict[str, List[Tuple[str, Optional[int], Optional[int], bool]]]:
    registry: Dict[str, List[Tuple[str, Optional[int], Optional[int], bool]]] = {}
    for attr, fn in vars(ImportResolver).items():
        for base, arity, results, catch in getattr(fn, "_host_imports", []):
            intrinsic = fn.__name__ in _INTRINSIC_METHODS
            if intrinsic != prefix_intrinsic:
                continue
            registry.setdefault(base, []).append((attr, arity, results, catch))
    return registry


_INTRINSIC_METHODS = {
    "cb_drop", "is_function", "is_undefined", "is_null", "is_object", "is_string",
    "object_clone_ref", "object_drop_ref", "string_new", "string_get",
    "number_new", "number_get", "throw",
}
_IMPORTS = _build_registry(prefix_intrinsic=False)
_INTRINSICS = _build_registry(prefix_intrinsic=True)


def implemented_imports() -> List[str]:
    """Base names this resolver can link."""
    return sorted(set(_IMPORTS) | {f"__wbindgen_{name}" for name in _INTRINSICS})
