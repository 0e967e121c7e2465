"""
Runs the key-derivation module under wasmtime.

Each ModuleHost owns one Store, one instance and the host-side state that
goes with it (handle table, memory bridge, mock browser, microtask queue).
Compiled modules are shared between hosts through a sha256-keyed cache.
"""

import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from wasmtime import Engine, Linker, Module, Store, WasmtimeError

from app.exceptions import (
    AllocationError,
    DecodeError,
    DerivationError,
    LinkError,
    TransformError,
    UpstreamError,
)
from app.utils.http_utils import RobustHTTPClient
from app.wasm.browser import FingerprintProfile, MockBrowser
from app.wasm.heap import ObjectTable
from app.wasm.imports import ImportResolver
from app.wasm.memory import MemoryBridge
from app.wasm.promise import REJECTED, HostPromise, MicrotaskQueue

logger = logging.getLogger(__name__)

DEFAULT_WASM_URL = "https://plsdontscrapemelove.flixer.sh/assets/wasm/img_data_bg.wasm"
WASM_MAGIC = b"\x00asm"

_ENGINE = Engine()
_MODULE_CACHE: Dict[str, Module] = {}
_CACHE_LOCK = threading.Lock()

ModuleSource = Union[bytes, str, os.PathLike, Module]


@dataclass(frozen=True)
class ModuleABI:
    """Export symbols of the wasm-bindgen build."""

    memory: str = "memory"
    exception_store: str = "__wbindgen_export_0"
    malloc: str = "__wbindgen_export_1"
    function_table: str = "__wbindgen_export_3"
    free: str = "__wbindgen_export_4"
    closure_invoke: str = "__wbindgen_export_5"
    executor_invoke: str = "__wbindgen_export_6"
    stack_pointer: str = "__wbindgen_add_to_stack_pointer"
    key_export: str = "get_img_key"
    transform_export: str = "process_img_data"

    REQUIRED = ("memory", "exception_store", "malloc", "stack_pointer", "key_export", "transform_export")
    OPTIONAL = ("function_table", "free", "closure_invoke", "executor_invoke")


def _read_source(source: Union[bytes, str, os.PathLike]) -> bytes:
    if isinstance(source, bytes):
        return source
    if isinstance(source, str) and source.lstrip().startswith(("(", ";;")):
        return source.encode("utf-8")
    path = Path(source)
    try:
        return path.read_bytes()
    except OSError as e:
        raise LinkError(f"Cannot read module from {path}: {e}") from e


def load_module(source: ModuleSource) -> Module:
    """Compile ``source`` once per distinct binary and return the cached Module."""
    if isinstance(source, Module):
        return source

    data = _read_source(source)
    digest = hashlib.sha256(data).hexdigest()
    with _CACHE_LOCK:
        cached = _MODULE_CACHE.get(digest)
        if cached is not None:
            return cached
        try:
            if data.startswith(WASM_MAGIC):
                module = Module(_ENGINE, data)
            else:
                module = Module(_ENGINE, data.decode("utf-8"))
        except (WasmtimeError, UnicodeDecodeError) as e:
            raise LinkError(f"Module failed to compile: {e}") from e
        _MODULE_CACHE[digest] = module
        logger.info(f"🧩 Compiled module {digest[:12]} ({len(data)} bytes)")
        return module


def clear_module_cache() -> None:
    with _CACHE_LOCK:
        _MODULE_CACHE.clear()


def fetch_module_bytes(
    wasm_path: Optional[str] = None,
    wasm_url: Optional[str] = None,
    cache_dir: Union[str, os.PathLike] = ".cache",
    referer: str = "https://flixer.sh/",
    timeout: int = 30,
) -> bytes:
    """
    Obtain the module binary.

    A local file (``wasm_path`` or FLIXER_WASM_PATH) wins; otherwise the
    binary is downloaded once from ``wasm_url`` (or FLIXER_WASM_URL) and kept
    under ``cache_dir`` for later processes.
    """
    path = wasm_path or os.getenv("FLIXER_WASM_PATH")
    if path:
        logger.debug(f"Loading module from {path}")
        return _read_source(Path(path))

    url = wasm_url or os.getenv("FLIXER_WASM_URL") or DEFAULT_WASM_URL
    cached = Path(cache_dir) / f"flixer_{hashlib.sha1(url.encode('utf-8')).hexdigest()[:12]}.wasm"
    if cached.exists():
        data = cached.read_bytes()
        if data.startswith(WASM_MAGIC):
            return data
        logger.warning(f"⚠️ Ignoring corrupt cached module at {cached}")

    logger.info(f"⬇️ Downloading module from {url}")
    response = RobustHTTPClient(timeout=timeout, max_retries=2).get(
        url, context="Flixer module", headers={"Referer": referer}
    )
    if response is None:
        raise UpstreamError(f"Module download from {url} failed")
    if response.status_code != 200:
        raise UpstreamError(f"Module download returned HTTP {response.status_code}",
                            status=response.status_code, body=response.text[:200])
    data = response.content
    if not data.startswith(WASM_MAGIC):
        raise LinkError(f"Downloaded file from {url} is not a WebAssembly binary")

    try:
        cached.parent.mkdir(parents=True, exist_ok=True)
        cached.write_bytes(data)
    except OSError as e:
        logger.warning(f"⚠️ Could not cache module at {cached}: {e}")
    return data


def _describe(reason: Any) -> str:
    if isinstance(reason, BaseException):
        return f"{type(reason).__name__}: {reason}"
    return repr(reason)


class ModuleHost:
    """One instantiated module with its private browser and handle table."""

    def __init__(
        self,
        module: Module,
        profile: Optional[FingerprintProfile] = None,
        abi: Optional[ModuleABI] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.abi = abi or ModuleABI()
        self.profile = profile or FingerprintProfile.create()
        self.table = ObjectTable()
        self.queue = MicrotaskQueue()
        self.browser = MockBrowser(self.profile) if clock is None else MockBrowser(self.profile, clock=clock)
        self.store = Store(_ENGINE)
        self.memory: Optional[MemoryBridge] = None
        self._key: Optional[str] = None

        self.resolver = ImportResolver(self)
        linker = Linker(_ENGINE)
        self.resolver.link(linker, module)

        try:
            instance = linker.instantiate(self.store, module)
        except WasmtimeError as e:
            raise LinkError(f"Module instantiation failed: {e}") from e

        exports = instance.exports(self.store)
        self._exports: Dict[str, Any] = {}
        missing = []
        for field_name in ModuleABI.REQUIRED + ModuleABI.OPTIONAL:
            symbol = getattr(self.abi, field_name)
            try:
                self._exports[field_name] = exports[symbol]
            except KeyError:
                if field_name in ModuleABI.REQUIRED:
                    missing.append(symbol)
        if missing:
            raise LinkError(f"Module is missing required exports: {', '.join(missing)}", missing=missing)

        malloc = self._exports["malloc"]
        self.memory = MemoryBridge(self.store, self._exports["memory"],
                                   malloc=lambda size, align: malloc(self.store, size, align))
        logger.debug(f"Module host ready (session {self.profile.session_id[:8]})")

    @classmethod
    def initialize(
        cls,
        source: ModuleSource,
        profile: Optional[FingerprintProfile] = None,
        abi: Optional[ModuleABI] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> "ModuleHost":
        return cls(load_module(source), profile=profile, abi=abi, clock=clock)

    # -- re-entry points used by the import resolver -----------------------

    def _optional_export(self, field_name: str):
        fn = self._exports.get(field_name)
        if fn is None:
            raise LinkError(f"Module does not export {getattr(self.abi, field_name)}")
        return fn

    def store_exception(self, handle: int) -> None:
        self._exports["exception_store"](self.store, handle)

    def invoke_closure(self, a: int, b: int, arg_handle: int) -> Any:
        return self._optional_export("closure_invoke")(self.store, a, b, arg_handle)

    def invoke_executor(self, a: int, b: int, resolve_handle: int, reject_handle: int) -> Any:
        return self._optional_export("executor_invoke")(self.store, a, b, resolve_handle, reject_handle)

    def destroy_closure(self, dtor: int, a: int, b: int) -> None:
        table = self._optional_export("function_table")
        dtor_fn = table.get(self.store, dtor)
        if dtor_fn is None:
            raise LinkError(f"Closure destructor {dtor} not found in function table")
        dtor_fn(self.store, a, b)

    # -- operations --------------------------------------------------------

    def derive_key(self) -> str:
        """Run the key export. Cached for the lifetime of this host."""
        if self._key is not None:
            return self._key

        add_to_stack = self._exports["stack_pointer"]
        try:
            retptr = add_to_stack(self.store, -16)
        except Exception as e:
            raise DerivationError(f"Could not reserve return area: {_describe(e)}") from e

        try:
            self._exports["key_export"](self.store, retptr)
            ptr = self.memory.read_i32(retptr)
            length = self.memory.read_i32(retptr + 4)
            error_handle = self.memory.read_i32(retptr + 8)
            is_error = self.memory.read_i32(retptr + 12)
            if is_error:
                reason = self.table.take(error_handle)
                raise DerivationError(f"Key export reported an error: {_describe(reason)}")
            key = self.memory.read_string(ptr, length)
            free = self._exports.get("free")
            if free is not None and length:
                free(self.store, ptr, length, 1)
        except (DerivationError, DecodeError, AllocationError):
            raise
        except Exception as e:
            raise DerivationError(f"Key derivation failed: {_describe(e)}") from e
        finally:
            add_to_stack(self.store, 16)

        if not key:
            raise DerivationError("Key export returned an empty key")
        self._key = key
        logger.info(f"🔑 Derived key ({len(key)} chars)")
        return key

    def reset_key(self) -> None:
        self._key = None

    def transform(self, ciphertext: str, key: str) -> str:
        """Decrypt ``ciphertext`` through the module and return the plaintext."""
        try:
            p0, l0 = self.memory.write_string(ciphertext)
            p1, l1 = self.memory.write_string(key)
            handle = self._exports["transform_export"](self.store, p0, l0, p1, l1)
            result = self.table.take(handle)
            if isinstance(result, HostPromise):
                # Run every queued reaction so no work leaks into the next call
                self.queue.drain()
                if not result.settled:
                    raise TransformError("Transform promise never settled")
                if result.state == REJECTED:
                    raise TransformError(f"Module rejected payload: {_describe(result.value)}")
                result = result.value
        except (TransformError, DecodeError, AllocationError):
            raise
        except Exception as e:
            raise TransformError(f"Transform failed: {_describe(e)}") from e

        if not isinstance(result, str):
            raise TransformError(f"Transform produced {type(result).__name__}, expected text")
        return result
