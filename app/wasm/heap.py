"""
Handle table shared between the host and the WebAssembly module.

The module never sees host objects directly; it holds small integer handles
into this table. Layout follows the wasm-bindgen glue: 128 unused slots, then
the four reserved singletons (undefined, null, true, false), then ordinary
slots recycled through a free list.
"""

from typing import Any, List


class _Undefined:
    """JS ``undefined``. ``None`` plays the role of JS ``null``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "undefined"

    def __bool__(self):
        return False


UNDEFINED = _Undefined()

INITIAL_SLOTS = 128
RESERVED_THRESHOLD = INITIAL_SLOTS + 4


class StaleHandleError(LookupError):
    """A handle was used after its matching drop, or never existed."""
    pass


class _Slot:
    __slots__ = ("value", "refs")

    def __init__(self, value: Any):
        self.value = value
        self.refs = 1


class _Free:
    __slots__ = ("next",)

    def __init__(self, next_index: int):
        self.next = next_index


class ObjectTable:
    """Arena of host values indexed by handle, with refcounts and a free list."""

    def __init__(self):
        self._slots: List[Any] = [_Slot(UNDEFINED) for _ in range(INITIAL_SLOTS)]
        for value in (UNDEFINED, None, True, False):
            self._slots.append(_Slot(value))
        self._next_free = len(self._slots)
        self._live = 0

    def alloc(self, value: Any) -> int:
        if self._next_free == len(self._slots):
            self._slots.append(_Free(len(self._slots) + 1))
        handle = self._next_free
        self._next_free = self._slots[handle].next
        self._slots[handle] = _Slot(value)
        self._live += 1
        return handle

    def _slot(self, handle: int) -> _Slot:
        if handle < 0 or handle >= len(self._slots):
            raise StaleHandleError(f"handle {handle} out of range")
        slot = self._slots[handle]
        if isinstance(slot, _Free):
            raise StaleHandleError(f"handle {handle} used after drop")
        return slot

    def get(self, handle: int) -> Any:
        return self._slot(handle).value

    def retain(self, handle: int) -> int:
        """Clone a reference: same handle, one more owner."""
        slot = self._slot(handle)
        if handle >= RESERVED_THRESHOLD:
            slot.refs += 1
        return handle

    def drop(self, handle: int) -> None:
        if handle < RESERVED_THRESHOLD:
            return
        slot = self._slot(handle)
        slot.refs -= 1
        if slot.refs > 0:
            return
        self._slots[handle] = _Free(self._next_free)
        self._next_free = handle
        self._live -= 1

    def take(self, handle: int) -> Any:
        value = self.get(handle)
        self.drop(handle)
        return value

    def is_live(self, handle: int) -> bool:
        if handle < 0 or handle >= len(self._slots):
            return False
        return not isinstance(self._slots[handle], _Free)

    def live_count(self) -> int:
        return self._live

    def capacity(self) -> int:
        return len(self._slots)
