"""
Mock browser surface for the key-derivation module.

One object graph per FingerprintProfile. Each class lists the JS properties
it exposes in ``CAPABILITIES`` (read) and ``WRITABLE`` (write); everything
else reads as ``undefined``, like a missing property on a real object.
"""

import base64
import hashlib
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from app.utils.user_agent import DEFAULT_USER_AGENT
from app.wasm.heap import UNDEFINED

SESSION_STORAGE_KEY = "tmdb_session_id"
CLOCK_BACKSET_MS = 5000
DEFAULT_CANVAS_SIGNATURE = "iVBORw0KGgoAAAANSUhEUgAAASwA"
DATA_URL_PREFIX = "data:image/png;base64,"

PROCESS_START_MS = int(time.time() * 1000)


def _local_timezone_offset() -> int:
    """Minutes west of UTC, the sign convention of Date.getTimezoneOffset()."""
    offset = datetime.now().astimezone().utcoffset()
    return -int(offset.total_seconds() // 60) if offset else 0


@dataclass(frozen=True)
class FingerprintProfile:
    screen_width: int = 1920
    screen_height: int = 1080
    color_depth: int = 24
    platform: str = "Win32"
    language: str = "en-US"
    user_agent: str = DEFAULT_USER_AGENT
    timezone_offset_minutes: int = 0
    canvas_signature: str = DEFAULT_CANVAS_SIGNATURE
    session_id: str = ""
    clock_anchor_ms: int = 0

    @classmethod
    def create(cls, **overrides) -> "FingerprintProfile":
        """Fresh per-session profile; overrides win over generated values."""
        values: Dict[str, Any] = {
            "timezone_offset_minutes": _local_timezone_offset(),
            "session_id": uuid.uuid4().hex,
            "clock_anchor_ms": PROCESS_START_MS - CLOCK_BACKSET_MS,
        }
        known = set(cls.__dataclass_fields__)
        values.update({k: v for k, v in overrides.items() if k in known and v is not None})
        return cls(**values)

    def with_overrides(self, **overrides) -> "FingerprintProfile":
        return replace(self, **overrides)


class JSObject:
    """Base for mock objects with an explicit capability set."""

    CAPABILITIES = frozenset()
    WRITABLE = frozenset()
    JS_CLASS = "Object"

    def get_property(self, name: str) -> Any:
        if name not in self.CAPABILITIES:
            return UNDEFINED
        return getattr(self, name)

    def set_property(self, name: str, value: Any) -> bool:
        if name not in self.WRITABLE:
            return False
        setattr(self, name, value)
        return True

    def __repr__(self):
        return f"[object {self.JS_CLASS}]"


class CanvasContext2D(JSObject):
    CAPABILITIES = frozenset({"font", "textBaseline", "fillText"})
    WRITABLE = frozenset({"font", "textBaseline"})
    JS_CLASS = "CanvasRenderingContext2D"

    def __init__(self):
        self.font = "10px sans-serif"
        self.textBaseline = "alphabetic"
        self.drawn: List[str] = []

    def fillText(self, text: str, x: float, y: float) -> None:
        self.drawn.append(text)


class Canvas(JSObject):
    CAPABILITIES = frozenset({"width", "height", "getContext", "toDataURL", "tagName"})
    WRITABLE = frozenset({"width", "height"})
    JS_CLASS = "HTMLCanvasElement"
    tagName = "CANVAS"

    def __init__(self, data_url: str):
        self.width = 300
        self.height = 150
        self._data_url = data_url
        self._context = CanvasContext2D()

    def getContext(self, kind: str) -> Optional[CanvasContext2D]:
        return self._context if kind == "2d" else None

    def toDataURL(self, *_args) -> str:
        return self._data_url


class Element(JSObject):
    CAPABILITIES = frozenset({
        "tagName", "nodeName", "nodeType", "innerHTML", "className", "children",
        "childNodes", "clientWidth", "clientHeight", "offsetWidth", "offsetHeight",
        "appendChild", "getAttribute", "setAttribute",
    })
    WRITABLE = frozenset({"innerHTML", "className"})
    JS_CLASS = "HTMLElement"

    def __init__(self, tag: str, width: int = 0, height: int = 0):
        self.tagName = tag.upper()
        self.nodeName = self.tagName
        self.nodeType = 1
        self.innerHTML = ""
        self.className = ""
        self.children: List["Element"] = []
        self.childNodes = self.children
        self.clientWidth = self.offsetWidth = width
        self.clientHeight = self.offsetHeight = height
        self._attributes: Dict[str, str] = {}

    def appendChild(self, child):
        self.children.append(child)
        return child

    def getAttribute(self, name: str) -> Optional[str]:
        return self._attributes.get(name)

    def setAttribute(self, name: str, value: str) -> None:
        self._attributes[name] = value


class ElementCollection(JSObject):
    """HTMLCollection look-alike: indexable, sized, iterable, with item()."""

    CAPABILITIES = frozenset({"length", "item", "namedItem"})
    JS_CLASS = "HTMLCollection"

    def __init__(self, elements: List[Element]):
        self._elements = list(elements)

    @property
    def length(self) -> int:
        return len(self._elements)

    def item(self, index: int) -> Optional[Element]:
        if 0 <= index < len(self._elements):
            return self._elements[index]
        return None

    def namedItem(self, _name: str) -> None:
        return None

    def get_property(self, name: str) -> Any:
        if isinstance(name, str) and name.isdigit():
            element = self.item(int(name))
            return UNDEFINED if element is None else element
        return super().get_property(name)

    def __getitem__(self, index: int) -> Element:
        return self._elements[index]

    def __len__(self) -> int:
        return len(self._elements)

    def __iter__(self) -> Iterator[Element]:
        return iter(self._elements)


class Document(JSObject):
    CAPABILITIES = frozenset({"body", "createElement", "getElementsByTagName"})
    JS_CLASS = "HTMLDocument"

    def __init__(self, profile: FingerprintProfile, data_url: str):
        self._profile = profile
        self._data_url = data_url
        self.body = Element("body", profile.screen_width, profile.screen_height)

    def createElement(self, tag: str) -> JSObject:
        if tag.lower() == "canvas":
            return Canvas(self._data_url)
        return Element(tag)

    def getElementsByTagName(self, tag: str) -> ElementCollection:
        if tag.lower() == "body":
            return ElementCollection([self.body])
        return ElementCollection([])


class Storage(JSObject):
    CAPABILITIES = frozenset({"getItem", "setItem"})
    JS_CLASS = "Storage"

    def __init__(self, session_id: str):
        self._session_id = session_id

    def getItem(self, key: str) -> Optional[str]:
        return self._session_id if key == SESSION_STORAGE_KEY else None

    def setItem(self, key: str, value: str) -> None:
        return None


class Navigator(JSObject):
    CAPABILITIES = frozenset({"platform", "language", "userAgent"})
    JS_CLASS = "Navigator"

    def __init__(self, profile: FingerprintProfile):
        self.platform = profile.platform
        self.language = profile.language
        self.userAgent = profile.user_agent


class Screen(JSObject):
    CAPABILITIES = frozenset({"width", "height", "colorDepth"})
    JS_CLASS = "Screen"

    def __init__(self, profile: FingerprintProfile):
        self.width = profile.screen_width
        self.height = profile.screen_height
        self.colorDepth = profile.color_depth


class Performance(JSObject):
    CAPABILITIES = frozenset({"now"})
    JS_CLASS = "Performance"

    def __init__(self, anchor_ms: int, clock: Callable[[], float]):
        self._anchor_ms = anchor_ms
        self._clock = clock

    def now(self) -> float:
        return float(self._clock() - self._anchor_ms)


class JSDate(JSObject):
    CAPABILITIES = frozenset({"getTime", "getTimezoneOffset"})
    JS_CLASS = "Date"

    def __init__(self, epoch_ms: int, timezone_offset: int):
        self._epoch_ms = epoch_ms
        self._timezone_offset = timezone_offset

    def getTime(self) -> float:
        return float(self._epoch_ms)

    def getTimezoneOffset(self) -> float:
        return float(self._timezone_offset)


class Window(JSObject):
    CAPABILITIES = frozenset({"document", "localStorage", "navigator", "screen", "performance", "queueMicrotask"})
    JS_CLASS = "Window"

    def __init__(self, document, local_storage, navigator, screen, performance):
        self.document = document
        self.localStorage = local_storage
        self.navigator = navigator
        self.screen = screen
        self.performance = performance
        self.queueMicrotask = UNDEFINED


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class MockBrowser:
    """The whole simulated browser for one profile."""

    profile: FingerprintProfile
    clock: Callable[[], float] = _wall_clock_ms
    window: Window = field(init=False)

    def __post_init__(self):
        self.data_url = self._build_data_url()
        self.window = Window(
            document=Document(self.profile, self.data_url),
            local_storage=Storage(self.profile.session_id),
            navigator=Navigator(self.profile),
            screen=Screen(self.profile),
            performance=Performance(self.profile.clock_anchor_ms, self.clock),
        )
        digest = hashlib.sha256(self.profile.session_id.encode("utf-8")).digest()
        self.random_value = int.from_bytes(digest[:6], "big") / float(1 << 48)

    def _build_data_url(self) -> str:
        p = self.profile
        payload = f"canvas-fp-{p.screen_width}x{p.screen_height}-{p.color_depth}-{p.platform}-{p.language}"
        return DATA_URL_PREFIX + p.canvas_signature + base64.b64encode(payload.encode("utf-8")).decode("ascii")

    @property
    def document(self) -> Document:
        return self.window.document

    def date_now(self) -> float:
        return float(self.profile.clock_anchor_ms)

    def new_date(self) -> JSDate:
        return JSDate(self.profile.clock_anchor_ms, self.profile.timezone_offset_minutes)

    def client_fingerprint(self) -> str:
        """Value of the X-Client-Fingerprint header; same hash the browser client computes."""
        p = self.profile
        canvas = self.data_url[len(DATA_URL_PREFIX):len(DATA_URL_PREFIX) + 28]
        source = (
            f"{p.screen_width}x{p.screen_height}:{p.color_depth}:{p.user_agent[:50]}:"
            f"{p.platform}:{p.language}:{p.timezone_offset_minutes}:{canvas}"
        )
        h = 0
        for ch in source:
            h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
        if h & 0x80000000:
            h -= 1 << 32
        return _to_base36(abs(h))


def _to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))
