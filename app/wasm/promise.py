"""
Host-side promise and callable plumbing for the module.

A ``HostPromise`` is a single-fire completion channel: the first resolve or
reject wins, later ones are ignored. Reactions never run inline; they are
queued on the owning host's ``MicrotaskQueue`` and run when the host drains
it, the same ordering a browser event loop gives.
"""

import logging
from collections import deque
from typing import Any, Callable, Deque, List, Tuple

logger = logging.getLogger(__name__)

PENDING = "pending"
FULFILLED = "fulfilled"
REJECTED = "rejected"


class MicrotaskQueue:
    """FIFO of zero-argument jobs owned by one module host."""

    def __init__(self, max_jobs: int = 100000):
        self._jobs: Deque[Callable[[], Any]] = deque()
        self.max_jobs = max_jobs

    def enqueue(self, job: Callable[[], Any]) -> None:
        self._jobs.append(job)

    def __len__(self) -> int:
        return len(self._jobs)

    def drain(self) -> int:
        """Run queued jobs, including ones they enqueue, until the queue is empty."""
        ran = 0
        while self._jobs:
            if ran >= self.max_jobs:
                raise RuntimeError(f"microtask queue did not settle after {ran} jobs")
            job = self._jobs.popleft()
            job()
            ran += 1
        return ran


class HostFunction:
    """A callable handed to the module as a handle. ``this`` is accepted and ignored."""

    def __init__(self, fn: Callable[..., Any], name: str = "anonymous"):
        self._fn = fn
        self.name = name
        self.original = None

    def call(self, this: Any, *args: Any) -> Any:
        return self._fn(*args)

    def __call__(self, *args: Any) -> Any:
        return self.call(None, *args)

    def __repr__(self):
        return f"function {self.name}() {{ [native code] }}"


class HostPromise:
    def __init__(self, queue: MicrotaskQueue):
        self._queue = queue
        self.state = PENDING
        self.value: Any = None
        self._reactions: List[Tuple["HostPromise", Any, Any]] = []
        self._settled_once = False

    # -- settlement -------------------------------------------------------

    def resolve(self, value: Any = None) -> None:
        if self._settled_once:
            return
        self._settled_once = True
        if value is self:
            self._settle(REJECTED, TypeError("promise resolved with itself"))
            return
        if isinstance(value, HostPromise):
            # Adopt the other promise's eventual state
            value._add_reaction(None, self._adopt_fulfilled, self._adopt_rejected)
            return
        self._settle(FULFILLED, value)

    def reject(self, reason: Any = None) -> None:
        if self._settled_once:
            return
        self._settled_once = True
        self._settle(REJECTED, reason)

    def _adopt_fulfilled(self, value):
        self._settle(FULFILLED, value)

    def _adopt_rejected(self, reason):
        self._settle(REJECTED, reason)

    def _settle(self, state: str, value: Any) -> None:
        if self.state != PENDING:
            return
        self.state = state
        self.value = value
        reactions, self._reactions = self._reactions, []
        for reaction in reactions:
            self._schedule(*reaction)

    # -- reactions --------------------------------------------------------

    def _add_reaction(self, derived, on_fulfilled, on_rejected) -> None:
        reaction = (derived, on_fulfilled, on_rejected)
        if self.state == PENDING:
            self._reactions.append(reaction)
        else:
            self._schedule(*reaction)

    def _schedule(self, derived, on_fulfilled, on_rejected) -> None:
        state, value = self.state, self.value

        def job():
            handler = on_fulfilled if state == FULFILLED else on_rejected
            if handler is None:
                if derived is not None:
                    if state == FULFILLED:
                        derived.resolve(value)
                    else:
                        derived.reject(value)
                return
            try:
                result = _invoke(handler, value)
            except Exception as e:
                if derived is None:
                    raise
                derived.reject(e)
                return
            if derived is not None:
                derived.resolve(result)

        self._queue.enqueue(job)

    def then(self, on_fulfilled: Any = None, on_rejected: Any = None) -> "HostPromise":
        derived = HostPromise(self._queue)
        self._add_reaction(derived, _callable_or_none(on_fulfilled), _callable_or_none(on_rejected))
        return derived

    @classmethod
    def resolved(cls, queue: MicrotaskQueue, value: Any) -> "HostPromise":
        promise = cls(queue)
        promise.resolve(value)
        return promise

    @classmethod
    def rejected(cls, queue: MicrotaskQueue, reason: Any) -> "HostPromise":
        promise = cls(queue)
        promise.reject(reason)
        return promise

    @property
    def settled(self) -> bool:
        return self.state != PENDING

    def __repr__(self):
        return f"[object Promise <{self.state}>]"


def _callable_or_none(fn):
    if isinstance(fn, HostFunction) or callable(fn):
        return fn
    return None


def _invoke(handler, value):
    if isinstance(handler, HostFunction):
        return handler.call(None, value)
    return handler(value)
