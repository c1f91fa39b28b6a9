"""
Publish/subscribe bus carrying hydration results and lifecycle signals.

The bus owns everything that is independent of how a signal travels:

    * provide-data deduplication per (domain, periodKey) inside a short window
    * a per-domain version counter and the latest-value slot read by late
      consumers
    * suppression of empty results

Delivery is delegated to Transports.  Every bus has a LocalTransport for
in-process subscribers; further transports reach other contexts:

    LocalTransport      handlers registered with bus.subscribe()
    ContextTransport    embedding host and nested embedded sub-contexts
    WebSocketTransport  network clients (pyhydrator.server)

A failing transport is logged and never stops delivery to the others.
"""
import abc
import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from pyhydrator.const import SIGNAL_PROVIDE_DATA
from pyhydrator.models import DeviceTotal, ProvidePayload

log = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Any]


class Transport(abc.ABC):
    name = "transport"

    @abc.abstractmethod
    def deliver(self, signal: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LocalTransport(Transport):
    """In-process fan-out.  Coroutine handlers are scheduled on the loop."""
    name = "local"

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, signal: str, handler: Handler) -> Callable[[], None]:
        self._handlers[signal].append(handler)

        def unsubscribe():
            if handler in self._handlers.get(signal, []):
                self._handlers[signal].remove(handler)
        return unsubscribe

    def handler_count(self, signal: str) -> int:
        return len(self._handlers.get(signal, []))

    def deliver(self, signal: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(signal, [])) + list(self._handlers.get("*", [])):
            try:
                result = handler(signal, payload)
            except Exception as exc:
                log.error(f"Handler for {signal} failed: {exc}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"Async handler failed: {task.exception()!r}")

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._handlers.clear()


class EventContext:
    """
    A delivery target that may embed further contexts, like a page and its
    iframes.  A context that is not ready yet refuses dispatches.
    """

    def __init__(self, name: str, ready: bool = True):
        self.name = name
        self.ready = ready
        self.parent: Optional["EventContext"] = None
        self.children: List["EventContext"] = []
        self.received: List[Tuple[str, Dict[str, Any]]] = []
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def __repr__(self):
        return f"EventContext({self.name!r}, ready={self.ready})"

    def embed(self, child: "EventContext") -> "EventContext":
        child.parent = self
        self.children.append(child)
        return child

    def detach(self, child: "EventContext") -> None:
        if child in self.children:
            self.children.remove(child)
            child.parent = None

    def on(self, signal: str, handler: Handler) -> None:
        self._handlers[signal].append(handler)

    def descendants(self) -> Iterator["EventContext"]:
        for child in self.children:
            yield child
            yield from child.descendants()

    def dispatch(self, signal: str, payload: Dict[str, Any]) -> bool:
        if not self.ready:
            return False
        self.received.append((signal, payload))
        for handler in list(self._handlers.get(signal, [])):
            try:
                handler(signal, payload)
            except Exception as exc:
                log.error(f"Context {self.name} handler for {signal} failed: {exc}")
        return True


class ContextTransport(Transport):
    """
    Delivers to the host of ``context`` (when embedded) and to every context
    nested below it.  Sub-contexts that are not ready are retried after
    ``retry_delay`` seconds, up to ``retry_attempts`` times.
    """
    name = "context"

    def __init__(self, context: EventContext, retry_delay: float = 1.0, retry_attempts: int = 3,
                 include_self: bool = False):
        self.context = context
        self.retry_delay = retry_delay
        self.retry_attempts = retry_attempts
        self.include_self = include_self
        self._pending: Set[asyncio.TimerHandle] = set()

    def targets(self) -> List[EventContext]:
        targets = []
        if self.include_self:
            targets.append(self.context)
        if self.context.parent is not None:
            targets.append(self.context.parent)
        targets.extend(self.context.descendants())
        return targets

    def deliver(self, signal: str, payload: Dict[str, Any]) -> None:
        for target in self.targets():
            if not target.dispatch(signal, payload):
                self._schedule_retry(target, signal, payload, 1)

    def _schedule_retry(self, target: EventContext, signal: str, payload: Dict[str, Any], attempt: int):
        if attempt > self.retry_attempts:
            log.warning(f"Context {target.name} never became ready - dropped {signal}")
            return
        log.debug(f"Context {target.name} not ready - retrying {signal} in {self.retry_delay}s "
                  f"(attempt {attempt}/{self.retry_attempts})")
        handle = None

        def retry():
            self._pending.discard(handle)
            if not target.dispatch(signal, payload):
                self._schedule_retry(target, signal, payload, attempt + 1)

        handle = asyncio.get_running_loop().call_later(self.retry_delay, retry)
        self._pending.add(handle)

    @property
    def pending_retries(self) -> int:
        return len(self._pending)

    def close(self) -> None:
        for handle in list(self._pending):
            handle.cancel()
        self._pending.clear()


class EventBus:

    def __init__(self, transports: Optional[List[Transport]] = None, dedup_window: float = 0.1,
                 clock: Callable[[], float] = time.monotonic):
        self.local = LocalTransport()
        self.transports: List[Transport] = [self.local] + list(transports or [])
        self.dedup_window = dedup_window
        self.clock = clock
        self.dropped = 0
        self._last_emit: Dict[Tuple[str, str], float] = {}
        self._versions: Dict[str, int] = defaultdict(int)
        self._latest: Dict[str, ProvidePayload] = {}

    def add_transport(self, transport: Transport) -> None:
        if transport not in self.transports:
            self.transports.append(transport)

    def remove_transport(self, transport: Transport) -> None:
        if transport is not self.local and transport in self.transports:
            self.transports.remove(transport)

    def subscribe(self, signal: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler(signal, payload)``; "*" receives every signal."""
        return self.local.subscribe(signal, handler)

    def publish(self, signal: str, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload if payload is not None else {}
        for transport in list(self.transports):
            try:
                transport.deliver(signal, payload)
            except Exception as exc:
                log.error(f"Transport {transport.name} failed delivering {signal}: {exc}")

    def emit_provide(self, domain: str, period_key: str,
                     items: List[DeviceTotal]) -> Optional[ProvidePayload]:
        """Publish provide-data unless empty or a duplicate inside the window.

        Returns the published payload, or None when nothing was sent.
        """
        if not items:
            log.debug(f"emit_provide: {domain} {period_key} has no items - not published")
            return None
        now = self.clock()
        pair = (domain, period_key)
        last = self._last_emit.get(pair)
        if last is not None and now - last < self.dedup_window:
            self.dropped += 1
            log.debug(f"emit_provide: duplicate {domain} {period_key} within "
                      f"{self.dedup_window * 1000:.0f}ms - dropped")
            return None
        self._last_emit[pair] = now
        self._versions[domain] += 1
        payload = ProvidePayload(domain=domain, period_key=period_key, items=list(items),
                                 version=self._versions[domain], timestamp=time.time())
        self._latest[domain] = payload
        log.debug(f"provide-data {domain} v{payload.version}: {len(items)} items")
        self.publish(SIGNAL_PROVIDE_DATA, payload.to_signal())
        return payload

    def latest(self, domain: str) -> Optional[ProvidePayload]:
        return self._latest.get(domain)

    def version(self, domain: str) -> int:
        return self._versions.get(domain, 0)

    def clear_latest(self, domain: str = "*") -> None:
        if domain == "*":
            self._latest.clear()
            self._last_emit.clear()
        else:
            self._latest.pop(domain, None)
            for pair in [p for p in self._last_emit if p[0] == domain]:
                del self._last_emit[pair]

    def close(self) -> None:
        for transport in self.transports:
            transport.close()
