"""
Event Channels

Two explicitly typed channels:

- EventChannel carries the supervisor's public events (string names) to
  external subscribers.
- ControlBus carries internal control events (ControlEvent members) between
  supervisor components, e.g. the readiness countdowns armed by reload.

Subscriptions can be persistent, one-shot, or countdowns that fire after N
matching events. One-shot and countdown subscriptions remove themselves
when they fire, so repeated reloads never accumulate dangling subscribers.
"""

import logging
from typing import Any, Callable, Dict, Hashable, List, Optional

from procsup.data import ControlEvent

logger = logging.getLogger(__name__)

Predicate = Callable[..., bool]


class Subscription:
    """A single registered callback on a channel."""

    def __init__(
        self,
        bus: "_Bus",
        key: Hashable,
        callback: Callable[..., Any],
        remaining: Optional[int] = None,
        predicate: Optional[Predicate] = None,
    ):
        self._bus = bus
        self.key = key
        self.callback = callback
        self.remaining = remaining
        self.predicate = predicate
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)

    def _deliver(self, args: tuple) -> None:
        if not self.active:
            return
        if self.predicate is not None and not self.predicate(*args):
            return
        if self.remaining is None:
            self.callback(*args)
            return
        self.remaining -= 1
        if self.remaining <= 0:
            self.cancel()
            self.callback(*args)


class _Bus:
    def __init__(self) -> None:
        self._subscriptions: Dict[Hashable, List[Subscription]] = {}

    def _check_key(self, key: Hashable) -> None:
        pass

    def _add(self, sub: Subscription) -> Subscription:
        self._check_key(sub.key)
        self._subscriptions.setdefault(sub.key, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.key)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            del self._subscriptions[sub.key]

    def _emit(self, key: Hashable, args: tuple) -> int:
        self._check_key(key)
        # Snapshot: callbacks may subscribe or cancel while we iterate.
        subs = list(self._subscriptions.get(key, ()))
        for sub in subs:
            try:
                sub._deliver(args)
            except Exception:
                logger.exception(f"Subscriber for {key!r} raised")
        return len(subs)

    def listener_count(self, key: Optional[Hashable] = None) -> int:
        if key is not None:
            return len(self._subscriptions.get(key, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def clear(self) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub.active = False
        self._subscriptions.clear()


class EventChannel(_Bus):
    """Public event channel keyed by event name."""

    def on(self, event: str, callback: Callable[..., Any]) -> Subscription:
        return self._add(Subscription(self, event, callback))

    def once(self, event: str, callback: Callable[..., Any]) -> Subscription:
        return self._add(Subscription(self, event, callback, remaining=1))

    def off(self, event: str, callback: Callable[..., Any]) -> bool:
        """Remove the first subscription of `callback` for `event`."""
        for sub in list(self._subscriptions.get(event, ())):
            if sub.callback == callback:
                sub.cancel()
                return True
        return False

    def emit(self, event: str, *args: Any) -> int:
        return self._emit(event, args)


class ControlBus(_Bus):
    """Internal channel for supervisor control events."""

    def _check_key(self, key: Hashable) -> None:
        if not isinstance(key, ControlEvent):
            raise TypeError(f"ControlBus only carries ControlEvent members, got {key!r}")

    def countdown(
        self,
        event: ControlEvent,
        count: int,
        callback: Callable[..., Any],
        predicate: Optional[Predicate] = None,
    ) -> Subscription:
        """
        Fire `callback` once, on the `count`-th event accepted by `predicate`.

        The subscription unregisters itself when it fires.
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        return self._add(Subscription(self, event, callback, remaining=count, predicate=predicate))

    def publish(self, event: ControlEvent, *args: Any) -> int:
        return self._emit(event, args)
