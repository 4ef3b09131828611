"""Event sources feeding the reconciliation loop.

All sources run as daemon threads and only ever put events on the shared
queue. Passes are run by the single consumer of that queue, so they are
serialised in arrival order.
"""
from __future__ import annotations

import queue
import threading

import pyudev

from .devices import list_drives
from .executil import debug, trace
from .model import Configuration, Event, EventKind
from .quarantine import list_quarantine


class EventQueue:
    def __init__(self):
        self._queue: "queue.Queue[Event]" = queue.Queue()

    def put(self, event: Event) -> None:
        self._queue.put(event)

    def next_batch(self, timeout: float | None = None) -> list[Event]:
        """Wait for one event, then take everything else that is already queued."""
        try:
            batch = [self._queue.get(timeout=timeout)]
        except queue.Empty:
            return []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                return batch


def initial_events(config: Configuration, seen: set[str] | None = None) -> list[Event]:
    """One ``new device found`` event per drive that is not in ``seen`` yet."""
    seen = seen if seen is not None else set()
    events = []
    for matched, resolved in list_drives(config):
        if resolved in seen:
            continue
        seen.add(resolved)
        events.append(Event(EventKind.NEW_DEVICE, device_path=resolved, matched_path=matched))
    return events


class DriveCollector(threading.Thread):
    """Re-globs the configured drive patterns and reports new devices.

    Runs every ``poll_interval`` seconds and immediately after :meth:`notify`.
    """

    def __init__(self, config: Configuration, events: EventQueue, stop: threading.Event, poll_interval: float = 5.0):
        super().__init__(name="drive-collector", daemon=True)
        self.config = config
        self.events = events
        self.stop = stop
        self.poll_interval = poll_interval
        self.seen: set[str] = set()
        self._wake = threading.Event()

    def notify(self) -> None:
        self._wake.set()

    def collect(self) -> None:
        for event in initial_events(self.config, self.seen):
            self.events.put(event)

    def run(self) -> None:
        while not self.stop.is_set():
            self.collect()
            self._wake.wait(self.poll_interval)
            self._wake.clear()


class Scheduler(threading.Thread):
    """Emits a consistency check every ``interval`` seconds."""

    def __init__(self, events: EventQueue, stop: threading.Event, interval: float):
        super().__init__(name="scheduler", daemon=True)
        self.events = events
        self.stop = stop
        self.interval = interval

    def run(self) -> None:
        while not self.stop.wait(self.interval):
            self.events.put(Event(EventKind.CONSISTENCY_CHECK))


class QuarantineWatcher(threading.Thread):
    """Reports quarantine symlinks that the operator deleted."""

    def __init__(self, config: Configuration, events: EventQueue, stop: threading.Event, poll_interval: float = 2.0):
        super().__init__(name="quarantine-watcher", daemon=True)
        self.config = config
        self.events = events
        self.stop = stop
        self.poll_interval = poll_interval
        self.previous = list_quarantine(config)

    def check(self) -> None:
        current = list_quarantine(self.config)
        for name, target in sorted(self.previous.items()):
            if name not in current:
                trace("events.quarantine.removed", link=name, device=target)
                self.events.put(Event(EventKind.REINSTATED, device_path=target))
        self.previous = current

    def run(self) -> None:
        while not self.stop.wait(self.poll_interval):
            self.check()


def start_udev_monitor(collector: DriveCollector) -> pyudev.MonitorObserver:
    """Wake the collector whenever udev announces a block device."""
    context = pyudev.Context()
    monitor = pyudev.Monitor.from_netlink(context)
    monitor.filter_by(subsystem="block")

    def _on_device(device):
        if device.action in ("add", "change"):
            debug("udev reported %s for %s", device.action, device.device_node)
            collector.notify()

    observer = pyudev.MonitorObserver(monitor, callback=_on_device, name="udev-monitor")
    observer.daemon = True
    observer.start()
    return observer
