"""ChangeWatcher: turns filesystem events on the relay log into read passes."""

import logging
import os
import threading

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from mlsbus.tail_reader import TailReader

logger = logging.getLogger(__name__)


class ChangeWatcher(FileSystemEventHandler):
    """Watches the log's parent directory so rotation (a new file at the same
    path) is seen as well as appends.

    If ``poll_interval`` is set, a background thread also triggers a read
    every interval, which covers filesystems that do not deliver events.
    """

    def __init__(self, log_path: str, reader: TailReader, on_error=None,
                 poll_interval: float | None = None):
        super().__init__()
        self._log_path = os.path.abspath(log_path)
        self._reader = reader
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._observer: Observer | None = None
        self._poller: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def watching(self) -> bool:
        return self._observer is not None

    def start(self) -> bool:
        """Subscribe to change events. Returns False if the subscription failed."""
        self._start_poller()

        directory = os.path.dirname(self._log_path)
        observer = Observer()
        try:
            if not os.path.isdir(directory):
                raise FileNotFoundError(f"log directory does not exist: {directory}")
            observer.schedule(self, directory, recursive=False)
            observer.start()
        except OSError as e:
            logger.warning("Could not watch %s: %s", directory, e)
            self._report(e)
            return False

        self._observer = observer
        logger.info("Watching %s for changes", self._log_path)
        return True

    def stop(self) -> None:
        """Stop watching. Safe to call from a handler running on our own threads."""
        self._stop_event.set()
        current = threading.current_thread()
        observer, self._observer = self._observer, None
        poller, self._poller = self._poller, None
        if observer is not None:
            observer.stop()
            if observer is not current:
                observer.join(timeout=5)
        if poller is not None and poller is not current:
            poller.join(timeout=5)

    def on_created(self, event):
        self._handle(event.src_path, event.is_directory)

    def on_modified(self, event):
        self._handle(event.src_path, event.is_directory)

    def on_moved(self, event):
        self._handle(event.dest_path, event.is_directory)

    def _handle(self, path, is_directory: bool) -> None:
        if is_directory or isinstance(path, bytes):
            return
        if os.path.abspath(path) == self._log_path:
            self._reader.trigger_read()

    def _start_poller(self) -> None:
        if not self._poll_interval:
            return
        self._poller = threading.Thread(target=self._poll_loop, daemon=True,
                                        name="mlsbus-poller")
        self._poller.start()

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self._poll_interval):
            self._reader.trigger_read()

    def _report(self, err: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(err)
        except Exception:
            logger.exception("Error callback failed while reporting: %s", err)
