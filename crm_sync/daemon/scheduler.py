"""
Daemon scheduler for background CRM synchronization.

Provides a DaemonScheduler class that manages:
- Incremental syncs at a short interval and full syncs at a long one
- Signal handling for graceful shutdown (SIGTERM/SIGINT), which also
  cancels the sync in progress at its next page boundary
- PID file management for daemon control
- Logging of sync results and daemon status
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


# Default PID file location
DEFAULT_PID_DIR = Path.home() / ".crm-sync"
DEFAULT_PID_FILE = DEFAULT_PID_DIR / "daemon.pid"

# Default schedule, in seconds
DEFAULT_INTERVAL = 15 * 60
DEFAULT_FULL_SYNC_INTERVAL = 24 * 60 * 60

# Sync callback: (full, cancel_event) -> success
SyncCallback = Callable[[bool, threading.Event], bool]


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class DaemonStats:
    """
    Statistics from daemon operation.

    Tracks daemon uptime and sync cycle information.
    """

    started_at: datetime = field(default_factory=datetime.now)
    sync_count: int = 0
    full_sync_count: int = 0
    sync_success_count: int = 0
    sync_error_count: int = 0
    last_sync_at: datetime | None = None
    last_full_sync_at: datetime | None = None
    last_sync_success: bool = False
    last_error: str | None = None


class PIDFileManager:
    """
    Manages the PID file for the daemon process.

    Provides methods to create, read, and remove PID files for
    daemon process management and duplicate prevention.
    """

    def __init__(self, pid_file: Path | None = None):
        """
        Initialize the PID file manager.

        Args:
            pid_file: Path to the PID file. Defaults to ~/.crm-sync/daemon.pid
        """
        self.pid_file = pid_file or DEFAULT_PID_FILE

    def create(self) -> None:
        """
        Create the PID file with the current process ID.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid = os.getpid()
            self.pid_file.write_text(str(pid))
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Read the PID from the PID file.

        Returns:
            The PID stored in the file, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the PID file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        try:
            content = self.pid_file.read_text().strip()
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e

    def remove(self) -> None:
        """
        Remove the PID file. Does nothing if the file doesn't exist.

        Raises:
            PIDFileError: If the PID file exists but cannot be removed.
        """
        if not self.pid_file.exists():
            return

        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """Check whether a process with the given PID exists."""
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else
            return True


class DaemonScheduler:
    """
    Daemon scheduler for background synchronization.

    Runs an incremental sync every ``interval`` seconds and a full sync
    every ``full_sync_interval`` seconds. When both are due, the full sync
    runs and the incremental timer restarts from it.

    The shutdown event doubles as the cancel event handed to the sync
    callback, so a SIGTERM stops a running sync at its next page boundary.

    Usage:
        scheduler = DaemonScheduler(interval=900, full_sync_interval=86400)
        scheduler.set_sync_callback(lambda full, cancel: run(full, cancel))
        scheduler.run()  # blocks until shutdown signal

    Attributes:
        interval: Incremental sync interval in seconds
        full_sync_interval: Full sync interval in seconds
        pid_file: Path to PID file
        stats: Daemon statistics
    """

    def __init__(
        self,
        interval: int = DEFAULT_INTERVAL,
        full_sync_interval: int = DEFAULT_FULL_SYNC_INTERVAL,
        pid_file: Path | None = None,
        run_immediately: bool = True,
    ):
        """
        Initialize the daemon scheduler.

        Args:
            interval: Incremental sync interval in seconds (default: 15 minutes)
            full_sync_interval: Full sync interval in seconds (default: 1 day)
            pid_file: Path to PID file. Defaults to ~/.crm-sync/daemon.pid
            run_immediately: If True, run a sync on start before waiting.
                The first sync is a full sync.
        """
        if interval <= 0 or full_sync_interval <= 0:
            raise ValueError("Sync intervals must be positive")

        self.interval = interval
        self.full_sync_interval = full_sync_interval
        self.run_immediately = run_immediately
        self._pid_manager = PIDFileManager(pid_file)
        self._sync_callback: SyncCallback | None = None
        self._running = False
        self._shutdown_event = threading.Event()
        self._original_sigterm_handler: signal.Handlers | None = None  # type: ignore[assignment]
        self._original_sigint_handler: signal.Handlers | None = None  # type: ignore[assignment]
        self.stats = DaemonStats()

        self._next_incremental_at = 0.0
        self._next_full_at = 0.0

    @property
    def pid_file(self) -> Path:
        """Get the PID file path."""
        return self._pid_manager.pid_file

    @property
    def cancel_event(self) -> threading.Event:
        """Event set on shutdown; pass to running syncs."""
        return self._shutdown_event

    def set_sync_callback(self, callback: SyncCallback) -> None:
        """
        Set the function executed for each scheduled sync.

        Args:
            callback: Called as callback(full, cancel_event); returns True on
                success and False on failure.
        """
        self._sync_callback = callback

    def _setup_signal_handlers(self) -> None:
        """Handle SIGTERM and SIGINT for clean daemon shutdown."""
        self._original_sigterm_handler = signal.signal(  # type: ignore[assignment]
            signal.SIGTERM, self._signal_handler
        )
        self._original_sigint_handler = signal.signal(  # type: ignore[assignment]
            signal.SIGINT, self._signal_handler
        )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm_handler is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm_handler)
        if self._original_sigint_handler is not None:
            signal.signal(signal.SIGINT, self._original_sigint_handler)
        logger.debug("Signal handlers restored")

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._shutdown_event.set()

    def _run_sync(self, full: bool) -> bool:
        """
        Execute the sync callback and update statistics.

        Returns:
            True if sync succeeded, False otherwise.
        """
        if self._sync_callback is None:
            logger.warning("No sync callback configured, skipping sync")
            return False

        kind = "full" if full else "incremental"
        self.stats.sync_count += 1
        self.stats.last_sync_at = datetime.now()
        if full:
            self.stats.full_sync_count += 1
            self.stats.last_full_sync_at = self.stats.last_sync_at

        try:
            logger.info(f"Starting {kind} sync (cycle #{self.stats.sync_count})")
            success = self._sync_callback(full, self._shutdown_event)
        except Exception as e:
            self.stats.sync_error_count += 1
            self.stats.last_sync_success = False
            self.stats.last_error = str(e)
            logger.error(f"{kind.capitalize()} sync failed with exception: {e}")
            return False

        if success:
            self.stats.sync_success_count += 1
            self.stats.last_sync_success = True
            self.stats.last_error = None
            logger.info(f"{kind.capitalize()} sync completed successfully")
        else:
            self.stats.sync_error_count += 1
            self.stats.last_sync_success = False
            logger.warning(f"{kind.capitalize()} sync completed with errors")
        return success

    def _run_due(self, now: float) -> None:
        """Run whichever sync is due and reschedule."""
        if now >= self._next_full_at:
            self._run_sync(full=True)
            finished = time.time()
            self._next_full_at = finished + self.full_sync_interval
            self._next_incremental_at = finished + self.interval
        elif now >= self._next_incremental_at:
            self._run_sync(full=False)
            self._next_incremental_at = time.time() + self.interval

    def _sleep_interruptible(self, seconds: float) -> bool:
        """
        Sleep for the specified duration, waking early on shutdown.

        Uses wall-clock time so a suspended machine syncs on schedule after
        wake.

        Returns:
            True if sleep completed normally, False if interrupted by shutdown.
        """
        end_time = time.time() + seconds
        while time.time() < end_time and not self._shutdown_event.is_set():
            remaining = end_time - time.time()
            self._shutdown_event.wait(min(1.0, max(0.0, remaining)))

        return not self._shutdown_event.is_set()

    def run(self) -> None:
        """
        Run the daemon scheduler.

        Blocks until a shutdown signal is received.

        Raises:
            DaemonError: If daemon initialization fails.
            DaemonAlreadyRunningError: If another daemon is already running.
        """
        logger.info(
            f"Starting daemon scheduler (incremental every {self.interval}s, "
            f"full every {self.full_sync_interval}s)"
        )

        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._setup_signal_handlers()

        self._running = True
        self._shutdown_event.clear()
        self.stats = DaemonStats()

        start = time.time()
        if self.run_immediately:
            self._next_full_at = start
            self._next_incremental_at = start
        else:
            self._next_full_at = start + self.full_sync_interval
            self._next_incremental_at = start + self.interval

        try:
            while not self._shutdown_event.is_set():
                self._run_due(time.time())
                if self._shutdown_event.is_set():
                    break

                wake_at = min(self._next_full_at, self._next_incremental_at)
                delay = max(0.0, wake_at - time.time())
                logger.debug(f"Sleeping for {delay:.0f} seconds until next sync")
                if not self._sleep_interruptible(delay):
                    break
        finally:
            self._running = False
            self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info("Daemon scheduler stopped")

    def stop(self) -> None:
        """
        Request daemon shutdown.

        Safe to call from the sync callback or another thread.
        """
        logger.info("Stop requested")
        self._shutdown_event.set()

    def is_running(self) -> bool:
        return self._running

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        """
        Get the PID of the currently running daemon.

        Returns:
            PID if a daemon is running, None otherwise.
        """
        manager = PIDFileManager(pid_file)
        pid = manager.read()

        if pid is None:
            return None
        if manager.is_process_running(pid):
            return pid
        return None

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        pid = cls.get_running_pid(pid_file)

        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False


__all__ = [
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "SyncCallback",
    "DEFAULT_PID_DIR",
    "DEFAULT_PID_FILE",
    "DEFAULT_INTERVAL",
    "DEFAULT_FULL_SYNC_INTERVAL",
]
