"""
Background jobs owned by the server process: the reconciliation sweep and
the cleanup of abandoned uploads. Started once from the entry points, stopped at exit.
"""

import atexit
import logging
import threading

import config
import ftp_sync
import storage


class PeriodicTask:
    """Run fn every `interval` seconds on a daemon thread until stop() is called"""

    def __init__(self, name, interval, fn, initial_delay=None):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.initial_delay = interval if initial_delay is None else initial_delay
        self._stop = threading.Event()
        self._thread = None
        self.runs = 0

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def _loop(self):
        delay = self.initial_delay
        while not self._stop.wait(delay):
            try:
                self.fn()
            except Exception as e:
                logging.error(f"[{self.name}] run failed: {e}", exc_info=True)
            self.runs += 1
            delay = self.interval

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


_tasks = {}
_tasks_lock = threading.Lock()


def register(task):
    with _tasks_lock:
        existing = _tasks.get(task.name)
        if existing is not None and existing.running:
            return existing
        _tasks[task.name] = task
    task.start()
    return task


def active_tasks():
    with _tasks_lock:
        return [name for name, task in _tasks.items() if task.running]


def initialize_background_jobs(metadata, remote):
    """Start the periodic jobs for this process"""
    print("🧹 Initializing background jobs...")

    register(PeriodicTask(
        'ftp-sync',
        config.SYNC_INTERVAL,
        lambda: ftp_sync.reconcile_once(metadata, remote),
        initial_delay=config.SYNC_INITIAL_DELAY,
    ))
    print(f"🔄 Reconciliation sweep every {config.SYNC_INTERVAL}s "
          f"(first run in {config.SYNC_INITIAL_DELAY}s)")

    if config.ASSEMBLY_MODE == 'local':
        register(PeriodicTask('chunk-cleanup', config.CHUNK_CLEANUP_INTERVAL, storage.cleanup_old_chunks))
        print(f"🧹 Chunk cleanup every {config.CHUNK_CLEANUP_INTERVAL}s "
              f"(artifacts older than {config.CHUNK_MAX_AGE}s)")
    else:
        register(PeriodicTask(
            'upload-session-cleanup',
            config.CHUNK_CLEANUP_INTERVAL,
            lambda: storage.cleanup_stale_upload_sessions(metadata, remote),
        ))
        print(f"🧹 Upload session cleanup every {config.CHUNK_CLEANUP_INTERVAL}s "
              f"(sessions idle for {config.CHUNK_MAX_AGE}s)")

    return active_tasks()


def stop_background_jobs():
    with _tasks_lock:
        tasks = list(_tasks.values())
        _tasks.clear()
    for task in tasks:
        task.stop()
    if tasks:
        print(f"🛑 Stopped {len(tasks)} background jobs")


atexit.register(stop_background_jobs)
