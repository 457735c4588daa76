"""
JSON file persistence for the users, products and orders collections.

Each collection lives in memory behind a Repository and is written to
``<data_dir>/<name>.json`` as a pretty-printed array. The in-memory state is
authoritative: a failed write is logged and retried by the next flush.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import secrets
import signal
import sys
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "products", "orders")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if not number:
            break
    return "".join(reversed(digits))


def generate_id() -> str:
    """Millisecond timestamp in base 36 followed by 9 random base-36 chars."""
    stamp = _base36(int(time.time() * 1000))
    return stamp + "".join(secrets.choice(_BASE36) for _ in range(9))


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _valid_records(items: list, path: str) -> list[dict]:
    """Keep the objects that carry a string id. Anything else is logged and dropped."""
    records = []
    for index, item in enumerate(items):
        if isinstance(item, dict) and isinstance(item.get("id"), str) and item["id"]:
            records.append(item)
        else:
            logger.warning("Skipping entry %d of %s: not a record with a string id", index, path)
    return records


class Repository:
    """
    One collection of records keyed by their ``id`` field.

    Reads and writes always hand out copies so callers never keep a reference
    into the collection. All access goes through the owning store's lock.
    """

    def __init__(self, store: "JsonStore", name: str):
        self._store = store
        self.name = name
        self._records: list[dict] = []
        self.dirty = False

    def list(self, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._store.lock:
            return [copy.deepcopy(r) for r in self._records if predicate is None or predicate(r)]

    def find(self, predicate: Callable[[dict], bool]) -> Optional[dict]:
        with self._store.lock:
            for record in self._records:
                if predicate(record):
                    return copy.deepcopy(record)
        return None

    def get(self, record_id: str) -> Optional[dict]:
        if not record_id:
            return None
        return self.find(lambda r: r.get("id") == record_id)

    def create(self, record: dict) -> dict:
        record = copy.deepcopy(record)
        record.setdefault("id", generate_id())
        with self._store.lock:
            self._records.append(record)
            self.dirty = True
        return copy.deepcopy(record)

    def update(self, record_id: str, changes: dict) -> Optional[dict]:
        """Merge ``changes`` into the record. Returns None if there is no such id."""
        with self._store.lock:
            for index, record in enumerate(self._records):
                if record.get("id") == record_id:
                    updated = {**record, **copy.deepcopy(changes), "id": record_id}
                    self._records[index] = updated
                    self.dirty = True
                    return copy.deepcopy(updated)
        return None

    def count(self) -> int:
        with self._store.lock:
            return len(self._records)

    def _replace_all(self, records: list[dict]) -> None:
        with self._store.lock:
            self._records = records
            self.dirty = False


class JsonStore:
    """Owns the three collections and their files."""

    mode = "Persistance JSON"

    def __init__(self, data_dir: str, collections=COLLECTIONS):
        self.data_dir = data_dir
        self.lock = threading.RLock()
        self.last_save: Optional[str] = None
        self._repositories = {name: Repository(self, name) for name in collections}

    def __getitem__(self, name: str) -> Repository:
        return self._repositories[name]

    @property
    def users(self) -> Repository:
        return self._repositories["users"]

    @property
    def products(self) -> Repository:
        return self._repositories["products"]

    @property
    def orders(self) -> Repository:
        return self._repositories["orders"]

    @property
    def dirty(self) -> bool:
        return any(repo.dirty for repo in self._repositories.values())

    def path_for(self, name: str) -> str:
        return os.path.join(self.data_dir, f"{name}.json")

    def file_exists(self, name: str) -> bool:
        return os.path.exists(self.path_for(name))

    # ------------------------------------------------------------ load / save

    def load(self, name: str) -> list[dict]:
        """Read one collection from disk. Missing or corrupt files load as empty."""
        repo = self[name]
        path = self.path_for(name)
        records: list[dict] = []
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, list):
                    records = _valid_records(data, path)
                    logger.info("Loaded %d %s from %s", len(records), name, path)
                else:
                    logger.error("Ignoring %s: top-level value is not an array", path)
            except (OSError, ValueError) as e:
                logger.error("Could not load %s from %s: %s", name, path, e)
        repo._replace_all(records)
        return repo.list()

    def load_all(self) -> None:
        os.makedirs(self.data_dir, exist_ok=True)
        for name in self._repositories:
            self.load(name)

    def save(self, name: str) -> bool:
        """Overwrite the collection file atomically. Failures are logged, not raised."""
        repo = self[name]
        path = self.path_for(name)
        with self.lock:
            try:
                payload = json.dumps(repo._records, ensure_ascii=False, indent=2)
                os.makedirs(self.data_dir, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                    os.replace(tmp_path, path)
                finally:
                    if os.path.exists(tmp_path):
                        os.remove(tmp_path)
            except (OSError, TypeError, ValueError) as e:
                logger.error("Could not save %s to %s: %s", name, path, e)
                return False
            repo.dirty = False
            self.last_save = now_iso()
        logger.debug("Saved %s to %s", name, path)
        return True

    def save_all(self) -> bool:
        results = [self.save(name) for name in self._repositories]
        return all(results)

    def flush(self) -> bool:
        """Save every collection with unsaved changes."""
        results = [self.save(name) for name, repo in self._repositories.items() if repo.dirty]
        return all(results)

    def status(self) -> dict:
        return {
            "connected": True,
            "mode": self.mode,
            "userCount": self.users.count(),
            "productCount": self.products.count(),
            "orderCount": self.orders.count(),
            "lastSave": self.last_save,
            "files": {name: self.file_exists(name) for name in self._repositories},
        }


class AutoSaver:
    """Calls ``store.save_all()`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, store: JsonStore, interval: float = 30):
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "AutoSaver":
        self._thread = threading.Thread(target=self._run, name="json-autosave", daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.store.save_all()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join()


def install_shutdown_handlers(store: JsonStore, autosaver: Optional[AutoSaver] = None) -> None:
    """Save everything on SIGINT/SIGTERM and on uncaught exceptions, then exit."""

    def _final_save() -> None:
        if autosaver is not None:
            autosaver.stop()
        store.save_all()

    def _on_signal(signum, frame):
        logger.info("Received %s, saving data before exit", signal.Signals(signum).name)
        _final_save()
        logger.info("Data saved, server stopped")
        sys.exit(0)

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _on_signal)

    previous_excepthook = sys.excepthook

    def _excepthook(exc_type, exc, tb):
        logger.critical("Unhandled exception, saving data before exit", exc_info=(exc_type, exc, tb))
        _final_save()
        previous_excepthook(exc_type, exc, tb)

    def _thread_excepthook(args):
        if args.exc_type is SystemExit:
            return
        logger.critical(
            "Unhandled exception in thread %s, saving data before exit",
            getattr(args.thread, "name", "?"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        _final_save()
        os._exit(1)

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook
