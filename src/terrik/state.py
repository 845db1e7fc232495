"""State store — persisted last-applied attributes of every resource."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import LockHeldError, StateError

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

DEPOSED_SUFFIX = "#deposed"


class StateRecord(BaseModel):
    """Last-applied attributes of a single resource.

    A deposed record keeps an old object that a replacement failed to
    delete; ``deposed`` holds a key unique among the deposed objects of
    the same address.
    """

    model_config = {"frozen": True}

    type: str
    name: str
    id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    deposed: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def address(self) -> str:
        address = f"{self.type}.{self.name}"
        return f"{address}{DEPOSED_SUFFIX}-{self.deposed}" if self.deposed else address

    def values(self) -> dict[str, Any]:
        """Return the attributes other resources may reference, including ``id``."""
        return {**self.attributes, "id": self.id}


class StateDocument(BaseModel):
    """On-disk layout of a state file."""

    format_version: int = FORMAT_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, StateRecord] = Field(default_factory=dict)


class StateStore:
    """Record store keyed by resource address, optionally backed by a JSON file.

    Every write replaces the file atomically, so a crash mid-write leaves the
    previously committed state intact.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._write_lock = threading.Lock()
        self._guard = threading.Lock()
        self._address_locks: dict[str, threading.Lock] = {}
        self._doc = self._read()

    @property
    def serial(self) -> int:
        return self._doc.serial

    @property
    def lineage(self) -> str:
        return self._doc.lineage

    @property
    def lock_path(self) -> Path | None:
        return self.path.with_name(self.path.name + ".lock") if self.path else None

    @property
    def backup_path(self) -> Path | None:
        return self.path.with_name(self.path.name + ".backup") if self.path else None

    def _read(self) -> StateDocument:
        if self.path is None or not self.path.exists():
            return StateDocument()
        logger.debug("Reading state from %s", self.path)
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"{self.path}: corrupt state file: {exc}") from exc
        if not isinstance(data, dict):
            raise StateError(f"{self.path}: corrupt state file: expected an object")
        version = data.get("format_version")
        if not isinstance(version, int):
            raise StateError(f"{self.path}: missing format_version")
        if version > FORMAT_VERSION:
            raise StateError(
                f"{self.path}: state format version {version} is newer than "
                f"supported version {FORMAT_VERSION}"
            )
        try:
            return StateDocument.model_validate(data)
        except ValidationError as exc:
            raise StateError(f"{self.path}: invalid state file: {exc}") from exc

    def _commit(self, resources: dict[str, StateRecord]) -> None:
        """Persist a new resource mapping, then swap it in."""
        doc = self._doc.model_copy(update={"resources": resources, "serial": self._doc.serial + 1})
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(f".{self.path.name}.tmp.{uuid.uuid4().hex[:8]}")
            try:
                with open(tmp, "w", encoding="utf-8") as fh:
                    fh.write(doc.model_dump_json(indent=2))
                    fh.flush()
                    os.fsync(fh.fileno())
                if self.path.exists():
                    shutil.copyfile(self.path, self.backup_path)
                os.replace(tmp, self.path)
            finally:
                tmp.unlink(missing_ok=True)
            logger.debug("Wrote state serial %d to %s", doc.serial, self.path)
        self._doc = doc

    def get(self, address: str) -> StateRecord | None:
        return self._doc.resources.get(address)

    def put(self, record: StateRecord) -> None:
        """Atomically store (or overwrite) the record for its address."""
        with self._write_lock:
            resources = dict(self._doc.resources)
            resources[record.address] = record
            self._commit(resources)

    def delete(self, address: str) -> None:
        """Remove the record for an address; missing addresses are ignored."""
        with self._write_lock:
            if address not in self._doc.resources:
                return
            resources = dict(self._doc.resources)
            del resources[address]
            self._commit(resources)

    def snapshot(self) -> dict[str, StateRecord]:
        """Return a point-in-time copy of all records."""
        return dict(self._doc.resources)

    def addresses(self) -> list[str]:
        return sorted(self._doc.resources)

    def __contains__(self, address: object) -> bool:
        return address in self._doc.resources

    def __len__(self) -> int:
        return len(self._doc.resources)

    @contextmanager
    def locked(self, address: str) -> Iterator[StateRecord | None]:
        """Hold the per-address lock for a read-call-write sequence."""
        with self._guard:
            lock = self._address_locks.setdefault(address, threading.Lock())
        with lock:
            yield self.get(address)

    @contextmanager
    def lock(self) -> Iterator[StateStore]:
        """Take the advisory lock on the state file for the duration of a run.

        Raises LockHeldError immediately if another run holds it.
        """
        if self.path is None:
            yield self
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = os.read(fd, 32).decode(errors="replace").strip() or "unknown"
            os.close(fd)
            raise LockHeldError(f"State {self.path} is locked by another run (pid {holder})") from None
        logger.debug("Acquired state lock %s", self.lock_path)
        try:
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode())
            self._doc = self._read()
            yield self
        finally:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            logger.debug("Released state lock %s", self.lock_path)

    def __repr__(self) -> str:
        where = self.path if self.path is not None else "memory"
        return f"StateStore({where}, resources={len(self)}, serial={self.serial})"


def reference_context(records: dict[str, StateRecord]) -> dict[str, dict[str, Any]]:
    """Nest record values as ``{type: {name: values}}`` for reference resolution."""
    context: dict[str, dict[str, Any]] = {}
    for record in records.values():
        if record.deposed:
            continue
        context.setdefault(record.type, {})[record.name] = record.values()
    return context
