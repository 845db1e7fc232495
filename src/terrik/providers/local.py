"""Providers for files and directories on the local filesystem."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Any

from ..context import ProviderContext
from ..errors import PermanentError
from ..provider import Provider, ReplaceStrategy, provider
from ..state import StateRecord

logger = logging.getLogger(__name__)


def _mode(value: Any) -> int:
    """Parse an octal permission string such as ``"0644"``."""
    try:
        return int(str(value), 8)
    except ValueError:
        raise PermanentError(f"invalid file_permission '{value}'") from None


@provider("local_file")
class LocalFile(Provider):
    """A text file with the given content."""

    required = frozenset({"filename", "content"})
    immutable = frozenset({"filename"})
    computed = frozenset({"size"})

    def _write(self, ctx: ProviderContext, attrs: dict[str, Any]) -> StateRecord:
        path = Path(attrs["filename"])
        content = str(attrs["content"])
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            if "file_permission" in attrs:
                os.chmod(path, _mode(attrs["file_permission"]))
        except OSError as exc:
            raise PermanentError(f"cannot write {path}: {exc}") from exc
        logger.debug("Wrote %d byte(s) to %s", len(content), path)
        digest = hashlib.sha1(content.encode()).hexdigest()
        return ctx.record({**attrs, "size": len(content.encode())}, id=digest)

    def create(self, ctx: ProviderContext, attrs: dict[str, Any]) -> StateRecord:
        path = Path(attrs["filename"])
        if path.exists():
            raise PermanentError(f"{path} already exists")
        return self._write(ctx, attrs)

    def read(self, ctx: ProviderContext, prior: StateRecord) -> StateRecord | None:
        path = Path(prior.attributes["filename"])
        if not path.is_file():
            return None
        content = path.read_text()
        attrs = {**prior.attributes, "content": content, "size": len(content.encode())}
        if "file_permission" in attrs:
            attrs["file_permission"] = f"{path.stat().st_mode & 0o777:04o}"
        return prior.model_copy(update={"attributes": attrs, "id": hashlib.sha1(content.encode()).hexdigest()})

    def update(self, ctx: ProviderContext, attrs: dict[str, Any], prior: StateRecord) -> StateRecord:
        return self._write(ctx, attrs)

    def delete(self, ctx: ProviderContext, prior: StateRecord) -> None:
        path = Path(prior.attributes["filename"])
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise PermanentError(f"cannot delete {path}: {exc}") from exc


@provider("local_directory")
class LocalDirectory(Provider):
    """A directory; replaced by creating the new one before removing the old."""

    required = frozenset({"path"})
    immutable = frozenset({"path"})
    replace_strategy = ReplaceStrategy.CREATE_BEFORE_DELETE

    def create(self, ctx: ProviderContext, attrs: dict[str, Any]) -> StateRecord:
        path = Path(attrs["path"])
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PermanentError(f"cannot create {path}: {exc}") from exc
        return ctx.record(attrs, id=str(path.resolve()))

    def read(self, ctx: ProviderContext, prior: StateRecord) -> StateRecord | None:
        return prior if Path(prior.attributes["path"]).is_dir() else None

    def update(self, ctx: ProviderContext, attrs: dict[str, Any], prior: StateRecord) -> StateRecord:
        return ctx.record(attrs, id=prior.id)

    def delete(self, ctx: ProviderContext, prior: StateRecord) -> None:
        path = Path(prior.attributes["path"])
        try:
            path.rmdir()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise PermanentError(f"cannot remove {path}: {exc}") from exc
