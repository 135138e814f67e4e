"""Local filesystem facade.

Accepts plain paths and ``file://`` URIs. Other schemes are rejected with
:class:`UnknownSourceError` so callers can tell an unsupported locator from
an I/O failure.
"""

from __future__ import annotations

import shutil
import urllib.parse
from pathlib import Path

import psutil

from swarmctl.models import StorageConfig
from swarmctl.utils.exceptions import UnknownSourceError, ValidationError
from swarmctl.utils.logging_config import get_logger

logger = get_logger(__name__)


class LocalFileSystem:
    """File access for the local disk."""

    def __init__(self, storage: StorageConfig | None = None) -> None:
        self.storage = storage or StorageConfig()

    def is_local(self, locator: str) -> bool:
        scheme = urllib.parse.urlparse(locator).scheme.lower()
        # One-letter schemes are Windows drive letters.
        return scheme in ("", "file") or len(scheme) == 1

    def to_path(self, locator: str) -> Path:
        if not self.is_local(locator):
            msg = f"Unsupported locator scheme: {locator}"
            raise UnknownSourceError(msg, {"locator": locator})
        parsed = urllib.parse.urlparse(locator)
        if parsed.scheme.lower() == "file":
            return Path(urllib.parse.unquote(parsed.path))
        return Path(locator).expanduser()

    def exists(self, locator: str) -> bool:
        return self.to_path(locator).exists()

    def read_bytes(self, locator: str) -> bytes:
        return self.to_path(locator).read_bytes()

    def write_bytes(self, locator: str, data: bytes) -> None:
        path = self.to_path(locator)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def create_file(self, directory: str, name: str) -> Path:
        """Create an empty file, adding a numeric suffix if ``name`` is taken.

        Raises:
            ValidationError: ``name`` would place the file outside ``directory``.

        """
        base = self.to_path(directory)
        base.mkdir(parents=True, exist_ok=True)
        candidate = base / name
        if candidate.resolve().parent != base.resolve():
            msg = f"File name escapes its directory: {name}"
            raise ValidationError(msg, {"directory": str(base)})
        stem, suffix = candidate.stem, candidate.suffix
        n = 1
        while candidate.exists():
            candidate = base / f"{stem} ({n}){suffix}"
            n += 1
        candidate.touch()
        return candidate

    def delete(self, locator: str) -> bool:
        """Delete a file. Returns False if it was already gone."""
        try:
            self.to_path(locator).unlink()
        except FileNotFoundError:
            return False
        return True

    def list_files(self, directory: str, suffix: str) -> list[Path]:
        base = self.to_path(directory)
        if not base.is_dir():
            return []
        suffix = suffix.lower()
        return sorted(
            p for p in base.iterdir() if p.is_file() and p.name.lower().endswith(suffix)
        )

    def get_dir_available_bytes(self, directory: str) -> int:
        """Free bytes on the volume holding ``directory`` (or its nearest parent)."""
        path = self.to_path(directory)
        while not path.exists() and path != path.parent:
            path = path.parent
        return int(psutil.disk_usage(str(path)).free)

    def default_download_path(self) -> str:
        return str(Path(self.storage.download_dir).expanduser())

    def temp_dir(self) -> Path:
        return Path(self.storage.temp_dir).expanduser()

    def clean_temp_dir(self) -> None:
        """Remove everything under the temp directory, keeping the directory."""
        temp = self.temp_dir()
        if not temp.is_dir():
            return
        for child in temp.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        logger.debug("Cleaned temp directory %s", temp)
