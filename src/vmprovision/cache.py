"""
Artifact cache for expensive build outputs.

A compiled runtime (e.g. Ruby built by ruby-build) takes minutes to produce
and is identical for the same tool, version and host architecture. The cache
keeps one gzipped tarball per key so a fresh VM can restore it in seconds:

    ~/.vmclaude-cache/
    └── runtimes/
        ├── ruby-3.3.0-x86_64.tar.gz
        └── ruby-3.3.0-aarch64.tar.gz

The cache root is usually a host directory shared into the VM. When
``runtimes/`` does not exist the cache is considered unavailable and is never
created by this module; its presence is the opt-in signal.

Every cache failure is reported as a ``CacheError`` subclass. Callers treat
all of them as a miss.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import tarfile
import tempfile
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vmprovision.errors import CacheCorrupt, CacheMiss, CacheStoreFailed

__all__ = ["CacheKey", "CacheEntry", "ArtifactCache", "RUNTIMES_DIR", "ARCHIVE_SUFFIX"]

logger = logging.getLogger(__name__)

RUNTIMES_DIR = "runtimes"
ARCHIVE_SUFFIX = ".tar.gz"

_TOOL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_PART_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+]*$")


class CacheKey(BaseModel):
    """
    Semantic identity of a cached artifact.

    ``version`` and ``arch`` may not contain '-' so that archive names can be
    split back into their parts.
    """

    model_config = ConfigDict(frozen=True)

    tool: str = Field(description="Tool name (e.g. 'ruby')")
    version: str = Field(description="Exact tool version (e.g. '3.3.0')")
    arch: str = Field(description="Host architecture as reported by uname -m")

    @field_validator("tool")
    @classmethod
    def validate_tool(cls, v: str) -> str:
        if not _TOOL_RE.match(v):
            raise ValueError(f"invalid tool name {v!r}")
        return v

    @field_validator("version", "arch")
    @classmethod
    def validate_part(cls, v: str) -> str:
        if not _PART_RE.match(v):
            raise ValueError(f"invalid cache key component {v!r}")
        return v

    @classmethod
    def for_host(cls, tool: str, version: str) -> "CacheKey":
        """Build a key for the architecture of the running machine."""
        return cls(tool=tool, version=version, arch=platform.machine() or "unknown")

    @classmethod
    def parse(cls, value: str) -> "CacheKey":
        """Parse ``tool-version-arch`` (the inverse of ``str(key)``)."""
        parts = value.rsplit("-", 2)
        if len(parts) != 3:
            raise ValueError(f"cache key {value!r} is not of the form tool-version-arch")
        return cls(tool=parts[0], version=parts[1], arch=parts[2])

    def __str__(self) -> str:
        return f"{self.tool}-{self.version}-{self.arch}"


@dataclass
class CacheEntry:
    """A stored artifact as listed by ``ArtifactCache.entries``."""
    key: CacheKey
    path: Path
    size_bytes: int
    modified_at: datetime


class ArtifactCache:
    """
    Directory of restorable build artifacts.

    Entries are created once and only read afterwards. All writes go through
    a key-specific temporary file that is renamed into place, so two keys
    never share an in-progress path and a partial archive is never visible.
    """

    def __init__(self, root: Path):
        """
        Initialize cache.

        Args:
            root: Cache root; artifacts live in ``<root>/runtimes``.
        """
        self.root = Path(root)
        self.runtimes_dir = self.root / RUNTIMES_DIR

    def available(self) -> bool:
        """Whether the cache exists at all. An unreadable cache root counts as absent."""
        try:
            return self.runtimes_dir.is_dir()
        except OSError as e:
            logger.warning("Artifact cache %s is not readable: %s", self.runtimes_dir, e)
            return False

    def archive_path(self, key: CacheKey) -> Path:
        return self.runtimes_dir / f"{key}{ARCHIVE_SUFFIX}"

    def has(self, key: CacheKey) -> bool:
        """Whether an artifact is stored for ``key``. Lookup errors count as a miss."""
        try:
            return self.archive_path(key).is_file()
        except OSError as e:
            logger.warning("Cannot look up %s in %s: %s", key, self.runtimes_dir, e)
            return False

    def restore(self, key: CacheKey, destination: Path) -> Path:
        """
        Extract the artifact for ``key`` so that it becomes ``destination``.

        The archive must hold a single top-level directory named like
        ``destination``. Extraction happens in a staging directory next to
        ``destination``; the artifact is moved into place only after the whole
        archive has been read, replacing any leftover from an interrupted
        build.

        Args:
            key: Cache key
            destination: Artifact directory to recreate (e.g. ~/.rbenv/versions/3.3.0)

        Returns:
            ``destination``

        Raises:
            CacheMiss: No artifact stored for key
            CacheCorrupt: Archive is unreadable, truncated, empty, unsafe or
                holds a differently named artifact
        """
        archive = self.archive_path(key)
        if not self.has(key):
            raise CacheMiss(str(key), "no cached artifact")

        target = Path(destination)
        parent = target.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(dir=parent, prefix=f".restore-{key}-"))
        except OSError as e:
            raise CacheCorrupt(str(key), f"cannot prepare {parent}: {e}") from e

        try:
            try:
                with tarfile.open(archive, "r:gz") as tar:
                    tar.extractall(staging, filter="data")
            except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
                raise CacheCorrupt(str(key), f"unreadable archive {archive}: {e}") from e

            roots = sorted(staging.iterdir())
            if len(roots) != 1 or not roots[0].is_dir():
                raise CacheCorrupt(
                    str(key),
                    f"expected a single top-level directory in {archive}, found {len(roots)} entries",
                )
            if roots[0].name != target.name:
                raise CacheCorrupt(
                    str(key),
                    f"archive {archive} holds '{roots[0].name}', expected '{target.name}'",
                )

            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                elif target.exists() or target.is_symlink():
                    target.unlink()
                os.replace(roots[0], target)
            except OSError as e:
                raise CacheCorrupt(str(key), f"cannot move artifact into {target}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Restored %s from %s into %s", key, archive, target)
        return target

    def store(self, key: CacheKey, source: Path) -> Path:
        """
        Capture a freshly built artifact directory.

        The directory is archived under its own name; ``restore(key, source)``
        recreates it.

        Returns:
            Path of the written archive

        Raises:
            CacheStoreFailed: Cache unavailable, source missing, or write error
        """
        source = Path(source)
        if not self.available():
            raise CacheStoreFailed(str(key), f"cache root {self.runtimes_dir} does not exist")
        if not source.is_dir():
            raise CacheStoreFailed(str(key), f"artifact directory {source} does not exist")

        archive = self.archive_path(key)
        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.runtimes_dir,
                prefix=f".{key}-",
                suffix=".tmp",
            )
            with os.fdopen(fd, "wb") as f:
                with tarfile.open(fileobj=f, mode="w:gz") as tar:
                    tar.add(source, arcname=source.name)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, archive)
        except (OSError, tarfile.TarError) as e:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            raise CacheStoreFailed(str(key), str(e)) from e

        logger.info("Cached %s at %s", key, archive)
        return archive

    def entries(self) -> List[CacheEntry]:
        """List stored artifacts, sorted by key."""
        if not self.available():
            return []
        entries = []
        for path in sorted(self.runtimes_dir.glob(f"*{ARCHIVE_SUFFIX}")):
            name = path.name[: -len(ARCHIVE_SUFFIX)]
            try:
                key = CacheKey.parse(name)
            except ValueError:
                logger.debug("Ignoring unrecognised cache file %s", path)
                continue
            stat = path.stat()
            entries.append(
                CacheEntry(
                    key=key,
                    path=path,
                    size_bytes=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return entries
