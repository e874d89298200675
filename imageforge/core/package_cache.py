"""Content-addressed, write-once package and layer cache.

Storage layout::

    {base_path}/blobs/{sha256[0:2]}/{sha256[2:4]}/{sha256}
    {base_path}/keys/{key[0:2]}/{key}

Blobs are immutable once stored and there is no delete. Named keys map a
stage cache key to a blob digest and are bound at most once. Every write
lands in a temp file first and is linked into place, so readers never
observe a partial entry and a second writer never replaces the first.
"""

from __future__ import annotations

import io
import logging
import os
import tarfile
import tempfile
from pathlib import Path

from imageforge.core.hasher import sha256_hex, strip_prefix
from imageforge.models.artifacts import CacheEntry

logger = logging.getLogger(__name__)


class CacheIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


class PackageCache:
    """SHA-256 keyed, immutable cache shared across builds.

    Parameters
    ----------
    base_path:
        Root directory of the cache.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        (self._base / "blobs").mkdir(parents=True, exist_ok=True)
        (self._base / "keys").mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def _blob_path(self, digest: str) -> Path:
        return self._base / "blobs" / digest[:2] / digest[2:4] / digest

    def _key_path(self, key: str) -> Path:
        return self._base / "keys" / key[:2] / key

    @staticmethod
    def _publish(path: Path, data: bytes) -> bool:
        """Write *data* to *path* unless it already exists.

        Returns True if this call created the entry. ``os.link`` fails
        with FileExistsError instead of replacing, which is what keeps
        entries write-once under concurrent writers.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_name)

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def put(self, data: bytes) -> CacheEntry:
        """Store *data* and return its entry.

        Storing content that is already present is a no-op after an
        integrity check of the existing blob.
        """
        digest = sha256_hex(data)
        path = self._blob_path(digest)
        if path.exists():
            if not self.verify(digest):
                raise CacheIntegrityError(
                    f"Existing cache blob {digest} failed integrity check"
                )
        elif self._publish(path, data):
            logger.debug("Cached blob sha256:%s (%d bytes)", digest, len(data))
        return CacheEntry(digest=f"sha256:{digest}", size_bytes=len(data))

    def get(self, digest: str) -> bytes:
        """Return the bytes stored under *digest* (``sha256:<hex>`` or hex)."""
        path = self._blob_path(strip_prefix(digest))
        if not path.exists():
            raise FileNotFoundError(f"Cache blob not found: {digest}")
        return path.read_bytes()

    def exists(self, digest: str) -> bool:
        return self._blob_path(strip_prefix(digest)).exists()

    def verify(self, digest: str) -> bool:
        """Re-hash a stored blob and compare against its address."""
        hex_digest = strip_prefix(digest)
        path = self._blob_path(hex_digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == hex_digest

    # ------------------------------------------------------------------
    # Named keys
    # ------------------------------------------------------------------

    def bind(self, key: str, digest: str) -> str:
        """Bind *key* to *digest* unless the key is already bound.

        Returns the digest the key resolves to afterwards, which is the
        first binding if another writer got there earlier.
        """
        digest = f"sha256:{strip_prefix(digest)}"
        if not self.exists(digest):
            raise FileNotFoundError(f"Cannot bind {key} to missing blob {digest}")
        if not self._publish(self._key_path(key), digest.encode("ascii")):
            existing = self.lookup(key)
            if existing != digest:
                logger.info(
                    "Cache key %s already bound to %s; keeping it", key[:12], existing
                )
            return existing or digest
        return digest

    def lookup(self, key: str) -> str | None:
        """Return the digest bound to *key*, or None."""
        path = self._key_path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="ascii").strip()

    # ------------------------------------------------------------------
    # Directory trees
    # ------------------------------------------------------------------

    def put_tree(self, root: Path) -> CacheEntry:
        """Archive a file or directory deterministically and store it.

        Members are named relative to ``root.parent``, so extracting into
        the parent of the destination recreates ``root`` under its name.
        """
        root = Path(root)
        members = [root]
        if root.is_dir():
            members.extend(sorted(root.rglob("*")))
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            for path in members:
                arcname = path.relative_to(root.parent).as_posix()
                info = tar.gettarinfo(str(path), arcname=arcname)
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                if info.isfile():
                    with path.open("rb") as fh:
                        tar.addfile(info, fh)
                else:
                    tar.addfile(info)
        return self.put(buf.getvalue())

    def extract_tree(self, digest: str, dest: Path) -> Path:
        """Extract an archive produced by :meth:`put_tree` into directory *dest*."""
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(self.get(digest)), mode="r") as tar:
            tar.extractall(dest, filter="data")
        return dest
