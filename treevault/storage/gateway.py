"""
TreeVault Blob Gateway — Interface to the external object store.

The gateway is constructed once at process start and injected into the
lifecycle services. Keys are opaque "/"-separated strings; prefixes end in "/".

Implementations:
- BlobGateway:      structural protocol the services depend on
- LocalBlobGateway: objects under a root directory, HMAC-signed URLs

Physical layout (LocalBlobGateway):
    {root}/{workspace_id}/folders/{folder_id}/files/{file_id}-{name}
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from treevault.engine.config import MAX_PRESIGN_SECONDS
from treevault.engine.errors import TreeVaultDependencyError, TreeVaultValidationError

logger = logging.getLogger("treevault.storage.gateway")


def clamp_ttl(ttl_seconds: int) -> int:
    """Presigned capabilities never outlive MAX_PRESIGN_SECONDS."""
    if ttl_seconds <= 0:
        raise TreeVaultValidationError(
            f"Presign TTL must be positive, got {ttl_seconds}", field="ttl_seconds",
        )
    return min(ttl_seconds, MAX_PRESIGN_SECONDS)


@runtime_checkable
class BlobGateway(Protocol):
    def presign_read(self, key: str, ttl_seconds: int = MAX_PRESIGN_SECONDS) -> str: ...

    def presign_write(
        self,
        key: str,
        content_type: Optional[str] = None,
        ttl_seconds: int = MAX_PRESIGN_SECONDS,
    ) -> str: ...

    def delete_one(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def copy(self, source_key: str, dest_key: str) -> None: ...


class LocalBlobGateway:
    """
    Filesystem-backed blob store.

    Presigned URLs have the form
        {base_url}/{key}?op=read|write&expires=<unix>&signature=<hex>
    where signature = HMAC-SHA256(secret, "op\\nkey\\nexpires[\\ncontent_type]").
    The serving layer checks them with verify_url().
    """

    def __init__(self, root: str, base_url: str, signing_secret: str, clock=time.time):
        self._root = Path(root).resolve()
        self._base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._clock = clock
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    # -------------------------------------------------------------------
    # Key handling
    # -------------------------------------------------------------------

    def _resolve(self, key: str) -> Path:
        """Map a key to a path inside root. Rejects traversal and absolute keys."""
        posix = PurePosixPath(key)
        if not key or posix.is_absolute() or ".." in posix.parts or "\\" in key:
            raise TreeVaultValidationError(
                f"Invalid storage key '{key}'", code="INVALID_STORAGE_KEY", field="key",
            )
        return self._root.joinpath(*posix.parts)

    def _sign(self, op: str, key: str, expires: int, content_type: Optional[str] = None) -> str:
        payload = f"{op}\n{key}\n{expires}"
        if content_type:
            payload += f"\n{content_type}"
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def _presign(self, op: str, key: str, ttl_seconds: int, content_type: Optional[str] = None) -> str:
        self._resolve(key)
        expires = int(self._clock()) + clamp_ttl(ttl_seconds)
        params = {"op": op, "expires": expires}
        if content_type:
            params["content_type"] = content_type
        params["signature"] = self._sign(op, key, expires, content_type)
        return f"{self._base_url}/{quote(key)}?{urlencode(params)}"

    # -------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------

    def presign_read(self, key: str, ttl_seconds: int = MAX_PRESIGN_SECONDS) -> str:
        return self._presign("read", key, ttl_seconds)

    def presign_write(
        self,
        key: str,
        content_type: Optional[str] = None,
        ttl_seconds: int = MAX_PRESIGN_SECONDS,
    ) -> str:
        return self._presign("write", key, ttl_seconds, content_type)

    def verify_url(self, url: str, op: str) -> Optional[str]:
        """
        Validate a presigned URL for the given op.

        Returns the object key when the signature matches and has not
        expired, otherwise None.
        """
        parts = urlsplit(url)
        if not parts.path.startswith(urlsplit(self._base_url).path + "/"):
            return None
        key = unquote(parts.path[len(urlsplit(self._base_url).path) + 1:])
        query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        if query.get("op") != op:
            return None
        try:
            expires = int(query.get("expires", ""))
        except ValueError:
            return None
        if expires < int(self._clock()):
            return None
        expected = self._sign(op, key, expires, query.get("content_type"))
        if not hmac.compare_digest(expected, query.get("signature", "")):
            return None
        return key

    # -------------------------------------------------------------------
    # Object operations
    # -------------------------------------------------------------------

    def write(self, key: str, data: bytes) -> int:
        """Store bytes under key (used by the upload endpoint after verify_url)."""
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise TreeVaultDependencyError(
                f"Blob write failed for '{key}'", dependency="blob", operation="write", resource_id=key,
            ) from e
        return len(data)

    def read(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise TreeVaultDependencyError(
                f"Blob read failed for '{key}'", dependency="blob", operation="read", resource_id=key,
            ) from e

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def delete_one(self, key: str) -> None:
        """Delete one object. Missing objects are not an error."""
        path = self._resolve(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise TreeVaultDependencyError(
                f"Blob delete failed for '{key}'", dependency="blob", operation="delete_one", resource_id=key,
            ) from e

    def delete_prefix(self, prefix: str) -> int:
        """
        Delete every object whose key starts with prefix.

        Prefixes are directory-aligned ("…/folders/<id>/"), so this removes
        the directory tree. Returns the number of objects removed.
        """
        path = self._resolve(prefix.rstrip("/"))
        if not path.exists():
            return 0
        try:
            count = sum(1 for p in path.rglob("*") if p.is_file()) if path.is_dir() else 1
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            raise TreeVaultDependencyError(
                f"Blob prefix delete failed for '{prefix}'",
                dependency="blob",
                operation="delete_prefix",
                resource_id=prefix,
            ) from e
        logger.info(f"Deleted {count} object(s) under {prefix}")
        return count

    def copy(self, source_key: str, dest_key: str) -> None:
        source = self._resolve(source_key)
        dest = self._resolve(dest_key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
        except OSError as e:
            raise TreeVaultDependencyError(
                f"Blob copy failed '{source_key}' -> '{dest_key}'",
                dependency="blob",
                operation="copy",
                resource_id=source_key,
            ) from e
