import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..common.errors import ArtifactMissingError, StorageError, ValidationError

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedUrl:
    key: str
    url: str
    expires_at: datetime  # naive UTC

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "signedUrl": self.url, "expiresAt": self.expires_at.isoformat()}


class LocalArtifactStore:
    """Filesystem object store that hands out HMAC-signed, expiring URLs.

    URLs point at the app's own ``/uploads/<key>`` route, which checks the
    signature and expiry before serving the file.
    """

    def __init__(self, base_dir: str, base_url: str, secret: str):
        self.base_dir = Path(base_dir).resolve()
        self.base_url = base_url.rstrip("/")
        self._secret = secret.encode("utf-8")
        for sub in ("books", "covers", "pdfs"):
            (self.base_dir / sub).mkdir(parents=True, exist_ok=True)
        _logger.info("Local artifact store ready | dir=%s", self.base_dir)

    def path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ValidationError(f"Invalid object key: {key!r}")
        path = (self.base_dir / key).resolve()
        if self.base_dir not in path.parents:
            raise ValidationError(f"Invalid object key: {key!r}")
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def put(self, key: str, data: bytes) -> str:
        try:
            await asyncio.to_thread(self._write, key, data)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}") from e
        _logger.info("Object stored | key=%s bytes=%s", key, len(data))
        return key

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def stat(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to stat {key}: {e}") from e
        return {
            "size": st.st_size,
            "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
        }

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
        _logger.info("Object deleted | key=%s", key)
        return True

    def _signature(self, key: str, expires: int) -> str:
        return hmac.new(self._secret, f"{key}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, key: str, ttl: int, now: Optional[float] = None) -> SignedUrl:
        """Issue a URL for ``key`` valid for ``ttl`` seconds. Never touches the object."""
        if ttl <= 0:
            raise ValidationError("ttl must be positive")
        try:
            present = self.exists(key)
        except OSError as e:
            raise StorageError(f"Failed to check {key}: {e}") from e
        if not present:
            raise ArtifactMissingError(key)
        expires = int(now if now is not None else time.time()) + int(ttl)
        url = f"{self.base_url}/uploads/{quote(key)}?expires={expires}&signature={self._signature(key, expires)}"
        expires_at = datetime.fromtimestamp(expires, tz=timezone.utc).replace(tzinfo=None)
        return SignedUrl(key=key, url=url, expires_at=expires_at)

    def verify(self, key: str, expires: Any, signature: Optional[str], now: Optional[float] = None) -> bool:
        try:
            expires = int(expires)
        except (TypeError, ValueError):
            return False
        if not signature or expires < int(now if now is not None else time.time()):
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)
