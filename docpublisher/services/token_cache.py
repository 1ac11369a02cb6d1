"""
TokenCacheFile - Local persistence for the authentication session.

Stores the identity provider's serialized cache plus the last known account
so a session survives between process invocations. Every disk failure is
logged and swallowed: the in-memory session stays authoritative.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Default cache location
DEFAULT_CACHE_DIR = Path.home() / ".docpublisher"
DEFAULT_CACHE_FILE = "token_cache.json"
CACHE_PATH_ENV = "DOCPUBLISHER_TOKEN_CACHE"


def default_cache_path() -> Path:
    env_path = os.getenv(CACHE_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CACHE_DIR / DEFAULT_CACHE_FILE


class TokenCacheFile:
    """
    JSON cache file holding ``{"provider_cache": str, "account": str}``.

    The file is written with owner-only permissions where the platform
    supports it.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else default_cache_path()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[Dict[str, Any]]:
        """Load cache from disk. Returns None when absent or unreadable."""
        try:
            if not self._path.exists():
                logger.debug(f"TokenCache: no cache file at {self._path}")
                return None
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                logger.warning(f"TokenCache: unexpected content in {self._path}, ignoring")
                return None
            logger.debug(f"TokenCache: loaded {self._path}")
            return data
        except json.JSONDecodeError as e:
            logger.warning(f"TokenCache: failed to parse cache file: {e} - starting fresh")
            return None
        except OSError as e:
            logger.warning(f"TokenCache: failed to read cache: {e} - starting fresh")
            return None

    def save(self, data: Dict[str, Any]) -> bool:
        """Write cache to disk. Returns False on failure."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            try:
                os.chmod(tmp_path, 0o600)
            except OSError:
                pass
            os.replace(tmp_path, self._path)
            logger.debug(f"TokenCache: saved {self._path}")
            return True
        except OSError as e:
            logger.error(f"TokenCache: failed to save cache: {e}")
            return False

    def delete(self) -> bool:
        """Remove the cache file. Returns False on failure."""
        try:
            self._path.unlink(missing_ok=True)
            logger.debug(f"TokenCache: removed {self._path}")
            return True
        except OSError as e:
            logger.error(f"TokenCache: failed to delete cache: {e}")
            return False
