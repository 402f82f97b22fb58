"""
Runtime settings for Bookshelf.
Everything is read from environment variables so the launcher, the tests and
a plain `uvicorn server:app` all configure the app the same way.
"""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class Settings:
    """Server configuration."""
    data_file: str = os.path.join("data", "library.json")
    upload_dir: str = "uploads"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    save_retries: int = 2  # client-side retries for progress/highlight posts
    save_backoff_ms: int = 500
    open_browser: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from BOOKSHELF_* variables (and PORT)."""
        defaults = cls()
        return cls(
            data_file=os.environ.get("BOOKSHELF_DATA_FILE", defaults.data_file),
            upload_dir=os.environ.get("BOOKSHELF_UPLOAD_DIR", defaults.upload_dir),
            host=os.environ.get("BOOKSHELF_HOST", defaults.host),
            port=int(os.environ.get("PORT", defaults.port)),
            log_level=os.environ.get("BOOKSHELF_LOG_LEVEL", defaults.log_level).upper(),
            save_retries=max(0, int(os.environ.get("BOOKSHELF_SAVE_RETRIES", defaults.save_retries))),
            save_backoff_ms=max(0, int(os.environ.get("BOOKSHELF_SAVE_BACKOFF_MS", defaults.save_backoff_ms))),
            open_browser=_env_bool("BOOKSHELF_OPEN_BROWSER", defaults.open_browser),
        )

    def ensure_dirs(self):
        """Create the data and upload directories if they are missing."""
        data_dir = os.path.dirname(os.path.abspath(self.data_file))
        for path in (data_dir, self.upload_dir):
            if not os.path.exists(path):
                os.makedirs(path, exist_ok=True)
