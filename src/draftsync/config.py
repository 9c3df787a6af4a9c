# /src/draftsync/config.py
# Environment-driven settings for the synchronization core

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class Settings:
    """Tunable timings and endpoint configuration.

    All durations are in milliseconds, matching the values the browser
    client used.
    """
    autosave_debounce_ms: int = 1000
    autosave_min_interval_ms: int = 30000
    page_size: int = 50
    history_timeout_ms: int = 800
    recent_window_ms: int = 5000
    flush_timeout_ms: int = 2000
    session_id: str = "default"
    ajax_url: Optional[str] = None
    sesskey: Optional[str] = None
    cmid: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from DRAFTSYNC_* environment variables."""
        return cls(
            autosave_debounce_ms=_env_int("DRAFTSYNC_AUTOSAVE_DEBOUNCE_MS", 1000),
            autosave_min_interval_ms=_env_int("DRAFTSYNC_AUTOSAVE_MIN_INTERVAL_MS", 30000),
            page_size=_env_int("DRAFTSYNC_PAGE_SIZE", 50),
            history_timeout_ms=_env_int("DRAFTSYNC_HISTORY_TIMEOUT_MS", 800),
            recent_window_ms=_env_int("DRAFTSYNC_RECENT_WINDOW_MS", 5000),
            flush_timeout_ms=_env_int("DRAFTSYNC_FLUSH_TIMEOUT_MS", 2000),
            session_id=os.getenv("DRAFTSYNC_SESSION_ID", "default") or "default",
            ajax_url=os.getenv("DRAFTSYNC_AJAX_URL"),
            sesskey=os.getenv("DRAFTSYNC_SESSKEY"),
            cmid=os.getenv("DRAFTSYNC_CMID"),
        )
