"""Settings persistence for roomsync.

This module provides persistent storage for CLI settings. Settings are
automatically loaded from disk and saved with debouncing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

# Debounce delay for saving settings
SAVE_DEBOUNCE_SECONDS = 60.0

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@dataclass
class SyncSettings:
    """Persisted settings for the roomsync CLI.

    Changes are debounced and saved after 60 seconds of inactivity,
    or immediately on flush().
    """

    redis_url: str = DEFAULT_REDIS_URL
    last_room: str | None = None
    log_level: str | None = None
    listen_port: int | None = None

    # Internal state (not serialized)
    _settings_file: Path | None = field(default=None, repr=False, compare=False)
    _debounce_save_handle: asyncio.TimerHandle | None = field(
        default=None, repr=False, compare=False
    )

    # Fields to exclude from serialization
    _internal_fields: ClassVar[set[str]] = {"_settings_file", "_debounce_save_handle"}

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a dictionary for serialization."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._internal_fields
        }

    def update(
        self,
        *,
        redis_url: str | None = None,
        last_room: str | None = None,
        log_level: str | None = None,
        listen_port: int | None = None,
    ) -> None:
        """Update settings fields. Only changed fields trigger a save."""
        changed = False
        updates = {
            "redis_url": redis_url,
            "last_room": last_room,
            "log_level": log_level,
            "listen_port": listen_port,
        }
        for field_name, value in updates.items():
            if value is not None and getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed = True

        if changed:
            self._schedule_save()

    async def load(self) -> None:
        """Load settings from disk."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._load)

    async def flush(self) -> None:
        """Immediately save any pending changes to disk."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()
            self._debounce_save_handle = None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._save)

    def _schedule_save(self) -> None:
        """Schedule a debounced save operation."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()

        loop = asyncio.get_running_loop()
        self._debounce_save_handle = loop.call_later(
            SAVE_DEBOUNCE_SECONDS, self._debounced_save, loop
        )

    def _debounced_save(self, loop: asyncio.AbstractEventLoop) -> None:
        """Called by the timer to save settings in executor."""
        self._debounce_save_handle = None
        loop.run_in_executor(None, self._save)

    def _load(self) -> None:
        """Load settings from the settings file (blocking I/O)."""
        if self._settings_file is None or not self._settings_file.exists():
            logger.debug("Settings file does not exist: %s", self._settings_file)
            return

        try:
            data = json.loads(self._settings_file.read_text())
            self.redis_url = data.get("redis_url") or DEFAULT_REDIS_URL
            self.last_room = data.get("last_room")
            self.log_level = data.get("log_level")
            self.listen_port = data.get("listen_port")
            logger.info("Loaded settings from %s", self._settings_file)
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.warning("Failed to load settings from %s: %s", self._settings_file, e)

    def _save(self) -> None:
        """Save settings to the settings file (blocking I/O)."""
        if self._settings_file is None:
            return
        try:
            self._settings_file.parent.mkdir(parents=True, exist_ok=True)
            self._settings_file.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
            logger.debug("Saved settings to %s", self._settings_file)
        except OSError as e:
            logger.warning("Failed to save settings to %s: %s", self._settings_file, e)


async def get_settings(config_dir: str | None = None) -> SyncSettings:
    """Create and load CLI settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/roomsync.

    Returns:
        SyncSettings instance with settings loaded from disk.
    """
    config_path = Path(config_dir) if config_dir else Path.home() / ".config" / "roomsync"
    settings = SyncSettings(_settings_file=config_path / "settings.json")
    await settings.load()
    return settings
