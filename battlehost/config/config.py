#config/config.py
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Optional, Union

import tomlkit
from pydantic import ValidationError
from tomlkit.exceptions import TOMLKitError

from battlehost.config.models import KernelSettings
from battlehost.core.exceptions import ConfigLoadError

_log = logging.getLogger("battlehost.config")

# bundled template, copied verbatim on first run
TEMPLATE_PATH = Path(__file__).resolve().parent / "config-example.toml"
CONFIG_FILENAME = "config.toml"
TEMPLATE_FILENAME = "config-example.toml"


def default_config_dir() -> Path:
    return Path(os.environ.get("BATTLEHOST_CONFIG_DIR", "config"))


def _freeze(value: Any) -> Any:
    """Recursively turn dicts into read-only mappings and lists into tuples."""
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """One fully parsed and validated configuration, never edited after creation."""
    options: Mapping[str, Any]
    settings: KernelSettings
    loaded_at: float
    mtime_ns: int
    source: Path

    def __getitem__(self, key: str) -> Any:
        return self.options[key]

    def __contains__(self, key: object) -> bool:
        return key in self.options

    def get(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def section(self, name: str) -> Mapping[str, Any]:
        """Return a top-level table, or an empty mapping if it is absent."""
        value = self.options.get(name)
        if isinstance(value, Mapping):
            return value
        return MappingProxyType({})


ReloadListener = Callable[[ConfigurationSnapshot], Any]


def parse_snapshot(text: str, source: Path, mtime_ns: int) -> ConfigurationSnapshot:
    """Parse TOML text into a snapshot, raising ConfigLoadError on any problem."""
    try:
        data = tomlkit.parse(text).unwrap()
    except TOMLKitError as e:
        raise ConfigLoadError(f"Failed to parse TOML {source}: {e}") from e
    try:
        settings = KernelSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigLoadError(f"Invalid configuration in {source}: {e}") from e
    return ConfigurationSnapshot(
        options=_freeze(data),
        settings=settings,
        loaded_at=time.time(),
        mtime_ns=mtime_ns,
        source=source,
    )


class ConfigStore:
    """
    Owns the current ConfigurationSnapshot.

    The current snapshot is replaced by a single attribute assignment, so a
    reader holding `store.snapshot` sees either the old or the new value.
    """

    def __init__(self, config_dir: Union[Path, str, None] = None,
                 template_path: Union[Path, str, None] = None):
        self.config_dir = Path(config_dir) if config_dir is not None else default_config_dir()
        self.path = self.config_dir / CONFIG_FILENAME
        if template_path is not None:
            self.template_path = Path(template_path)
        elif (self.config_dir / TEMPLATE_FILENAME).exists():
            self.template_path = self.config_dir / TEMPLATE_FILENAME
        else:
            self.template_path = TEMPLATE_PATH
        self._snapshot: Optional[ConfigurationSnapshot] = None
        self._observed_mtime_ns: int = 0
        self._listeners: List[ReloadListener] = []
        self._watch_task: Optional[asyncio.Task] = None
        self.reload_count = 0

    @property
    def snapshot(self) -> ConfigurationSnapshot:
        if self._snapshot is None:
            return self.load()
        return self._snapshot

    def load(self) -> ConfigurationSnapshot:
        """Return the current snapshot, reading it from disk on first use."""
        if self._snapshot is not None:
            return self._snapshot
        self._materialize()
        snapshot = self._read()
        self._observed_mtime_ns = snapshot.mtime_ns
        self._snapshot = snapshot
        _log.info("Configuration loaded from %s", self.path)
        return snapshot

    def _materialize(self) -> None:
        """Copy the template into place if no configuration file exists yet."""
        if self.path.exists():
            return
        _log.warning(f"{self.path} doesn't exist - creating one with default settings...")
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            data = self.template_path.read_bytes()
            with open(self.path, "xb") as fp:
                fp.write(data)
        except FileExistsError:
            # created by someone else in the meantime; theirs wins
            _log.debug("Configuration file appeared while copying the template")
        except OSError as e:
            raise ConfigLoadError(f"Could not create {self.path} from {self.template_path}: {e}") from e

    def _read(self) -> ConfigurationSnapshot:
        try:
            mtime_ns = self.path.stat().st_mtime_ns
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigLoadError(f"Could not read {self.path}: {e}") from e
        return parse_snapshot(text, self.path, mtime_ns)

    # ------------------------------------------------------------------
    # Hot reload
    # ------------------------------------------------------------------
    def subscribe(self, listener: ReloadListener) -> None:
        """Call `listener(snapshot)` after every successful reload."""
        self._listeners.append(listener)

    def check_for_changes(self) -> bool:
        """Poll the file once. Returns True if a new snapshot was swapped in."""
        try:
            mtime_ns = self.path.stat().st_mtime_ns
        except FileNotFoundError:
            _log.warning("Configuration file %s disappeared; keeping current settings", self.path)
            return False
        if mtime_ns <= self._observed_mtime_ns:
            return False
        self._observed_mtime_ns = mtime_ns

        try:
            fresh = self._read()
        except ConfigLoadError:
            _log.exception(f"Error reloading {self.path}; previous configuration stays in effect")
            return False

        self._snapshot = fresh
        self.reload_count += 1
        _log.info(f"Reloaded {self.path}")
        self._notify(fresh)
        return True

    def _notify(self, snapshot: ConfigurationSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                _log.exception("Config reload listener %r failed", listener)

    def enable_hot_reload(self) -> bool:
        """Start watching the file if the current snapshot asks for it."""
        snapshot = self.snapshot
        if not snapshot.settings.server.watch_config:
            _log.debug("Config watching disabled")
            return False
        if self._watch_task and not self._watch_task.done():
            return True
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch_loop(), name="battlehost-config-watch"
        )
        _log.info("Watching %s for changes", self.path)
        return True

    async def disable_hot_reload(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _watch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.snapshot.settings.server.watch_interval)
            try:
                self.check_for_changes()
            except OSError as e:
                _log.warning("Config watcher error: %s", e)
