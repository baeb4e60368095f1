import os
import textwrap
from pathlib import Path

import pytest

BASE_CONFIG = """
[server]
port = 0
bind_address = "127.0.0.1"
worker_count = 2
crashguard = true
watch_config = false

[logging]
level = "DEBUG"

[workers]
max_respawns = 2
respawn_backoff = 0.0
shutdown_timeout = 5.0

[groups."~"]
name = "Administrator"
rank = 100
permissions = ["lockdown"]
"""


def write_config(path: Path, text: str) -> None:
    """Write a config file and push its mtime forward so a reload notices it."""
    previous = path.stat().st_mtime_ns if path.exists() else 0
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    bumped = max(previous + 1_000_000_000, path.stat().st_mtime_ns)
    os.utime(path, ns=(bumped, bumped))


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "config"
    directory.mkdir()
    write_config(directory / "config.toml", BASE_CONFIG)
    return directory
