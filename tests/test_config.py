import asyncio

import pytest

from battlehost.config.config import TEMPLATE_PATH, ConfigStore
from battlehost.core.exceptions import ConfigLoadError
from tests.conftest import write_config


def test_first_run_copies_template(tmp_path):
    config_dir = tmp_path / "config"
    store = ConfigStore(config_dir)

    snapshot = store.load()

    assert (config_dir / "config.toml").read_bytes() == TEMPLATE_PATH.read_bytes()
    assert snapshot.settings.server.port == 8000
    assert snapshot.section("validator")["max_team_size"] == 6
    assert snapshot["groups"]["~"]["name"] == "Administrator"


def test_sibling_template_preferred_and_existing_file_kept(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config-example.toml").write_text("[server]\nport = 1234\n")

    store = ConfigStore(config_dir)
    assert store.load().settings.server.port == 1234

    (config_dir / "config-example.toml").write_text("[server]\nport = 4321\n")
    other = ConfigStore(config_dir)
    assert other.load().settings.server.port == 1234


def test_unparseable_first_load_raises(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.toml").write_text("[server\nport = ")
    with pytest.raises(ConfigLoadError):
        ConfigStore(config_dir).load()


def test_invalid_values_raise(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.toml").write_text("[server]\nport = 70000\n")
    with pytest.raises(ConfigLoadError):
        ConfigStore(config_dir).load()


def test_missing_template_raises(tmp_path):
    store = ConfigStore(tmp_path / "config", template_path=tmp_path / "nope.toml")
    with pytest.raises(ConfigLoadError):
        store.load()


def test_snapshot_is_read_only(config_dir):
    snapshot = ConfigStore(config_dir).load()
    with pytest.raises(TypeError):
        snapshot.options["server"]["port"] = 1
    with pytest.raises(AttributeError):
        snapshot.loaded_at = 0


def test_reload_swaps_snapshot_once(config_dir):
    store = ConfigStore(config_dir)
    old = store.load()
    seen = []
    store.subscribe(seen.append)

    write_config(config_dir / "config.toml", "[server]\nport = 9001\nworker_count = 3\n")

    assert store.check_for_changes() is True
    assert store.check_for_changes() is False
    new = store.load()
    assert new is not old
    assert seen == [new]
    assert store.reload_count == 1
    assert (new.settings.server.port, new.settings.server.worker_count) == (9001, 3)
    # the old snapshot a reader may still hold is untouched
    assert old.settings.server.port == 0
    assert old.settings.server.worker_count == 2


def test_broken_reload_keeps_previous_snapshot(config_dir):
    store = ConfigStore(config_dir)
    old = store.load()
    listener_calls = []
    store.subscribe(listener_calls.append)

    write_config(config_dir / "config.toml", "[server\nthis is not toml")

    assert store.check_for_changes() is False
    assert store.load() is old
    assert listener_calls == []

    write_config(config_dir / "config.toml", "[server]\nport = 7000\n")
    assert store.check_for_changes() is True
    assert store.load().settings.server.port == 7000


def test_unchanged_mtime_is_ignored(config_dir):
    store = ConfigStore(config_dir)
    old = store.load()
    path = config_dir / "config.toml"
    mtime = path.stat().st_mtime_ns
    path.write_text("[server]\nport = 5\n")
    import os
    os.utime(path, ns=(mtime, mtime))

    assert store.check_for_changes() is False
    assert store.load() is old


def test_failing_listener_does_not_block_others(config_dir):
    store = ConfigStore(config_dir)
    store.load()
    calls = []

    def broken(snapshot):
        raise RuntimeError("boom")

    store.subscribe(broken)
    store.subscribe(calls.append)
    write_config(config_dir / "config.toml", "[server]\nport = 1\n")

    assert store.check_for_changes() is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_hot_reload_watcher(config_dir):
    write_config(config_dir / "config.toml",
                 "[server]\nwatch_config = true\nwatch_interval = 0.05\n")
    store = ConfigStore(config_dir)
    store.load()
    assert store.enable_hot_reload() is True

    write_config(config_dir / "config.toml",
                 "[server]\nwatch_config = true\nwatch_interval = 0.05\nport = 4242\n")
    for _ in range(100):
        if store.snapshot.settings.server.port == 4242:
            break
        await asyncio.sleep(0.05)

    await store.disable_hot_reload()
    assert store.snapshot.settings.server.port == 4242


@pytest.mark.asyncio
async def test_hot_reload_disabled_by_config(config_dir):
    store = ConfigStore(config_dir)
    store.load()
    assert store.enable_hot_reload() is False
