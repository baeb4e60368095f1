import asyncio

import pytest

from battlehost.config.config import ConfigStore
from battlehost.config.manager import MASK, mask_sensitive_config
from battlehost.config.models import WorkerSettings
from battlehost.core.context import KernelContext
from battlehost.subsystems import default_registry
from battlehost.subsystems.users import init_users
from battlehost.subsystems.validator import validate_team
from battlehost.subsystems.verifier import KEY_ENV, sign, verify_signature
from battlehost.workers.pool import WorkerPool
from tests.conftest import BASE_CONFIG, write_config

TIMEOUT = 15

GOOD_MEMBER = {"species": "Pikachu", "item": "Light Ball", "moves": ["Thunderbolt", "Surf"], "level": 50}


def test_group_cache_follows_reloads(config_dir):
    store = ConfigStore(config_dir)
    ctx = KernelContext(config=store, workers=WorkerPool())
    cache = init_users(ctx)

    assert cache.group_order == ["~", " "]
    assert cache.can("~", "lockdown")
    assert not cache.can(" ", "lockdown")

    write_config(config_dir / "config.toml", """
        [groups."@"]
        name = "Moderator"
        rank = 50
        permissions = ["ban"]
    """)
    assert store.check_for_changes()

    assert cache.version == 2
    assert cache.group_order == ["@", " "]
    assert cache.get("~") is None
    assert cache.outranks("@", "+")


def test_validator_accepts_a_legal_team(monkeypatch):
    monkeypatch.setenv("BATTLEHOST_MAX_TEAM_SIZE", "6")
    result = validate_team({"format": "gen9ou", "team": [GOOD_MEMBER]})
    assert result == {"valid": True, "problems": []}


def test_validator_reports_problems(monkeypatch):
    monkeypatch.setenv("BATTLEHOST_MAX_TEAM_SIZE", "1")
    monkeypatch.setenv("BATTLEHOST_MAX_MOVES", "2")
    bad = dict(GOOD_MEMBER, moves=["Surf", "surf", "Tackle"])
    result = validate_team({"format": "gen9ou", "team": [bad, GOOD_MEMBER]})

    assert result["valid"] is False
    assert "Your team has more than 1 members." in result["problems"]
    assert "Pikachu has more than 2 moves." in result["problems"]
    assert "Pikachu has surf more than once." in result["problems"]


def test_validator_rejects_malformed_submissions():
    result = validate_team({"format": "gen9ou", "team": [{"species": "Mew", "moves": [], "level": 900}]})
    assert result["valid"] is False
    assert any(p.startswith("team.0.moves") for p in result["problems"])
    assert any(p.startswith("team.0.level") for p in result["problems"])


def test_verifier_checks_signatures(monkeypatch):
    monkeypatch.setenv(KEY_ENV, "secret")
    signature = sign("user,token", "secret")
    assert verify_signature({"data": "user,token", "signature": signature}) is True
    assert verify_signature({"data": "user,token2", "signature": signature}) is False
    assert verify_signature({"data": "user,token"}) is False

    monkeypatch.setenv(KEY_ENV, "")
    assert verify_signature({"data": "user,token", "signature": signature}) is False


@pytest.mark.asyncio
async def test_default_registry_registers_worker_capabilities(config_dir):
    registry = default_registry()
    assert registry.names() == ["monitor", "users", "verifier", "validator"]

    pool = WorkerPool()
    ctx = KernelContext(config=ConfigStore(config_dir), workers=pool, registry=registry)
    await registry.initialize_all(ctx)

    assert sorted(pool.capabilities()) == ["validator", "verifier"]
    assert "rss_mb" in registry["monitor"].usage()


def test_mask_sensitive_config():
    masked = mask_sensitive_config({"verifier": {"key": "hunter2"}, "server": {"port": 1}})
    assert masked == {"verifier": {"key": MASK}, "server": {"port": 1}}


@pytest.mark.asyncio
async def test_worker_subsystems_follow_config_reloads(config_dir):
    store = ConfigStore(config_dir)
    pool = WorkerPool(WorkerSettings(respawn_backoff=0.0))
    registry = default_registry()
    ctx = KernelContext(config=store, workers=pool, registry=registry)
    await registry.initialize_all(ctx)
    token = {"data": "user,token", "signature": sign("user,token", "s3cret")}
    two_members = {"format": "gen9ou", "team": [GOOD_MEMBER, GOOD_MEMBER]}
    try:
        await pool.spawn_all()
        await pool.wait_ready("verifier", TIMEOUT)
        assert await asyncio.wait_for(pool.dispatch("verifier", token), TIMEOUT) is False
        assert (await asyncio.wait_for(pool.dispatch("validator", two_members), TIMEOUT))["valid"]
        pids = {cap: pool.slot(cap).process.pid for cap in ("verifier", "validator")}

        write_config(config_dir / "config.toml", BASE_CONFIG + """
[verifier]
key = "s3cret"

[validator]
max_team_size = 1
""")
        assert store.check_for_changes()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + TIMEOUT
        while any(pool.slot(cap).process.pid == pid for cap, pid in pids.items()):
            assert loop.time() < deadline, "workers were not restarted"
            await asyncio.sleep(0.02)

        assert await asyncio.wait_for(pool.dispatch("verifier", token), TIMEOUT) is True
        result = await asyncio.wait_for(pool.dispatch("validator", two_members), TIMEOUT)
        assert result == {"valid": False, "problems": ["Your team has more than 1 members."]}
    finally:
        await pool.shutdown()
