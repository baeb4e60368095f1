# battlehost/subsystems/users.py
"""
Permission groups, derived from the `[groups]` configuration table.

The cache is rebuilt whenever the configuration is reloaded, so rank and
permission lookups always match the snapshot in effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from battlehost.config.config import ConfigurationSnapshot

_LOG = logging.getLogger("battlehost.subsystems.users")

DEFAULT_GROUP = " "


@dataclass(frozen=True)
class Group:
    symbol: str
    name: str
    rank: int
    permissions: Tuple[str, ...] = ()


class GroupCache:
    def __init__(self):
        self.groups: Dict[str, Group] = {}
        self.group_order: List[str] = []
        self.version = 0

    def cache_group_data(self, snapshot: ConfigurationSnapshot) -> None:
        """Recompute the groups from `snapshot` and swap them in."""
        groups: Dict[str, Group] = {}
        for symbol, data in snapshot.section("groups").items():
            try:
                groups[symbol] = Group(
                    symbol=symbol,
                    name=str(data.get("name", symbol)),
                    rank=int(data.get("rank", 0)),
                    permissions=tuple(data.get("permissions", ())),
                )
            except (AttributeError, TypeError, ValueError) as e:
                _LOG.warning(f"Ignoring malformed group {symbol!r}: {e}")
        if DEFAULT_GROUP not in groups:
            groups[DEFAULT_GROUP] = Group(symbol=DEFAULT_GROUP, name="Regular", rank=0)

        order = sorted(groups, key=lambda s: groups[s].rank, reverse=True)
        self.groups, self.group_order = groups, order
        self.version += 1
        _LOG.info("Cached %d permission groups (%s)", len(groups), "".join(order).strip())

    def get(self, symbol: str) -> Optional[Group]:
        return self.groups.get(symbol)

    def can(self, symbol: str, permission: str) -> bool:
        group = self.groups.get(symbol) or self.groups.get(DEFAULT_GROUP)
        return group is not None and permission in group.permissions

    def outranks(self, a: str, b: str) -> bool:
        ga, gb = self.groups.get(a), self.groups.get(b)
        rank_a = ga.rank if ga else 0
        rank_b = gb.rank if gb else 0
        return rank_a > rank_b


def init_users(ctx) -> GroupCache:
    cache = GroupCache()
    cache.cache_group_data(ctx.snapshot)
    ctx.config.subscribe(cache.cache_group_data)
    return cache
