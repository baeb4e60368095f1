# battlehost/subsystems/validator.py
"""
Team validation, run inside the `validator` worker process.

Submissions come straight from clients, so they are checked away from the
main process where a pathological payload cannot stall anything else.
"""

from __future__ import annotations

import logging
import os
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

_LOG = logging.getLogger("battlehost.subsystems.validator")

CAPABILITY = "validator"
HANDLER = "battlehost.subsystems.validator:validate_team"

Level = Annotated[int, Field(ge=1, le=100)]
Name = Annotated[str, Field(min_length=1, max_length=40)]


class TeamMember(BaseModel):
    model_config = ConfigDict(extra="forbid")
    species: Name
    item: Optional[Name] = None
    ability: Optional[Name] = None
    moves: List[Name] = Field(min_length=1)
    level: Level = 100


class TeamSubmission(BaseModel):
    model_config = ConfigDict(extra="forbid")
    format: Name
    team: List[TeamMember] = Field(min_length=1)


def validate_team(request: Any) -> Dict[str, Any]:
    """Worker handler: return {"valid": bool, "problems": [str, ...]}."""
    max_team_size = int(os.environ.get("BATTLEHOST_MAX_TEAM_SIZE", "6"))
    max_moves = int(os.environ.get("BATTLEHOST_MAX_MOVES", "4"))

    try:
        submission = TeamSubmission.model_validate(request)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        return {"valid": False, "problems": problems}

    problems = []
    if len(submission.team) > max_team_size:
        problems.append(f"Your team has more than {max_team_size} members.")
    for member in submission.team:
        if len(member.moves) > max_moves:
            problems.append(f"{member.species} has more than {max_moves} moves.")
        seen = set()
        for move in member.moves:
            key = move.lower().replace(" ", "")
            if key in seen:
                problems.append(f"{member.species} has {move} more than once.")
            seen.add(key)
    return {"valid": not problems, "problems": problems}


class TeamValidator:
    """Main-process client for the validator worker."""

    def __init__(self, workers):
        self._workers = workers

    async def validate(self, format_id: str, team: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._workers.dispatch(CAPABILITY, {"format": format_id, "team": team})


def worker_env(snapshot) -> Dict[str, str]:
    section = snapshot.section("validator")
    return {
        "BATTLEHOST_MAX_TEAM_SIZE": str(section.get("max_team_size", 6)),
        "BATTLEHOST_MAX_MOVES": str(section.get("max_moves", 4)),
    }


def init_validator(ctx) -> TeamValidator:
    ctx.workers.register(CAPABILITY, HANDLER, env=worker_env(ctx.snapshot))
    # the limits live in the worker's environment; a reload restarts it
    ctx.config.subscribe(lambda snapshot: ctx.workers.reconfigure_soon(CAPABILITY, worker_env(snapshot)))
    return TeamValidator(ctx.workers)
