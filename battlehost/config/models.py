#config/models.py
"""Typed views of the configuration sections the kernel itself reads."""
from __future__ import annotations

from typing import Annotated, List

from pydantic import BaseModel, ConfigDict, Field

# --- CUSTOM PYDANTIC TYPES ---
Port = Annotated[int, Field(ge=0, le=65535)]
PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0.0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]
# ------------------------------------------------------------------


class ServerSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    port: Port = 8000
    bind_address: str = "0.0.0.0"
    worker_count: PositiveInt = 1
    crashguard: bool = True
    watch_config: bool = False
    watch_interval: PositiveFloat = 2.0


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    level: str = "INFO"
    directory: str = "logs"


class CrashSettings(BaseModel):
    """Fault classification policy."""
    model_config = ConfigDict(extra="allow")
    lockdown_faults: List[str] = Field(
        default_factory=lambda: ["MemoryError", "SystemError", "RecursionError"]
    )
    max_crashes: PositiveInt = 5
    crash_window: PositiveFloat = 1800.0
    log_file: str = "logs/errors.txt"


class WorkerSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_respawns: NonNegativeInt = 3
    respawn_backoff: NonNegativeFloat = 0.5
    shutdown_timeout: PositiveFloat = 5.0


class KernelSettings(BaseModel):
    """Validated kernel sections; other sections pass through untouched."""
    model_config = ConfigDict(extra="allow", frozen=True)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    crash: CrashSettings = Field(default_factory=CrashSettings)
    workers: WorkerSettings = Field(default_factory=WorkerSettings)
