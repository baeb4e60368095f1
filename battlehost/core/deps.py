# battlehost/core/deps.py
"""
Preflight dependency check.

Runs before anything imports a third-party library, so this module only
uses the standard library.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import subprocess
import sys
from typing import Dict, List, Mapping, Optional

from battlehost.core.exceptions import DependencyMissing

_logger = logging.getLogger("battlehost.core.deps")

# import name -> distribution name on the package index
REQUIRED_MODULES: Dict[str, str] = {
    "tomlkit": "tomlkit",
    "pydantic": "pydantic",
    "psutil": "psutil",
    "rich": "rich",
}


def find_missing(required: Optional[Mapping[str, str]] = None) -> List[str]:
    """Return the import names from `required` that cannot be resolved."""
    required = REQUIRED_MODULES if required is None else required
    missing = []
    for module in required:
        try:
            if importlib.util.find_spec(module) is None:
                missing.append(module)
        except (ImportError, ValueError):
            missing.append(module)
    return missing


def install(distributions: List[str]) -> int:
    """Install distributions with pip, blocking until it finishes."""
    command = [sys.executable, "-m", "pip", "install", *distributions]
    _logger.info("Installing dependencies: `%s`...", " ".join(command))
    result = subprocess.run(command, check=False)
    if result.returncode != 0:
        _logger.error("Dependency installation exited with code %d", result.returncode)
    return result.returncode


def ensure_dependencies(top_level: bool,
                        required: Optional[Mapping[str, str]] = None) -> None:
    """
    Make sure every required module is importable.

    When running as the top-level program, missing modules are installed and
    checked again. As a library we never install anything; we fail instead.

    Raises:
        DependencyMissing: if anything is still missing.
    """
    required = REQUIRED_MODULES if required is None else required
    missing = find_missing(required)
    if not missing:
        _logger.debug("All dependencies present")
        return

    if not top_level:
        raise DependencyMissing(missing)

    install([required[m] for m in missing])
    importlib.invalidate_caches()

    still_missing = find_missing({m: required[m] for m in missing})
    if still_missing:
        raise DependencyMissing(still_missing)
    _logger.info("Dependencies installed: %s", ", ".join(missing))
