"""Runtime provider interfaces for vpsctl."""
from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ..config import RuntimeConfig
from .base import (
    InstanceNotFoundError,
    RuntimeProvider,
    RuntimeProviderError,
    RuntimeUnavailableError,
)
from .lxc import LxcProvider, parse_instance_state
from .simulated import SimulatedProvider

LOGGER = logging.getLogger(__name__)


def build_runtime_provider(
    config: RuntimeConfig,
    *,
    mode: str | None = None,
    simulate_state: Path | None = None,
) -> RuntimeProvider:
    """Return the runtime adapter selected by *config* (or the *mode* override).

    ``auto`` picks the live adapter when the ``lxc`` binary resolves and falls
    back to the simulator otherwise. *simulate_state* persists the simulated
    instance table between processes.
    """
    selected = (mode or config.mode).strip().lower()
    if selected == "auto":
        binary = config.lxc_bin
        found = Path(binary).exists() or shutil.which(binary) is not None
        selected = "live" if found else "simulate"
        LOGGER.debug("Runtime mode auto-selected: %s", selected)
    if selected == "live":
        return LxcProvider(
            lxc_bin=config.lxc_bin,
            image_remote=config.image_remote,
            command_timeout=config.command_timeout,
        )
    if selected == "simulate":
        return SimulatedProvider(
            seed=config.simulate.seed,
            delay=config.simulate.delay,
            state_path=simulate_state,
        )
    raise ValueError(f"Unsupported runtime mode '{selected}'.")


__all__ = [
    "InstanceNotFoundError",
    "LxcProvider",
    "RuntimeProvider",
    "RuntimeProviderError",
    "RuntimeUnavailableError",
    "SimulatedProvider",
    "build_runtime_provider",
    "parse_instance_state",
]
