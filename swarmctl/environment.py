"""Environment readings for the power/network policy."""

from __future__ import annotations

from typing import Callable

import psutil

from swarmctl.core.policy import UNKNOWN_BATTERY_LEVEL, EnvironmentReadings
from swarmctl.models import PolicyConfig
from swarmctl.utils.logging_config import get_logger

logger = get_logger(__name__)


class SystemEnvironmentProbe:
    """Reads battery state from the OS and connection flags from configuration.

    Hosts without a battery report ``UNKNOWN_BATTERY_LEVEL`` and charging,
    so battery rules never pause a desktop. Desktop platforms do not expose
    metered or roaming state; the host application reports them through
    :class:`PolicyConfig`.
    """

    def __init__(self, policy: Callable[[], PolicyConfig]) -> None:
        self._policy = policy

    def read(self) -> EnvironmentReadings:
        policy = self._policy()
        level, charging = UNKNOWN_BATTERY_LEVEL, True
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError) as e:
            logger.debug("Battery state unavailable: %s", e)
            battery = None
        if battery is not None:
            level = int(round(battery.percent))
            charging = battery.power_plugged is not False

        return EnvironmentReadings(
            battery_level=level,
            is_charging=charging,
            is_metered=policy.is_metered,
            is_roaming=policy.is_roaming,
        )
