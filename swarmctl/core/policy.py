"""Power and network policy evaluation.

:func:`should_pause` is a pure function of the configured policy and a
snapshot of environment readings. The session controller calls it at fixed
trigger points; nothing here polls.
"""

from __future__ import annotations

from dataclasses import dataclass

from swarmctl.models import PolicyConfig

DEFAULT_LOW_BATTERY_LEVEL = 15
UNKNOWN_BATTERY_LEVEL = 50


@dataclass(frozen=True)
class EnvironmentReadings:
    """Live environment snapshot."""

    battery_level: int = UNKNOWN_BATTERY_LEVEL
    is_charging: bool = True
    is_metered: bool = False
    is_roaming: bool = False


def is_battery_low(level: int, low_level: int = DEFAULT_LOW_BATTERY_LEVEL) -> bool:
    return level <= low_level


def is_battery_below_threshold(level: int, threshold: int) -> bool:
    return level <= threshold


def should_pause(
    policy: PolicyConfig,
    readings: EnvironmentReadings,
    default_low_level: int = DEFAULT_LOW_BATTERY_LEVEL,
) -> bool:
    """Return True when every transfer should be paused.

    Rules are OR-accumulated in order: roaming, metered, charging, battery.
    A later rule can only turn the result on, never off. The custom battery
    threshold takes precedence over the platform low level.
    """
    stop = False
    stop |= policy.respect_roaming and readings.is_roaming
    stop |= policy.unmetered_only and readings.is_metered
    stop |= policy.only_charging and not readings.is_charging

    if policy.custom_battery_control:
        stop |= is_battery_below_threshold(
            readings.battery_level, policy.custom_battery_threshold
        )
    elif policy.battery_control:
        stop |= is_battery_low(readings.battery_level, default_low_level)

    return stop
