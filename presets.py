from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from errors import ConfigurationError


@dataclass(frozen=True)
class Preset:
    name: str
    description: str
    options: dict[str, Any]
    think_time: str = "1"
    check_status: Optional[int] = None


PRESETS: dict[str, Preset] = {
    "smoke": Preset(
        name="smoke",
        description="1 user for 10 seconds, checking the status is 200",
        options={"vus": 1, "duration": "10s"},
        check_status=200,
    ),
    "load": Preset(
        name="load",
        description="50 concurrent users for 30 seconds",
        options={"vus": 50, "duration": "30s"},
    ),
    "soak": Preset(
        name="soak",
        description="20 concurrent users continuously for 10 minutes",
        options={"vus": 20, "duration": "10m"},
    ),
    "stress": Preset(
        name="stress",
        description="warm up to 20, ramp to 50, peak at 100, ramp down to 0",
        options={
            "stages": [
                {"duration": "30s", "target": 20},
                {"duration": "1m", "target": 50},
                {"duration": "30s", "target": 100},
                {"duration": "1m", "target": 0},
            ]
        },
    ),
}


def get_preset(name: str) -> Preset:
    try:
        return PRESETS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown preset '{name}'. Available: {', '.join(sorted(PRESETS))}"
        ) from None
