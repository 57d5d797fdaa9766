from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from errors import ConfigurationError

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}
_UNIT_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_ISO_RE = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def parse_duration(value: Union[str, int, float]) -> float:
    """Return a duration in seconds.

    Accepts plain numbers (seconds), unit strings such as ``500ms``, ``30s``,
    ``1m`` or ``1h30m``, and ISO-8601 durations such as ``PT1M30S``.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        if not text:
            raise ConfigurationError("Duration cannot be empty")
        seconds = _parse_duration_text(text)
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigurationError(f"Duration must be a finite value >= 0, got {value!r}")
    return seconds


def _parse_duration_text(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        pass

    upper = text.upper()
    if upper.startswith("P"):
        match = _ISO_RE.match(upper)
        # A designator needs at least one component, and T needs one after it.
        if not match or upper == "P" or upper.endswith("T"):
            raise ConfigurationError(f"Invalid ISO-8601 duration: {text}")
        parts = match.groupdict()
        return (
            float(parts["days"] or 0) * 86400.0
            + float(parts["hours"] or 0) * 3600.0
            + float(parts["minutes"] or 0) * 60.0
            + float(parts["seconds"] or 0)
        )

    position = 0
    total = 0.0
    for match in _UNIT_PART_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ConfigurationError(
            f"Invalid duration: {text}. Expected e.g. 30s, 1m, 1h30m, 500ms or PT30S."
        )
    return total


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: int


@dataclass(frozen=True)
class TrafficProfile:
    """Either a flat ``vus`` + ``duration_s`` profile or ordered ``stages``."""

    vus: Optional[int] = None
    duration_s: Optional[float] = None
    stages: tuple[Stage, ...] = ()

    @property
    def is_staged(self) -> bool:
        return bool(self.stages)

    @property
    def total_duration_s(self) -> float:
        if self.is_staged:
            return float(sum(stage.duration_s for stage in self.stages))
        return float(self.duration_s or 0.0)

    @property
    def max_vus(self) -> int:
        if self.is_staged:
            return max(stage.target for stage in self.stages)
        return int(self.vus or 0)

    def validate(self) -> None:
        flat = self.vus is not None or self.duration_s is not None
        if self.stages and flat:
            raise ConfigurationError(
                "Traffic profile cannot declare both vus/duration and stages"
            )
        if not self.stages and not flat:
            raise ConfigurationError(
                "Traffic profile needs either vus and duration, or at least one stage"
            )
        if self.is_staged:
            for index, stage in enumerate(self.stages):
                _check_duration(stage.duration_s, f"stages[{index}].duration")
                if isinstance(stage.target, bool) or not isinstance(stage.target, int):
                    raise ConfigurationError(
                        f"stages[{index}].target must be an integer, got {stage.target!r}"
                    )
                if stage.target < 0:
                    raise ConfigurationError(
                        f"stages[{index}].target must be >= 0, got {stage.target}"
                    )
            return

        if self.vus is None or self.duration_s is None:
            raise ConfigurationError("Flat traffic profile needs both vus and duration")
        if isinstance(self.vus, bool) or not isinstance(self.vus, int) or self.vus < 0:
            raise ConfigurationError(f"vus must be an integer >= 0, got {self.vus!r}")
        _check_duration(self.duration_s, "duration")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "TrafficProfile":
        """Build a profile from a mapping like ``{"vus": 50, "duration": "30s"}``."""
        raw_stages = options.get("stages")
        has_flat = "vus" in options or "duration" in options
        if raw_stages is not None and has_flat:
            raise ConfigurationError(
                "Options cannot declare both vus/duration and stages"
            )
        if raw_stages is not None:
            if not isinstance(raw_stages, (list, tuple)) or not raw_stages:
                raise ConfigurationError("stages must be a non-empty list")
            stages: list[Stage] = []
            for index, raw in enumerate(raw_stages):
                if not isinstance(raw, Mapping):
                    raise ConfigurationError(f"stages[{index}] must be a mapping")
                if "duration" not in raw or "target" not in raw:
                    raise ConfigurationError(
                        f"stages[{index}] needs both duration and target"
                    )
                stages.append(
                    Stage(
                        duration_s=parse_duration(raw["duration"]),
                        target=_as_int(raw["target"], f"stages[{index}].target"),
                    )
                )
            profile = cls(stages=tuple(stages))
        elif has_flat:
            if "vus" not in options or "duration" not in options:
                raise ConfigurationError("Options need both vus and duration")
            profile = cls(
                vus=_as_int(options["vus"], "vus"),
                duration_s=parse_duration(options["duration"]),
            )
        else:
            raise ConfigurationError(
                "Options need either vus and duration, or stages"
            )
        profile.validate()
        return profile


def _check_duration(value: float, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{label} must be a number of seconds, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ConfigurationError(f"{label} must be a finite value >= 0, got {value!r}")


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{label} must be an integer, got {value!r}") from exc
    if parsed != value and not isinstance(value, str):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}")
    if parsed < 0:
        raise ConfigurationError(f"{label} must be >= 0, got {parsed}")
    return parsed


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def target_vus(profile: TrafficProfile, elapsed_s: float) -> int:
    """Number of VUs that should be active ``elapsed_s`` seconds into the test.

    Returns 0 once the profile is exhausted.
    """
    if not math.isfinite(elapsed_s) or elapsed_s < 0:
        raise ValueError(f"elapsed must be a finite value >= 0, got {elapsed_s!r}")

    if not profile.is_staged:
        if elapsed_s < float(profile.duration_s or 0.0):
            return int(profile.vus or 0)
        return 0

    previous_target = 0
    stage_start = 0.0
    for stage in profile.stages:
        stage_end = stage_start + stage.duration_s
        if stage.duration_s > 0 and elapsed_s < stage_end:
            progress = (elapsed_s - stage_start) / stage.duration_s
            value = previous_target + (stage.target - previous_target) * progress
            return _round_half_up(value)
        previous_target = stage.target
        stage_start = stage_end
    return 0
