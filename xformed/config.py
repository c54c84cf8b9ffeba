from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Literal, Mapping, get_args

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from .errors import InvalidConfigError

_LOGGER = logging.getLogger("xformed.config")

OscShape = Literal["sine", "square", "saw"]
ScaleName = Literal["major", "minor"]

OSC_SHAPES: tuple[str, ...] = get_args(OscShape)
DEFAULT_LAYERING: tuple[OscShape, ...] = ("saw", "sine")

# (low, high) bounds for numeric style knobs; values outside are clamped.
STYLE_BOUNDS: Mapping[str, tuple[float, float]] = MappingProxyType(
    {
        "swing": (0.0, 0.35),
        "humanize": (0.0, 0.4),
        "polyphony": (1, 3),
    }
)

_SHAPE_ALIASES: Mapping[str, OscShape] = MappingProxyType(
    {
        "sawtooth": "saw",
        "sin": "sine",
        "pulse": "square",
    }
)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class StyleParams(BaseModel):
    """Render style for the synthesis engine.

    Every field has a default and numeric values outside their range are
    clamped instead of rejected, so a policy layer can pass raw numbers
    straight through.
    """

    layering: tuple[OscShape, ...] = DEFAULT_LAYERING
    swing: float = 0.0
    humanize: float = 0.1
    polyphony: int = 1
    percussion: bool = False
    scale: ScaleName = "major"

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("layering", mode="before")
    @classmethod
    def _known_shapes(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if not isinstance(value, (list, tuple)):
            return DEFAULT_LAYERING
        shapes: list[str] = []
        for raw in value:
            name = str(raw).strip().lower()
            name = _SHAPE_ALIASES.get(name, name)
            if name in OSC_SHAPES:
                shapes.append(name)
            else:
                _LOGGER.warning("Ignoring unknown oscillator shape %r", raw)
        return tuple(shapes) if shapes else DEFAULT_LAYERING

    @field_validator("swing", "humanize", mode="before")
    @classmethod
    def _clamp_fraction(cls, value: Any, info: ValidationInfo) -> float:
        low, high = STYLE_BOUNDS[info.field_name]
        return _clamp(float(value), low, high)

    @field_validator("polyphony", mode="before")
    @classmethod
    def _clamp_polyphony(cls, value: Any) -> int:
        low, high = STYLE_BOUNDS["polyphony"]
        return int(_clamp(int(round(float(value))), low, high))

    @field_validator("scale", mode="before")
    @classmethod
    def _normalize_scale(cls, value: Any) -> str:
        return str(value).strip().lower()


class AnalysisSettings(BaseModel):
    """Framing for the feature extraction engine."""

    frame_size: int = Field(default=2048)
    hop_size: int = Field(default=512)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _check_framing(self) -> "AnalysisSettings":
        if self.frame_size < 2:
            raise InvalidConfigError(f"frame_size must be >= 2, got {self.frame_size}")
        if self.hop_size < 1:
            raise InvalidConfigError(f"hop_size must be >= 1, got {self.hop_size}")
        return self
