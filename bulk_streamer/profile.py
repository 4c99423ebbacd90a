"""Editing profile: the declarative set of transforms applied to a stream.

Profiles are stored as JSON blobs. Parsing is lenient: a section that fails
to parse is logged and skipped, the rest of the profile still applies.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

NAMED_ASPECT_RATIOS = ("16:9", "9:16", "4:5", "1:1")


@dataclass
class Crop:
    width: int
    height: int
    x: int = 0
    y: int = 0


@dataclass
class Offset:
    x: float = 0.0
    y: float = 0.0


@dataclass
class Flip:
    horizontal: bool = False
    vertical: bool = False


@dataclass
class Size:
    width: int
    height: int


@dataclass
class Trim:
    start: Optional[str] = None
    end: Optional[str] = None


@dataclass
class ColorCorrection:
    brightness: float = 0.0
    contrast: float = 1.0
    saturation: float = 1.0
    gamma: float = 1.0
    sharpness: float = 0.0


@dataclass
class Background:
    type: str = "black"
    image_path: Optional[str] = None


@dataclass
class Shadow:
    x: float
    y: float
    color: str


@dataclass
class Outline:
    width: float
    color: str


@dataclass
class Overlay:
    type: str
    content: Optional[str] = None
    x: float = 0.0
    y: float = 0.0
    opacity: float = 1.0
    size: Optional[float] = None
    color: Optional[str] = None
    banner_color: Optional[str] = None
    banner_opacity: Optional[float] = None
    banner_padding: Optional[float] = None
    shadow: Optional[Shadow] = None
    outline: Optional[Outline] = None
    font: Optional[str] = None
    animation: str = "none"


@dataclass
class AudioAdjust:
    volume: float = 1.0
    normalize: bool = False
    pitch: float = 1.0


@dataclass
class Protection:
    type: str = "black"
    mode: str = "time"
    interval: float = 0.0
    duration: float = 0.0
    strength: float = 1.0
    injection_frames: float = 0.0
    image_path: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.interval > 0 or (self.mode != "time" and self.injection_frames > 0)


@dataclass
class EditingProfile:
    crop: Optional[Crop] = None
    offset: Offset = field(default_factory=Offset)
    rotate: Optional[int] = None
    flip: Optional[Flip] = None
    scale: Optional[Size] = None
    aspect_ratio: Optional[str] = None
    trim: Optional[Trim] = None
    loop: Optional[bool] = None
    color: Optional[ColorCorrection] = None
    zoom: float = 1.0
    background: Background = field(default_factory=Background)
    overlays: List[Overlay] = field(default_factory=list)
    speed: Optional[float] = None
    audio: Optional[AudioAdjust] = None
    protection: Optional[Protection] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EditingProfile":
        profile = cls()
        if not isinstance(data, dict):
            logger.warning("Editing profile is not an object, ignoring it")
            return profile

        for key, attr, parser in _SECTIONS:
            raw = data.get(key)
            if raw is None:
                continue
            try:
                setattr(profile, attr, parser(raw))
            except (TypeError, ValueError, OverflowError, KeyError, AttributeError) as exc:
                logger.warning("Skipping malformed profile section %r: %s", key, exc)
        return profile


def parse_profile(raw: Union[str, bytes, Dict[str, Any], None]) -> EditingProfile:
    """Parse a stored profile blob. Unparseable JSON yields an empty profile."""
    if raw is None:
        return EditingProfile()
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse editing profile data: %s", exc)
            return EditingProfile()
    return EditingProfile.from_dict(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _finite(value: Any) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{value!r} is not a finite number")
    return number


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return _finite(value)


def _parse_speed(raw: Any) -> float:
    speed = _finite(raw)
    if speed <= 0:
        raise ValueError(f"speed must be positive, got {raw!r}")
    return speed


def _parse_crop(raw: Dict[str, Any]) -> Optional[Crop]:
    crop = Crop(
        width=int(raw["width"]),
        height=int(raw["height"]),
        x=int(raw.get("x") or 0),
        y=int(raw.get("y") or 0),
    )
    if crop.width <= 0 or crop.height <= 0:
        return None
    return crop


def _parse_offset(raw: Dict[str, Any]) -> Offset:
    return Offset(x=_number(raw.get("x")), y=_number(raw.get("y")))


def _parse_rotate(raw: Any) -> Optional[int]:
    angle = raw.get("angle") if isinstance(raw, dict) else raw
    return int(angle) if angle is not None else None


def _parse_flip(raw: Dict[str, Any]) -> Flip:
    return Flip(horizontal=bool(raw.get("horizontal")), vertical=bool(raw.get("vertical")))


def _parse_scale(raw: Dict[str, Any]) -> Optional[Size]:
    size = Size(width=int(raw["width"]), height=int(raw["height"]))
    if size.width <= 0 or size.height <= 0:
        return None
    return size


def _parse_aspect(raw: Any) -> Optional[str]:
    value = str(raw)
    if value not in NAMED_ASPECT_RATIOS:
        return None
    return value


def _parse_trim(raw: Dict[str, Any]) -> Trim:
    return Trim(start=_optional_str(raw.get("start")), end=_optional_str(raw.get("end")))


def _parse_color(raw: Dict[str, Any]) -> ColorCorrection:
    return ColorCorrection(
        brightness=_number(raw.get("brightness"), 0.0),
        contrast=_number(raw.get("contrast"), 1.0),
        saturation=_number(raw.get("saturation"), 1.0),
        gamma=_number(raw.get("gamma"), 1.0),
        sharpness=_number(raw.get("sharpness"), 0.0),
    )


def _parse_zoom(raw: Any) -> float:
    zoom = _finite(raw)
    return zoom if zoom > 0 else 1.0


def _parse_background(raw: Dict[str, Any]) -> Background:
    return Background(type=str(raw.get("type") or "black"), image_path=_optional_str(raw.get("imagePath")))


def _parse_overlay(raw: Dict[str, Any]) -> Overlay:
    shadow = raw.get("shadow")
    outline = raw.get("outline")
    return Overlay(
        type=str(raw["type"]),
        content=_optional_str(raw.get("content")),
        x=_number(raw.get("x")),
        y=_number(raw.get("y")),
        opacity=_number(raw.get("opacity"), 1.0),
        size=_finite(raw["size"]) if raw.get("size") else None,
        color=_optional_str(raw.get("color")),
        banner_color=_optional_str(raw.get("bannerColor")),
        banner_opacity=_finite(raw["bannerOpacity"]) if raw.get("bannerOpacity") is not None else None,
        banner_padding=_finite(raw["bannerPadding"]) if raw.get("bannerPadding") is not None else None,
        shadow=Shadow(x=_number(shadow.get("x")), y=_number(shadow.get("y")), color=str(shadow["color"])) if shadow else None,
        outline=Outline(width=_number(outline.get("width")), color=str(outline["color"])) if outline else None,
        font=_optional_str(raw.get("font")),
        animation=str(raw.get("animation") or "none"),
    )


def _parse_overlays(raw: List[Any]) -> List[Overlay]:
    overlays = []
    for index, item in enumerate(raw):
        try:
            overlays.append(_parse_overlay(item))
        except (TypeError, ValueError, OverflowError, KeyError, AttributeError) as exc:
            logger.warning("Skipping malformed overlay #%d: %s", index, exc)
    return overlays


def _parse_audio(raw: Dict[str, Any]) -> AudioAdjust:
    return AudioAdjust(
        volume=_number(raw.get("volume"), 1.0),
        normalize=bool(raw.get("normalize")),
        pitch=_number(raw.get("pitch"), 1.0) or 1.0,
    )


def _parse_protection(raw: Dict[str, Any]) -> Protection:
    return Protection(
        type=str(raw.get("type") or "black"),
        mode=str(raw.get("mode") or "time"),
        interval=_number(raw.get("interval")),
        duration=_number(raw.get("duration")),
        strength=_number(raw.get("strength"), 1.0) or 1.0,
        injection_frames=_number(raw.get("injectionFrames")),
        image_path=_optional_str(raw.get("imagePath")),
    )


_SECTIONS: List[tuple[str, str, Callable[[Any], Any]]] = [
    ("crop", "crop", _parse_crop),
    ("offset", "offset", _parse_offset),
    ("rotate", "rotate", _parse_rotate),
    ("flip", "flip", _parse_flip),
    ("scale", "scale", _parse_scale),
    ("aspectRatio", "aspect_ratio", _parse_aspect),
    ("trim", "trim", _parse_trim),
    ("loop", "loop", bool),
    ("color", "color", _parse_color),
    ("zoom", "zoom", _parse_zoom),
    ("background", "background", _parse_background),
    ("overlays", "overlays", _parse_overlays),
    ("speed", "speed", _parse_speed),
    ("audio", "audio", _parse_audio),
    ("protection", "protection", _parse_protection),
]
