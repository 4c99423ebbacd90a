"""Hardware encoder detection for ffmpeg."""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

SOFTWARE_ENCODER = "libx264"

# Preference order, best first.
HARDWARE_ENCODERS = (
    ("nvenc", "h264_nvenc"),
    ("qsv", "h264_qsv"),
    ("amf", "h264_amf"),
    ("vaapi", "h264_vaapi"),
)

# Only these encoders get a matching hardware decode path.
HWACCEL_ARGS: Dict[str, List[str]] = {
    "h264_nvenc": ["-hwaccel", "cuda"],
    "h264_qsv": ["-hwaccel", "qsv"],
}


@dataclass
class EncoderSupport:
    nvenc: bool = False
    qsv: bool = False
    amf: bool = False
    vaapi: bool = False


@dataclass
class HardwareInfo:
    cpu: str = ""
    encoders: EncoderSupport = field(default_factory=EncoderSupport)


def best_encoder(info: HardwareInfo) -> str:
    for flag, encoder in HARDWARE_ENCODERS:
        if getattr(info.encoders, flag):
            return encoder
    return SOFTWARE_ENCODER


def hwaccel_args(encoder: str) -> List[str]:
    return list(HWACCEL_ARGS.get(encoder, []))


class HardwareDetector:
    """Queries ``ffmpeg -encoders`` once and caches the result."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 15.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self._cached: Optional[HardwareInfo] = None

    def get_info(self) -> HardwareInfo:
        if self._cached is None:
            self._cached = HardwareInfo(cpu=platform.processor() or platform.machine(), encoders=self._detect_encoders())
        return self._cached

    def best_encoder(self) -> str:
        return best_encoder(self.get_info())

    def _detect_encoders(self) -> EncoderSupport:
        try:
            result = subprocess.run(  # noqa: S603
                [self.ffmpeg_path, "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Failed to list ffmpeg encoders: %s", exc)
            return EncoderSupport()

        output = result.stdout
        support = EncoderSupport(**{flag: encoder in output for flag, encoder in HARDWARE_ENCODERS})
        logger.info("Detected encoders: %s", support)
        return support
