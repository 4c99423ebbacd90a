"""Compile editing profiles into ffmpeg streaming arguments.

The builder keeps the video path as an ordered list of steps. Plain filter
strings are chained linearly; layout steps (background compositing, mirrored
edge injection) and image overlays need extra pads and are emitted through a
``FilterGraph``. The order in which ``apply_profile`` appends steps is the
order ffmpeg applies them and must stay fixed:

    loop -> trim -> crop -> layout -> rotate -> flip -> color/sharpness
    -> protection -> overlays -> speed -> audio
"""

from __future__ import annotations

import logging
import math
import platform
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from .filtergraph import FilterGraph, InputPad, Pad
from .hardware import HardwareDetector, SOFTWARE_ENCODER, best_encoder, hwaccel_args
from .profile import Background, EditingProfile, Offset, Overlay, Protection

logger = logging.getLogger(__name__)

MAIN_INPUT = "main"
BACKGROUND_INPUT = "background"

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
ASPECT_RESOLUTIONS = {
    "16:9": (1920, 1080),
    "1:1": (1080, 1080),
    "4:5": (1080, 1350),
    "9:16": (1080, 1920),
}

# Fixed output parameters; the ingest side expects exactly these.
VIDEO_BITRATE_K = 4500
AUDIO_BITRATE_K = 128
AUDIO_SAMPLE_RATE = 44100
PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
CONTAINER = "flv"

if platform.system() == "Windows":
    DEFAULT_FONT_FILE = "C:/Windows/Fonts/Arial.ttf"
else:
    DEFAULT_FONT_FILE = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"

_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+\s*[kmg]?bits/s)")


def parse_progress(output: str) -> Tuple[Optional[float], Optional[str]]:
    """Pull the latest fps and bitrate tokens out of a chunk of ffmpeg stderr."""
    fps_matches = _FPS_RE.findall(output)
    bitrate_matches = _BITRATE_RE.findall(output)
    fps = None
    if fps_matches:
        try:
            fps = float(fps_matches[-1])
        except ValueError:
            fps = None
    bitrate = bitrate_matches[-1].replace(" ", "") if bitrate_matches else None
    return fps, bitrate


def _fmt(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return f"{value:.6g}"


def _escape_text(text: str) -> str:
    return text.replace("'", "'\\\\''").replace(":", "\\:")


def _escape_path(path: str) -> str:
    return path.replace("\\", "/").replace(":", "\\:")


@dataclass
class OverlayInput:
    """An extra image input composited on top of the finished video chain."""

    name: str
    path: str
    x: str
    y: str
    width: float = -1
    height: float = -1
    opacity: float = 1.0
    enable: Optional[str] = None


@dataclass
class CompositeLayout:
    """Zoomed foreground fitted onto a generated background."""

    width: int
    height: int
    zoom: float
    background: Background
    offset: Offset = field(default_factory=Offset)
    use_background_input: bool = False

    def apply(self, graph: FilterGraph, source: Pad) -> Pad:
        w, h = self.width, self.height
        fill = [f"scale={w}:{h}:force_original_aspect_ratio=increase", f"crop={w}:{h}"]

        if self.background.type in ("blur", "mirror"):
            bg_src, fg_src = graph.label("bgsrc"), graph.label("fgsrc")
            graph.add(["split=2"], [source], [bg_src, fg_src])
            if self.background.type == "blur":
                effect = ["boxblur=luma_radius=min(h\\,w)/10:luma_power=1"]
            else:
                effect = ["hflip", "boxblur=20"]
            background = graph.chain(bg_src, fill + effect, prefix="bg")
        elif self.use_background_input:
            fg_src = source
            background = graph.chain(InputPad(BACKGROUND_INPUT), fill, prefix="bg")
        else:
            fg_src = source
            background = graph.label("bg")
            graph.add([f"color=c=black:s={w}x{h}"], outputs=[background])

        zoom = _fmt(self.zoom)
        foreground = graph.chain(
            fg_src,
            [f"scale=iw*{zoom}:ih*{zoom}", f"scale=w={w}:h={h}:force_original_aspect_ratio=decrease"],
            prefix="fg",
        )
        out = graph.label("layout")
        position = (
            f"overlay=(W-w)/2+({_fmt(self.offset.x)}*W/100):(H-h)/2+({_fmt(self.offset.y)}*H/100):shortest=1"
        )
        graph.add([position], [background, foreground], [out])
        return out


@dataclass
class MirrorEdge:
    """Mirrors a strip of the left edge back over the frame while ``enable`` holds."""

    enable: str
    strength: float = 1.0

    def apply(self, graph: FilterGraph, source: Pad) -> Pad:
        base, strip = graph.label("mirbase"), graph.label("mirsrc")
        graph.add(["split=2"], [source], [base, strip])
        edge = graph.chain(strip, [f"crop=iw*{_fmt(0.05 * self.strength)}:ih:0:0", "hflip"], prefix="edge")
        out = graph.label("mirror")
        graph.add([f"overlay=0:0:enable='{self.enable}'"], [base, edge], [out])
        return out


VideoStep = Union[str, CompositeLayout, MirrorEdge]


def trigger_expression(protection: Protection) -> str:
    """Per-frame enable expression for the protection effect."""
    if protection.mode == "frame":
        every = max(2, round(protection.interval))
        inject = max(1, round(protection.injection_frames or 1))
        return f"lt(mod(n,{every}),{inject})"
    if protection.mode == "random":
        denominator = max(1.0, protection.interval)
        numerator = max(1.0, protection.injection_frames or 1)
        probability = min(1.0, numerator / denominator)
        return f"lt(random(1),{_fmt(probability)})"
    return f"lt(mod(t,{_fmt(max(0.1, protection.interval))}),{_fmt(protection.duration or 0.04)})"


class FfmpegCommandBuilder:
    """Turns an input file plus an editing profile into ffmpeg arguments."""

    def __init__(self, input_path: str, hardware: Optional[HardwareDetector] = None):
        self.input_path = input_path
        self.hardware = hardware or HardwareDetector()
        self.bitrate = VIDEO_BITRATE_K
        self.audio_bitrate = AUDIO_BITRATE_K
        self.video_steps: List[VideoStep] = []
        self.audio_filters: List[str] = []
        self.overlay_inputs: List[OverlayInput] = []
        self.background_input: Optional[str] = None
        self.trim_args: List[str] = []
        self.loop = True
        self.target_width = DEFAULT_WIDTH
        self.target_height = DEFAULT_HEIGHT
        self.output_url: Optional[str] = None

    def apply_profile(self, profile: EditingProfile) -> "FfmpegCommandBuilder":
        if profile.loop is not None:
            self.loop = profile.loop

        # Input seeking: these go before -i.
        if profile.trim:
            if profile.trim.start is not None:
                self.trim_args.extend(["-ss", profile.trim.start])
            if profile.trim.end is not None:
                self.trim_args.extend(["-to", profile.trim.end])

        if profile.crop:
            crop = profile.crop
            self.video_steps.append(f"crop={crop.width}:{crop.height}:{crop.x}:{crop.y}")

        self._apply_layout(profile)
        self._apply_orientation(profile)
        self._apply_color(profile)
        if profile.protection and profile.protection.is_active:
            self._apply_protection(profile.protection)
        for overlay in profile.overlays:
            self._apply_overlay(overlay)
        self._apply_speed(profile.speed)
        self._apply_audio(profile)
        return self

    def _resolve_target(self, profile: EditingProfile) -> Tuple[int, int]:
        if profile.aspect_ratio:
            return ASPECT_RESOLUTIONS.get(profile.aspect_ratio, (DEFAULT_WIDTH, DEFAULT_HEIGHT))
        if profile.scale:
            return profile.scale.width, profile.scale.height
        return DEFAULT_WIDTH, DEFAULT_HEIGHT

    def _apply_layout(self, profile: EditingProfile) -> None:
        self.target_width, self.target_height = self._resolve_target(profile)
        w, h = self.target_width, self.target_height
        zoom = profile.zoom or 1.0
        background = profile.background

        if zoom == 1.0 and background.type == "black":
            self.video_steps.append(f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2")
            return

        use_input = background.type == "image" and bool(background.image_path)
        if use_input:
            self.background_input = background.image_path
        self.video_steps.append(
            CompositeLayout(
                width=w,
                height=h,
                zoom=zoom,
                background=background,
                offset=profile.offset,
                use_background_input=use_input,
            )
        )

    def _apply_orientation(self, profile: EditingProfile) -> None:
        if profile.rotate == 90:
            self.video_steps.append("transpose=1")
        elif profile.rotate == 180:
            self.video_steps.extend(["transpose=2", "transpose=2"])
        elif profile.rotate == 270:
            self.video_steps.append("transpose=2")

        if profile.flip:
            if profile.flip.horizontal:
                self.video_steps.append("hflip")
            if profile.flip.vertical:
                self.video_steps.append("vflip")

    def _apply_color(self, profile: EditingProfile) -> None:
        color = profile.color
        if not color:
            return
        params = []
        if color.brightness != 0:
            params.append(f"brightness={_fmt(color.brightness)}")
        if color.contrast != 1:
            params.append(f"contrast={_fmt(color.contrast)}")
        if color.saturation != 1:
            params.append(f"saturation={_fmt(color.saturation)}")
        if color.gamma != 1:
            params.append(f"gamma={_fmt(color.gamma)}")
        if params:
            self.video_steps.append("eq=" + ":".join(params))

        if color.sharpness > 0:
            luma = 1.0 + color.sharpness * 2.5
            chroma = 0.5 + color.sharpness * 1.0
            self.video_steps.append(f"unsharp=5:5:{_fmt(luma)}:5:5:{_fmt(chroma)}")

    def _apply_protection(self, protection: Protection) -> None:
        enable = trigger_expression(protection)
        strength = protection.strength or 1.0
        kind = protection.type

        if kind == "static":
            self.video_steps.append(f"noise=alls={round(100 * strength)}:allf=t+u:enable='{enable}'")
        elif kind == "grayscale":
            self.video_steps.append(f"hue=s=0:enable='{enable}'")
        elif kind == "blur":
            self.video_steps.append(f"boxblur=luma_radius={round(10 * strength)}:luma_power=1:enable='{enable}'")
        elif kind == "subtle_noise":
            self.video_steps.append(f"noise=alls={round(5 * strength)}:allf=t:enable='{enable}'")
        elif kind == "color_shift":
            self.video_steps.append(f"hue=h=sin(t*{_fmt(strength)})*10:enable='{enable}'")
        elif kind == "mirror_edge":
            self.video_steps.append(MirrorEdge(enable=enable, strength=strength))
        elif kind == "image" and protection.image_path:
            self.overlay_inputs.append(
                OverlayInput(
                    name=f"overlay{len(self.overlay_inputs)}",
                    path=protection.image_path,
                    x="(W-w)/2",
                    y="(H-h)/2",
                    enable=enable,
                )
            )
        else:
            fill = "white" if kind == "white" else "black"
            self.video_steps.append(f"drawbox=t=fill:color={fill}:enable='{enable}'")

    def _apply_overlay(self, overlay: Overlay) -> None:
        if not overlay.content:
            return
        if overlay.type == "text":
            self._apply_text(overlay)
        elif overlay.type == "image":
            self.overlay_inputs.append(
                OverlayInput(
                    name=f"overlay{len(self.overlay_inputs)}",
                    path=overlay.content,
                    x=f"(W*{_fmt(overlay.x / 100)})",
                    y=f"(H*{_fmt(overlay.y / 100)})",
                    width=overlay.size or -1,
                    height=-1,
                    opacity=overlay.opacity,
                )
            )

    def _apply_text(self, overlay: Overlay) -> None:
        size = overlay.size or 24
        x_expr = f"w*{_fmt(overlay.x / 100)}"
        y_expr = f"h*{_fmt(overlay.y / 100)}"
        alpha_expr = _fmt(overlay.opacity)

        scrolling = overlay.animation in ("scroll_left", "scroll_right")
        if overlay.animation == "scroll_left":
            x_expr = "w-mod(t*100\\,w+tw)"
        elif overlay.animation == "scroll_right":
            x_expr = "-tw+mod(t*100\\,w+tw)"
        elif overlay.animation == "fade":
            alpha_expr = "if(lt(mod(t\\,4)\\,2)\\,mod(t\\,2)\\,2-mod(t\\,2))"

        params = [
            f"text='{_escape_text(overlay.content or '')}'",
            f"x={x_expr}",
            f"y={y_expr}",
            f"fontsize=w*({_fmt(size)}/1000)",
            f"fontcolor={overlay.color or 'white'}",
            f"alpha={alpha_expr}",
            f"fontfile='{_escape_path(overlay.font or DEFAULT_FONT_FILE)}'",
        ]
        if overlay.shadow:
            params.extend(
                [
                    f"shadowcolor={overlay.shadow.color}",
                    f"shadowx={_fmt(overlay.shadow.x)}",
                    f"shadowy={_fmt(overlay.shadow.y)}",
                ]
            )
        if overlay.outline and overlay.outline.width > 0:
            params.extend([f"borderw={_fmt(overlay.outline.width)}", f"bordercolor={overlay.outline.color}"])

        if overlay.banner_color:
            self.video_steps.append(self._banner(overlay, size, scrolling))
        self.video_steps.append("drawtext=" + ":".join(params))

    def _banner(self, overlay: Overlay, size: float, scrolling: bool) -> str:
        opacity = overlay.banner_opacity or 0.5
        padding = overlay.banner_padding or 10
        pad = _fmt(padding)
        glyph = size / 1000
        box_h = f"iw*{_fmt(glyph * 1.2)}+{_fmt(padding * 2)}"
        y = f"ih*{_fmt(overlay.y / 100)}-{pad}"
        if scrolling:
            # A moving text gets a full-width band.
            x, box_w = "0", "iw"
        else:
            x = f"iw*{_fmt(overlay.x / 100)}-{pad}"
            box_w = f"iw*{_fmt(glyph * 0.6 * len(overlay.content or ''))}+{_fmt(padding * 2)}"
        return f"drawbox=x={x}:y={y}:w={box_w}:h={box_h}:color={overlay.banner_color}@{_fmt(opacity)}:t=fill"

    def _apply_speed(self, speed: Optional[float]) -> None:
        if not speed or not math.isfinite(speed) or speed <= 0 or speed == 1.0:
            return
        self.video_steps.append(f"setpts={_fmt(1.0 / speed)}*PTS")
        remaining = speed
        # atempo accepts 0.5..100 per instance.
        while remaining < 0.5:
            self.audio_filters.append("atempo=0.5")
            remaining /= 0.5
        while remaining > 100.0:
            self.audio_filters.append("atempo=100")
            remaining /= 100.0
        self.audio_filters.append(f"atempo={_fmt(remaining)}")

    def _apply_audio(self, profile: EditingProfile) -> None:
        audio = profile.audio
        if not audio:
            return
        if audio.volume != 1.0:
            self.audio_filters.append(f"volume={_fmt(audio.volume)}")
        if audio.normalize:
            self.audio_filters.append("loudnorm")
        if audio.pitch and audio.pitch != 1.0:
            self.audio_filters.append(f"asetrate={_fmt(AUDIO_SAMPLE_RATE * audio.pitch)},aresample={AUDIO_SAMPLE_RATE}")

    def for_streaming(self, rtmp_url: str, loop_override: Optional[bool] = None) -> List[str]:
        self.output_url = rtmp_url
        loop = self.loop if loop_override is None else loop_override
        return self.build(loop)

    @property
    def is_linear(self) -> bool:
        return not self.overlay_inputs and all(isinstance(step, str) for step in self.video_steps)

    def video_graph(self) -> Tuple[FilterGraph, Pad]:
        graph = FilterGraph()
        pad: Pad = InputPad(MAIN_INPUT)
        pending: List[str] = []
        for step in self.video_steps:
            if isinstance(step, str):
                pending.append(step)
                continue
            pad = graph.chain(pad, pending)
            pending = []
            pad = step.apply(graph, pad)
        pad = graph.chain(pad, pending)

        for overlay in self.overlay_inputs:
            pad = self._composite_overlay(graph, pad, overlay)
        return graph, pad

    def _composite_overlay(self, graph: FilterGraph, base: Pad, overlay: OverlayInput) -> Pad:
        source: Pad = InputPad(overlay.name)
        filters = []
        # Sizes are permille of the output frame; -1 keeps the aspect ratio.
        width = round(self.target_width * overlay.width / 1000) if overlay.width and overlay.width > 0 else -1
        height = round(self.target_height * overlay.height / 1000) if overlay.height and overlay.height > 0 else -1
        if width != -1 or height != -1:
            filters.append(f"scale={width}:{height}")
        if overlay.opacity < 1.0:
            filters.extend(["format=rgba", f"colorchannelmixer=aa={_fmt(overlay.opacity)}"])
        source = graph.chain(source, filters, prefix="sc")

        expr = f"overlay=x={overlay.x}:y={overlay.y}"
        if overlay.enable:
            expr += f":enable='{overlay.enable}'"
        out = graph.label("vov")
        graph.add([expr], [base, source], [out])
        return out

    def build(self, loop: bool) -> List[str]:
        if not self.output_url:
            raise ValueError("Output URL is not set; call for_streaming()")

        encoder = best_encoder(self.hardware.get_info())
        args: List[str] = []

        # Loop and hwaccel must precede the input they apply to.
        if loop:
            args.extend(["-stream_loop", "-1"])
        args.extend(hwaccel_args(encoder))
        args.extend(self.trim_args)
        args.extend(["-re", "-i", self.input_path])

        # Main input is 0, overlay images follow in order, background image goes last.
        indexes = {MAIN_INPUT: 0}
        for overlay in self.overlay_inputs:
            indexes[overlay.name] = len(indexes)
            args.extend(["-i", overlay.path])
        if self.background_input:
            indexes[BACKGROUND_INPUT] = len(indexes)
            args.extend(["-loop", "1", "-i", self.background_input])

        if self.is_linear:
            if self.video_steps:
                args.extend(["-vf", ",".join(self.video_steps)])  # type: ignore[arg-type]
        else:
            graph, out = self.video_graph()
            args.extend(["-filter_complex", graph.render(indexes), "-map", f"[{out.name}]", "-map", "0:a?"])

        if self.audio_filters:
            args.extend(["-af", ",".join(self.audio_filters)])

        args.extend(["-c:v", encoder, "-b:v", f"{self.bitrate}k"])
        if encoder == SOFTWARE_ENCODER:
            args.extend(["-preset", "veryfast"])
        args.extend(
            [
                "-maxrate",
                f"{self.bitrate}k",
                "-bufsize",
                f"{self.bitrate * 2}k",
                "-pix_fmt",
                PIXEL_FORMAT,
                "-c:a",
                AUDIO_CODEC,
                "-b:a",
                f"{self.audio_bitrate}k",
                "-ar",
                str(AUDIO_SAMPLE_RATE),
                "-f",
                CONTAINER,
                self.output_url,
            ]
        )
        logger.debug("Built ffmpeg args for %s with encoder %s", self.input_path, encoder)
        return args
