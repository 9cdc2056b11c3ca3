"""
Transcoder interface backed by ffmpeg/ffprobe subprocesses.
Failures are reported in the result objects, never raised.
"""
from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol

from loguru import logger

from signage.config import MediaConfig


@dataclass
class ProbeResult:
    ok: bool
    container: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    pixel_format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration_seconds: Optional[float] = None
    has_video: bool = False
    has_audio: bool = False
    error: Optional[str] = None


@dataclass
class TranscodeResult:
    ok: bool
    output_path: Optional[str] = None
    error: Optional[str] = None


class Transcoder(Protocol):
    def probe(self, path: str) -> ProbeResult: ...

    def transcode(self, input_path: str, output_path: str) -> TranscodeResult: ...


def parse_probe_output(data: dict) -> ProbeResult:
    """Build a ProbeResult from `ffprobe -print_format json -show_format -show_streams` output."""
    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    video = [s for s in streams if s.get("codec_type") == "video"]
    audio = [s for s in streams if s.get("codec_type") == "audio"]
    v = video[0] if video else {}

    duration = None
    for candidate in (fmt.get("duration"), v.get("duration")):
        try:
            duration = float(candidate)
            break
        except (TypeError, ValueError):
            continue

    # ffprobe reports mp4 as "mov,mp4,m4a,3gp,3g2,mj2"
    format_name = fmt.get("format_name") or ""
    container = "mp4" if "mp4" in format_name.split(",") else (format_name or None)

    return ProbeResult(
        ok=True,
        container=container,
        video_codec=(v.get("codec_name") or "").lower() or None,
        audio_codec=((audio[0].get("codec_name") or "").lower() or None) if audio else None,
        pixel_format=v.get("pix_fmt"),
        width=v.get("width"),
        height=v.get("height"),
        duration_seconds=duration,
        has_video=bool(video),
        has_audio=bool(audio),
    )


class FfmpegTranscoder:
    """Runs ffprobe/ffmpeg with a bounded timeout."""

    def __init__(self, config: Optional[MediaConfig] = None):
        self.config = config or MediaConfig()

    def probe(self, path: str) -> ProbeResult:
        cmd = [
            self.config.ffprobe_binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except subprocess.TimeoutExpired:
            return ProbeResult(ok=False, error="ffprobe timed out")
        except OSError as e:
            return ProbeResult(ok=False, error=f"ffprobe spawn error: {e}")

        if result.returncode != 0:
            return ProbeResult(ok=False, error=result.stderr.strip() or f"ffprobe exited with code {result.returncode}")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            return ProbeResult(ok=False, error=f"Failed to parse ffprobe output: {e}")
        return parse_probe_output(data)

    def build_transcode_command(self, input_path: str, output_path: str) -> List[str]:
        max_w, max_h = self.config.max_width, self.config.max_height
        return [
            self.config.ffmpeg_binary,
            "-y", "-i", input_path,
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "23",
            "-pix_fmt", "yuv420p",
            "-vf",
            f"scale='min({max_w},iw)':'min({max_h},ih)':force_original_aspect_ratio=decrease,"
            "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-c:a", "aac",
            "-b:a", "128k",
            "-movflags", "+faststart",
            output_path,
        ]

    def transcode(self, input_path: str, output_path: str) -> TranscodeResult:
        cmd = self.build_transcode_command(input_path, output_path)
        logger.info(f"[TRANSCODE] {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.config.transcode_timeout_seconds
            )
        except subprocess.TimeoutExpired:
            return TranscodeResult(ok=False, error="ffmpeg timed out")
        except OSError as e:
            return TranscodeResult(ok=False, error=f"ffmpeg spawn error: {e}")

        if result.returncode != 0:
            return TranscodeResult(ok=False, error=(result.stderr or "")[-500:])
        return TranscodeResult(ok=True, output_path=output_path)
