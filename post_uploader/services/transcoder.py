"""
Transcoder Service - Single Responsibility: export videos with ffmpeg.

Progress is read from `-progress pipe:1` (out_time_us lines) and reported as a
fraction of the source duration.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import List, Optional

from ..errors import TranscodeError
from ..models import AssetInfo, TranscodeConstraints
from ..protocols import ITranscoder, TranscodeProgressCallback

logger = logging.getLogger(__name__)

FASTSTART_EXTENSIONS = {".mp4", ".m4v", ".mov"}


class FFmpegTranscoder(ITranscoder):
    """Runs ffmpeg as a subprocess, one export per call."""

    def __init__(self, ffmpeg: str = "ffmpeg", log_level: str = "error", preset: str = "veryfast"):
        self._ffmpeg = ffmpeg
        self._log_level = log_level
        self._preset = preset

    def build_command(self, asset: AssetInfo, output_path: Path, constraints: TranscodeConstraints) -> List[str]:
        scale = (
            f"scale=w='min({constraints.max_width},iw)':h='min({constraints.max_height},ih)'"
            ":force_original_aspect_ratio=decrease:force_divisible_by=2"
        )
        cmd = [
            self._ffmpeg,
            "-y",
            "-hide_banner",
            "-nostats",
            "-loglevel",
            self._log_level,
            "-i",
            asset.path.as_posix(),
            "-vf",
            scale,
            "-c:v",
            constraints.video_codec,
            "-preset",
            self._preset,
            "-b:v",
            str(constraints.video_bitrate),
            "-maxrate",
            str(constraints.video_bitrate),
            "-bufsize",
            str(constraints.video_bitrate * 2),
            "-c:a",
            constraints.audio_codec,
            "-b:a",
            str(constraints.audio_bitrate),
            "-ar",
            str(constraints.audio_sample_rate),
        ]
        if output_path.suffix.lower() in FASTSTART_EXTENSIONS:
            cmd.extend(["-movflags", "+faststart"])
        cmd.extend(["-progress", "pipe:1", output_path.as_posix()])
        return cmd

    async def transcode(
        self,
        asset: AssetInfo,
        output_path: Path,
        constraints: TranscodeConstraints,
        progress_callback: Optional[TranscodeProgressCallback] = None,
    ) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(asset, output_path, constraints)
        logger.debug(f"Running ffmpeg for {asset.path.name} -> {output_path.name}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TranscodeError(f"ffmpeg not found: {self._ffmpeg}") from e

        try:
            _, stderr = await asyncio.gather(
                self._read_progress(proc.stdout, asset, progress_callback),
                proc.stderr.read(),
            )
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if returncode != 0:
            message = stderr.decode("utf-8", errors="ignore").strip() or "unknown error"
            raise TranscodeError(f"ffmpeg transcode failed for {asset.path.name}: {message}")
        if not output_path.exists():
            raise TranscodeError(f"ffmpeg produced no output for {asset.path.name}")
        return output_path

    async def _read_progress(
        self,
        stream: asyncio.StreamReader,
        asset: AssetInfo,
        progress_callback: Optional[TranscodeProgressCallback],
    ) -> None:
        duration_us = (asset.duration or 0) * 1_000_000
        while True:
            line = await stream.readline()
            if not line:
                break
            key, _, value = line.decode("utf-8", errors="ignore").strip().partition("=")
            fraction = None
            if key == "out_time_us" and duration_us > 0:
                try:
                    fraction = min(1.0, max(0.0, int(value) / duration_us))
                except ValueError:
                    continue
            elif key == "progress" and value == "end":
                fraction = 1.0
            if fraction is not None and progress_callback:
                result = progress_callback(asset.asset_id, fraction)
                if inspect.isawaitable(result):
                    await result
