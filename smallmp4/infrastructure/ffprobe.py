import subprocess
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from pydantic import ValidationError
from smallmp4.domain.errors import ProbeError
from smallmp4.domain.models import VideoMetadata


def parse_fraction(value: Optional[str]) -> Optional[float]:
    """Parses '30/1' or '30000/1001' style rates; None when malformed or zero-denominator."""
    if not value:
        return None
    if "/" not in value:
        try:
            return float(value)
        except ValueError:
            return None
    try:
        num, den = map(float, value.split("/"))
    except ValueError:
        return None
    if den == 0:
        return None
    return num / den


class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def get_stream_info(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and returns the parsed JSON document."""
        cmd = [
            "ffprobe",
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise ProbeError("ffprobe not found. Is ffmpeg installed?", path=str(file_path))
        except subprocess.TimeoutExpired:
            raise ProbeError(f"ffprobe timed out for {file_path}", path=str(file_path))

        if result.returncode != 0:
            raise ProbeError(f"ffprobe failed for {file_path}: {result.stderr.strip()}", path=str(file_path))

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"Unparseable ffprobe output for {file_path}: {e}", path=str(file_path))

    def probe(self, file_path: Path) -> VideoMetadata:
        """Extracts duration, resolution, frame rate and bitrate. Raises ProbeError."""
        if not file_path.is_file():
            raise ProbeError(f"Input file does not exist: {file_path}", path=str(file_path))

        data = self.get_stream_info(file_path)
        streams = data.get("streams", [])
        fmt = data.get("format", {})

        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ProbeError(f"No video stream found in {file_path}", path=str(file_path))
        has_audio = any(s.get("codec_type") == "audio" for s in streams)

        # Format duration is more reliable; stream duration is the fallback
        duration = _to_float(fmt.get("duration")) or _to_float(video_stream.get("duration")) or 0.0
        if duration <= 0:
            raise ProbeError(f"Unknown or zero duration for {file_path}", path=str(file_path))

        # r_frame_rate first, avg_frame_rate is often 0/0 for some containers
        fps = parse_fraction(video_stream.get("r_frame_rate")) or parse_fraction(video_stream.get("avg_frame_rate"))
        if not fps or fps > 240:
            fps = 30.0

        bitrate_bps = _to_float(fmt.get("bit_rate")) or _to_float(video_stream.get("bit_rate")) or 0.0

        try:
            metadata = VideoMetadata(
                duration_seconds=duration,
                width=int(video_stream.get("width", 0)),
                height=int(video_stream.get("height", 0)),
                source_bitrate_kbps=int(bitrate_bps // 1000),
                has_audio=has_audio,
                fps=fps,
                codec=video_stream.get("codec_name", "unknown"),
            )
        except ValidationError as e:
            raise ProbeError(f"Invalid stream properties in {file_path}: {e}", path=str(file_path))

        self.logger.info(
            f"Probed {file_path.name}: {metadata.width}x{metadata.height} @ {metadata.fps:.2f}fps, "
            f"duration={metadata.duration_seconds:.1f}s, bitrate={metadata.source_bitrate_kbps}kbps, "
            f"audio={metadata.has_audio}"
        )
        return metadata


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
