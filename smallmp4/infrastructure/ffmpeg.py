import os
import subprocess
import re
import logging
import tempfile
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from smallmp4.domain.models import EncodeOutcome, EncodePlan, EncoderFamily

ProgressCallback = Callable[[float], None]

# Regex to parse 'time=00:00:00.00' from ffmpeg output (also matches -progress 'out_time=')
TIME_REGEX = re.compile(r"time=(\d+):(\d+):(\d+\.\d+)")
HW_CAP_MESSAGE = "Hardware is lacking required capabilities"
VAAPI_DEVICE = "/dev/dri/renderD128"


def _input_args(plan: EncodePlan) -> List[str]:
    family = plan.encoder.family
    if family is EncoderFamily.NVIDIA:
        args = ["-hwaccel", "cuda"]
        if plan.hw_device_id is not None:
            args.extend(["-hwaccel_device", str(plan.hw_device_id)])
        return args
    if family is EncoderFamily.VAAPI:
        return ["-vaapi_device", VAAPI_DEVICE]
    if family is EncoderFamily.VIDEOTOOLBOX:
        return ["-hwaccel", "videotoolbox"]
    return []


def _nvenc_args(plan: EncodePlan) -> List[str]:
    args = ["-preset", plan.preset.nvenc, "-tune", "hq", "-rc", "vbr", "-multipass", "fullres"]
    if plan.hw_device_id is not None:
        args.extend(["-gpu", str(plan.hw_device_id)])
    if plan.quality_param is not None:
        args.extend(["-cq", str(plan.quality_param)])
    return args


def _amf_args(plan: EncodePlan) -> List[str]:
    if plan.quality_param is not None:
        return ["-quality", "balanced", "-rc", "qvbr", "-qvbr_quality_level", str(plan.quality_param)]
    return ["-quality", "balanced", "-rc", "vbr_peak"]


def _qsv_args(plan: EncodePlan) -> List[str]:
    args = ["-preset", "medium", "-look_ahead", "1"]
    if plan.quality_param is not None:
        args.extend(["-global_quality", str(plan.quality_param)])
    return args


def _vaapi_args(plan: EncodePlan) -> List[str]:
    args = ["-vf", "format=nv12,hwupload", "-profile:v", "main", "-level", "4.0"]
    if plan.quality_param is not None:
        args.extend(["-rc_mode", "QVBR", "-global_quality", str(plan.quality_param)])
    return args


def _videotoolbox_args(plan: EncodePlan) -> List[str]:
    args = ["-profile:v", "main", "-allow_sw", "1"]
    if plan.quality_param is not None:
        # VideoToolbox rate control is bitrate based; -q:v runs 1 (worst) to 100 (best)
        vt_quality = max(1, min(100, round((51 - plan.quality_param) * 100 / 51)))
        args.extend(["-b:v", f"{plan.video_bitrate_kbps}k", "-q:v", str(vt_quality)])
    return args


def _software_args(plan: EncodePlan) -> List[str]:
    args = ["-preset", plan.preset.software]
    if plan.quality_param is not None:
        args.extend(["-crf", str(plan.quality_param)])
    return args


ENCODER_ARGS: Dict[EncoderFamily, Callable[[EncodePlan], List[str]]] = {
    EncoderFamily.NVIDIA: _nvenc_args,
    EncoderFamily.AMD: _amf_args,
    EncoderFamily.INTEL: _qsv_args,
    EncoderFamily.VAAPI: _vaapi_args,
    EncoderFamily.VIDEOTOOLBOX: _videotoolbox_args,
    EncoderFamily.SOFTWARE: _software_args,
}


class FFmpegAdapter:
    """Wrapper around ffmpeg: turns an EncodePlan into an encode with progress and cancellation."""

    def __init__(self, poll_interval: float = 0.2, kill_timeout: float = 5.0):
        self.poll_interval = poll_interval
        self.kill_timeout = kill_timeout
        self.logger = logging.getLogger(__name__)

    def _build_command(
        self,
        plan: EncodePlan,
        input_path: Path,
        output_path: Path,
        pass_number: Optional[int] = None,
        passlog: Optional[Path] = None,
    ) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = ["ffmpeg", "-y", "-hide_banner", "-nostdin"]
        cmd.extend(_input_args(plan))
        cmd.extend(["-i", str(input_path)])

        # Video encoding settings
        cmd.extend(["-c:v", plan.encoder.ffmpeg_codec])
        kbps = plan.video_bitrate_kbps
        if plan.quality_param is None:
            cmd.extend(["-b:v", f"{kbps}k"])
        cmd.extend(["-maxrate", f"{kbps}k", "-bufsize", f"{kbps * 2}k"])
        cmd.extend(ENCODER_ARGS[plan.encoder.family](plan))

        if pass_number is not None:
            cmd.extend(["-pass", str(pass_number), "-passlogfile", str(passlog)])

        if pass_number == 1:
            # Analysis pass: no audio, discard output
            cmd.extend(["-an", "-f", "null", os.devnull])
            return cmd

        if plan.audio_bitrate_kbps > 0:
            cmd.extend(["-c:a", "aac", "-b:a", f"{plan.audio_bitrate_kbps}k", "-ac", "2"])
        else:
            cmd.append("-an")

        cmd.extend(["-movflags", "+faststart"])
        if plan.encoder.family is not EncoderFamily.VAAPI:
            cmd.extend(["-pix_fmt", "yuv420p"])
        cmd.extend(["-f", "mp4", str(output_path)])
        return cmd

    def encode(
        self,
        plan: EncodePlan,
        input_path: Path,
        output_path: Path,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> EncodeOutcome:
        """Runs the encode described by the plan. Never raises for backend failures."""
        cancel = cancel or threading.Event()
        start_time = time.monotonic()
        self.logger.info(
            f"FFMPEG_START: {input_path.name} encoder={plan.encoder.value} "
            f"bitrate={plan.video_bitrate_kbps}k quality={plan.quality_param} two_pass={plan.two_pass}"
        )

        if plan.two_pass:
            with tempfile.TemporaryDirectory(prefix="smallmp4-pass-") as tmp:
                passlog = Path(tmp) / "ffmpeg2pass"
                first = self._build_command(plan, input_path, output_path, 1, passlog)
                returncode, tail, cancelled = self._run(first, plan.duration_seconds, progress, cancel, 0.0, 0.5)
                if returncode == 0 and not cancelled:
                    second = self._build_command(plan, input_path, output_path, 2, passlog)
                    returncode, tail, cancelled = self._run(second, plan.duration_seconds, progress, cancel, 0.5, 0.5)
        else:
            cmd = self._build_command(plan, input_path, output_path)
            returncode, tail, cancelled = self._run(cmd, plan.duration_seconds, progress, cancel, 0.0, 1.0)

        elapsed = time.monotonic() - start_time
        if cancelled:
            self.logger.info(f"FFMPEG_END: {input_path.name} status=cancelled elapsed={elapsed:.2f}s")
            return EncodeOutcome(success=False, cancelled=True, returncode=returncode)

        if returncode != 0:
            if returncode == 187 or HW_CAP_MESSAGE in tail:
                message = HW_CAP_MESSAGE
            else:
                message = f"ffmpeg exited with code {returncode}"
            self.logger.info(f"FFMPEG_END: {input_path.name} status=failed code={returncode} elapsed={elapsed:.2f}s")
            return EncodeOutcome(success=False, returncode=returncode, error_message=f"{message}: {tail}".strip())

        output_bytes = output_path.stat().st_size if output_path.exists() else 0
        if output_bytes == 0:
            return EncodeOutcome(success=False, returncode=0, error_message="ffmpeg produced no output")

        self.logger.info(
            f"FFMPEG_END: {input_path.name} status=completed size={output_bytes} elapsed={elapsed:.2f}s"
        )
        if progress:
            progress(1.0)
        return EncodeOutcome(success=True, returncode=0, output_bytes=output_bytes)

    def _run(
        self,
        cmd: List[str],
        duration: float,
        progress: Optional[ProgressCallback],
        cancel: threading.Event,
        offset: float,
        scale: float,
    ) -> Tuple[Optional[int], str, bool]:
        """Executes one ffmpeg process; returns (returncode, output tail, cancelled)."""
        self.logger.debug(f"FFmpeg command: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                bufsize=1
            )
        except FileNotFoundError:
            return 127, "ffmpeg not found", False

        finished = threading.Event()

        def watch_cancel():
            while not finished.is_set():
                if cancel.wait(self.poll_interval):
                    self.logger.info("Cancellation requested, stopping ffmpeg")
                    process.terminate()
                    try:
                        process.wait(timeout=self.kill_timeout)
                    except subprocess.TimeoutExpired:
                        process.kill()
                    return

        watcher = threading.Thread(target=watch_cancel, daemon=True)
        watcher.start()

        tail: deque = deque(maxlen=20)
        try:
            for line in process.stdout:
                tail.append(line.rstrip())
                match = TIME_REGEX.search(line)
                if match and progress and duration > 0:
                    h, m, s = map(float, match.groups())
                    current_seconds = h * 3600 + m * 60 + s
                    progress(offset + scale * min(current_seconds / duration, 1.0))
            process.wait()
        finally:
            finished.set()
            watcher.join(timeout=1.0)

        return process.returncode, "\n".join(tail), cancel.is_set()
