import glob
import logging
import platform
import re
import subprocess
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple
from smallmp4.domain.models import DeviceInfo, EncoderChoice, HardwareCapabilities

logger = logging.getLogger(__name__)

FamilyFinding = Tuple[List[EncoderChoice], List[DeviceInfo]]

NVIDIA_SMI_QUERY = [
    "nvidia-smi",
    "--query-gpu=index,name,compute_cap,memory.total",
    "--format=csv,noheader,nounits",
]

RECOMMENDATIONS: Dict[EncoderChoice, List[str]] = {
    EncoderChoice.NVENC_H264: [
        "Preset p4 balances quality and speed",
        "VBR with multipass gives the tightest size control",
    ],
    EncoderChoice.NVENC_H265: [
        "HEVC compresses better than H.264 at the same bitrate",
        "Recommended for the smallest targets",
    ],
    EncoderChoice.NVENC_AV1: ["Requires an Ada Lovelace (RTX 40) or newer GPU"],
    EncoderChoice.VIDEOTOOLBOX: ["Native macOS hardware acceleration"],
    EncoderChoice.VAAPI: ["Uses /dev/dri/renderD128; quality depends on the driver"],
    EncoderChoice.SOFTWARE: [
        "Most compatible but slowest option",
        "Uses two-pass encoding for the most accurate size",
    ],
}


def encoder_recommendations(encoder: EncoderChoice) -> List[str]:
    return RECOMMENDATIONS.get(encoder, ["Hardware-accelerated encoding available"])


def _run(cmd: List[str], timeout: float = 10.0) -> Optional[str]:
    """Runs a detection command; None when the tool is missing, fails or hangs."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Detection command {cmd[0]} unavailable: {e}")
        return None
    if result.returncode != 0:
        logger.debug(f"Detection command {cmd[0]} exited with {result.returncode}")
        return None
    return result.stdout


def parse_hwaccels(output: Optional[str]) -> Set[str]:
    """Parses `ffmpeg -hwaccels` output into method names."""
    methods: Set[str] = set()
    if not output:
        return methods
    found_header = False
    for line in output.splitlines():
        if "Hardware acceleration methods" in line:
            found_header = True
            continue
        if found_header and line.strip():
            methods.add(line.strip())
    return methods


def parse_encoders(output: Optional[str]) -> Set[str]:
    """Parses `ffmpeg -encoders` output into encoder names (e.g. h264_nvenc)."""
    names: Set[str] = set()
    if not output:
        return names
    for line in output.splitlines():
        parts = line.split()
        # Encoder rows look like ' V....D h264_nvenc   NVIDIA NVENC H.264 encoder'
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS" and parts[1] != "=":
            names.add(parts[1])
    return names


def estimate_max_sessions(compute_capability: Tuple[int, int]) -> int:
    major = compute_capability[0]
    if major >= 8:
        return 5
    if major == 7:
        return 3
    if major == 6:
        return 2
    return 1


def parse_nvidia_smi(output: str) -> List[DeviceInfo]:
    devices = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 4:
            logger.warning(f"Unexpected nvidia-smi output format: {line}")
            continue
        try:
            major, _, minor = parts[2].partition(".")
            capability = (int(major), int(minor or 0))
        except ValueError:
            capability = (0, 0)
        try:
            vram = int(float(parts[3]))
        except ValueError:
            vram = 0
        devices.append(DeviceInfo(
            id=int(parts[0]),
            name=parts[1],
            vram_mb=vram,
            compute_capability=capability,
            max_concurrent_sessions=estimate_max_sessions(capability),
        ))
    return devices


def nvenc_encoders_for(devices: List[DeviceInfo]) -> List[EncoderChoice]:
    """NVENC codecs supported by the best NVENC-capable device (Pascal or newer)."""
    capable = [d.compute_capability for d in devices if d.compute_capability >= (6, 0)]
    if not capable:
        return []
    best = max(capable)
    encoders = [EncoderChoice.NVENC_H264, EncoderChoice.NVENC_H265]
    if best >= (8, 9):
        encoders.append(EncoderChoice.NVENC_AV1)
    return encoders


class HardwareRegistry:
    """Detects hardware encoders once and caches the result for the process."""

    def __init__(self, system: Optional[str] = None, runner: Callable[..., Optional[str]] = _run):
        self.system = system or platform.system()
        self._runner = runner
        self._lock = threading.Lock()
        self._capabilities: Optional[HardwareCapabilities] = None

    def detect(self, refresh: bool = False) -> HardwareCapabilities:
        with self._lock:
            if self._capabilities is None or refresh:
                self._capabilities = self._detect()
            return self._capabilities

    def _detect(self) -> HardwareCapabilities:
        logger.info("Starting hardware acceleration detection")
        hwaccels = parse_hwaccels(self._runner(["ffmpeg", "-hide_banner", "-hwaccels"]))
        ffmpeg_encoders = parse_encoders(self._runner(["ffmpeg", "-hide_banner", "-encoders"]))
        logger.info(f"FFmpeg hardware accelerations: {sorted(hwaccels)}")

        probes = [
            ("NVIDIA", self._probe_nvidia),
            ("AMD", self._probe_amd),
            ("Intel", self._probe_intel),
            ("VAAPI", self._probe_vaapi),
            ("VideoToolbox", self._probe_videotoolbox),
        ]

        available: Set[EncoderChoice] = {EncoderChoice.SOFTWARE}
        devices: List[DeviceInfo] = []
        for name, probe in probes:
            try:
                encoders, found_devices = probe(hwaccels, ffmpeg_encoders)
            except Exception as e:
                logger.warning(f"{name} detection failed: {e}")
                continue
            # An encoder counts only when the local ffmpeg build ships it
            encoders = [e for e in encoders if not ffmpeg_encoders or e.ffmpeg_codec in ffmpeg_encoders]
            if encoders:
                logger.info(f"{name} detection successful: {[e.value for e in encoders]}")
            available.update(encoders)
            devices.extend(found_devices)

        hardware = [e for e in EncoderChoice.priority_order() if e in available and e.is_hardware]
        preferred = hardware[0] if hardware else EncoderChoice.SOFTWARE

        capabilities = HardwareCapabilities(
            available_encoders=frozenset(available),
            devices=tuple(devices),
            preferred_encoder=preferred,
        )
        logger.info(
            f"Hardware detection complete. Available: {[e.value for e in capabilities.ordered_encoders()]}, "
            f"preferred: {preferred.value}"
        )
        return capabilities

    def _gpu_lines(self) -> List[str]:
        """Display adapter descriptions, lower-cased, for the current platform."""
        if self.system == "Linux":
            output = self._runner(["lspci"])
            return [
                line.lower() for line in (output or "").splitlines()
                if any(k in line.lower() for k in ("vga", "display", "3d"))
            ]
        if self.system == "Windows":
            output = self._runner(["wmic", "path", "win32_VideoController", "get", "name", "/format:list"])
            return [line.lower() for line in (output or "").splitlines() if line.strip()]
        if self.system == "Darwin":
            output = self._runner(["system_profiler", "SPDisplaysDataType"])
            return [line.lower() for line in (output or "").splitlines() if line.strip()]
        return []

    def _probe_nvidia(self, hwaccels: Set[str], ffmpeg_encoders: Set[str]) -> FamilyFinding:
        if "cuda" not in hwaccels:
            return [], []
        output = self._runner(NVIDIA_SMI_QUERY)
        if output is None:
            return [], []
        devices = parse_nvidia_smi(output)
        return nvenc_encoders_for(devices), devices

    def _probe_amd(self, hwaccels: Set[str], ffmpeg_encoders: Set[str]) -> FamilyFinding:
        if "h264_amf" not in ffmpeg_encoders:
            return [], []
        if not any("amd" in line or "radeon" in line or "ati " in line for line in self._gpu_lines()):
            return [], []
        encoders = [EncoderChoice.VCE_H264]
        if "hevc_amf" in ffmpeg_encoders:
            encoders.append(EncoderChoice.VCE_H265)
        return encoders, []

    def _probe_intel(self, hwaccels: Set[str], ffmpeg_encoders: Set[str]) -> FamilyFinding:
        if "qsv" not in hwaccels and "h264_qsv" not in ffmpeg_encoders:
            return [], []
        intel_lines = [line for line in self._gpu_lines() if "intel" in line]
        if not intel_lines:
            return [], []
        encoders = [EncoderChoice.QSV_H264, EncoderChoice.QSV_H265]
        # AV1 encode only on Arc discrete GPUs
        if any(re.search(r"\barc\b", line) for line in intel_lines):
            encoders.append(EncoderChoice.QSV_AV1)
        return encoders, []

    def _probe_vaapi(self, hwaccels: Set[str], ffmpeg_encoders: Set[str]) -> FamilyFinding:
        if self.system != "Linux" or "vaapi" not in hwaccels:
            return [], []
        if not glob.glob("/dev/dri/renderD*"):
            return [], []
        return [EncoderChoice.VAAPI], []

    def _probe_videotoolbox(self, hwaccels: Set[str], ffmpeg_encoders: Set[str]) -> FamilyFinding:
        if self.system != "Darwin":
            return [], []
        if "videotoolbox" not in hwaccels and "h264_videotoolbox" not in ffmpeg_encoders:
            return [], []
        return [EncoderChoice.VIDEOTOOLBOX], []
