import re
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

MB = 1024 * 1024
KB = 1024
PRESET_SIZES_MB: Tuple[int, ...] = (1, 5, 10, 30, 50)


class EncoderFamily(str, Enum):
    NVIDIA = "NVIDIA"
    AMD = "AMD"
    INTEL = "Intel"
    VAAPI = "VAAPI"
    VIDEOTOOLBOX = "VideoToolbox"
    SOFTWARE = "Software"


# slug -> (display name, ffmpeg codec, family, speed multiplier, memory MB, efficiency)
_ENCODER_TABLE: Dict[str, Tuple[str, str, EncoderFamily, float, int, float]] = {
    "nvenc-h264": ("NVIDIA NVENC H.264", "h264_nvenc", EncoderFamily.NVIDIA, 8.0, 512, 0.85),
    "nvenc-h265": ("NVIDIA NVENC H.265/HEVC", "hevc_nvenc", EncoderFamily.NVIDIA, 8.0, 512, 0.90),
    "nvenc-av1": ("NVIDIA NVENC AV1", "av1_nvenc", EncoderFamily.NVIDIA, 6.0, 640, 0.95),
    "vce-h264": ("AMD VCE H.264", "h264_amf", EncoderFamily.AMD, 5.5, 256, 0.80),
    "vce-h265": ("AMD VCE H.265/HEVC", "hevc_amf", EncoderFamily.AMD, 5.5, 256, 0.85),
    "qsv-h264": ("Intel QuickSync H.264", "h264_qsv", EncoderFamily.INTEL, 7.0, 256, 0.82),
    "qsv-h265": ("Intel QuickSync H.265/HEVC", "hevc_qsv", EncoderFamily.INTEL, 7.0, 256, 0.87),
    "qsv-av1": ("Intel QuickSync AV1", "av1_qsv", EncoderFamily.INTEL, 5.0, 320, 0.92),
    "vaapi": ("VAAPI (Linux)", "h264_vaapi", EncoderFamily.VAAPI, 4.0, 128, 0.80),
    "videotoolbox": ("VideoToolbox (macOS)", "h264_videotoolbox", EncoderFamily.VIDEOTOOLBOX, 6.0, 256, 0.83),
    "software": ("Software (CPU)", "libx264", EncoderFamily.SOFTWARE, 1.0, 256, 1.00),
}


class EncoderChoice(str, Enum):
    """Closed set of encoder variants; the value is the CLI slug."""
    NVENC_H264 = "nvenc-h264"
    NVENC_H265 = "nvenc-h265"
    NVENC_AV1 = "nvenc-av1"
    VCE_H264 = "vce-h264"
    VCE_H265 = "vce-h265"
    QSV_H264 = "qsv-h264"
    QSV_H265 = "qsv-h265"
    QSV_AV1 = "qsv-av1"
    VAAPI = "vaapi"
    VIDEOTOOLBOX = "videotoolbox"
    SOFTWARE = "software"

    @property
    def display_name(self) -> str:
        return _ENCODER_TABLE[self.value][0]

    @property
    def ffmpeg_codec(self) -> str:
        return _ENCODER_TABLE[self.value][1]

    @property
    def family(self) -> EncoderFamily:
        return _ENCODER_TABLE[self.value][2]

    @property
    def speed_multiplier(self) -> float:
        return _ENCODER_TABLE[self.value][3]

    @property
    def relative_memory_mb(self) -> int:
        return _ENCODER_TABLE[self.value][4]

    @property
    def efficiency(self) -> float:
        """Bits needed by the software reference divided by bits needed by this encoder."""
        return _ENCODER_TABLE[self.value][5]

    @property
    def is_hardware(self) -> bool:
        return self is not EncoderChoice.SOFTWARE

    @classmethod
    def priority_order(cls) -> List["EncoderChoice"]:
        """Hardware first by speed multiplier (declaration order breaks ties), Software last."""
        members = list(cls)
        hardware = [e for e in members if e.is_hardware]
        hardware.sort(key=lambda e: (-e.speed_multiplier, members.index(e)))
        return hardware + [cls.SOFTWARE]


class EncoderPreset(str, Enum):
    ULTRAFAST = "ultrafast"
    FASTER = "faster"
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"
    SLOWER = "slower"
    HIGHEST = "highest"

    @property
    def nvenc(self) -> str:
        return f"p{list(EncoderPreset).index(self) + 1}"

    @property
    def software(self) -> str:
        return "veryslow" if self is EncoderPreset.HIGHEST else self.value

    @property
    def time_factor(self) -> float:
        return {
            EncoderPreset.ULTRAFAST: 0.5,
            EncoderPreset.FASTER: 0.7,
            EncoderPreset.FAST: 0.85,
            EncoderPreset.MEDIUM: 1.0,
            EncoderPreset.SLOW: 1.3,
            EncoderPreset.SLOWER: 1.8,
            EncoderPreset.HIGHEST: 2.5,
        }[self]


class VideoMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration_seconds: float = Field(gt=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    source_bitrate_kbps: int = Field(default=0, ge=0)
    has_audio: bool = False
    fps: float = Field(default=30.0, gt=0)
    codec: str = "unknown"

    @property
    def pixels(self) -> int:
        return self.width * self.height


_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(b|kb|k|mb|m|gb|g)?\s*$", re.IGNORECASE)
_UNIT_BYTES = {None: 1, "b": 1, "k": KB, "kb": KB, "m": MB, "mb": MB, "g": 1024 * MB, "gb": 1024 * MB}


class TargetSize(BaseModel):
    """Output size ceiling: one of the presets or an explicit byte count."""
    model_config = ConfigDict(frozen=True)

    size_bytes: int = Field(gt=0)

    @classmethod
    def preset(cls, megabytes: int) -> "TargetSize":
        if megabytes not in PRESET_SIZES_MB:
            raise ValueError(f"{megabytes} MB is not a preset; choose one of {PRESET_SIZES_MB}")
        return cls(size_bytes=megabytes * MB)

    @classmethod
    def parse(cls, text: Union[str, int]) -> "TargetSize":
        """Accepts '10mb', '750KB', '1.5MB' or a plain byte count."""
        if isinstance(text, int):
            return cls(size_bytes=text)
        match = _SIZE_RE.match(text)
        if not match:
            raise ValueError(f"Invalid size: {text!r}")
        number, unit = match.groups()
        return cls(size_bytes=int(float(number) * _UNIT_BYTES[unit.lower() if unit else None]))

    @property
    def megabytes(self) -> float:
        return self.size_bytes / MB

    @property
    def is_preset(self) -> bool:
        return self.size_bytes % MB == 0 and self.size_bytes // MB in PRESET_SIZES_MB

    def __str__(self) -> str:
        if self.size_bytes % MB == 0:
            return f"{self.size_bytes // MB} MB"
        return f"{self.megabytes:.2f} MB"


class DeviceInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    vram_mb: int = 0
    max_concurrent_sessions: int = Field(default=1, ge=1)
    compute_capability: Tuple[int, int] = (0, 0)


class HardwareCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    available_encoders: FrozenSet[EncoderChoice] = Field(default_factory=lambda: frozenset({EncoderChoice.SOFTWARE}))
    devices: Tuple[DeviceInfo, ...] = ()
    preferred_encoder: Optional[EncoderChoice] = None

    @classmethod
    def software_only(cls) -> "HardwareCapabilities":
        return cls(preferred_encoder=EncoderChoice.SOFTWARE)

    def ordered_encoders(self) -> List[EncoderChoice]:
        return [e for e in EncoderChoice.priority_order() if e in self.available_encoders]

    def devices_for(self, encoder: EncoderChoice) -> List[DeviceInfo]:
        """Enumerated devices that can host the encoder (only CUDA devices are enumerated)."""
        if encoder.family is EncoderFamily.NVIDIA:
            return list(self.devices)
        return []


class EncodePlan(BaseModel):
    """Fully resolved parameters for one encode attempt."""
    model_config = ConfigDict(frozen=True)

    video_bitrate_kbps: int = Field(gt=0)
    audio_bitrate_kbps: int = Field(default=128, ge=0)
    quality_param: Optional[int] = None
    encoder: EncoderChoice
    hw_device_id: Optional[int] = None
    preset: EncoderPreset = EncoderPreset.MEDIUM
    two_pass: bool = False
    duration_seconds: float = Field(gt=0)
    target_bytes: int = Field(gt=0)
    container_overhead: float = Field(default=0.02, ge=0)

    @property
    def theoretical_max_bytes(self) -> float:
        bits = (self.video_bitrate_kbps + self.audio_bitrate_kbps) * 1000 * self.duration_seconds
        return bits / 8 * (1 + self.container_overhead)

    @model_validator(mode="after")
    def _check_size_guarantee(self) -> "EncodePlan":
        if self.theoretical_max_bytes > self.target_bytes:
            raise ValueError(
                f"Plan would allow {self.theoretical_max_bytes:.0f} bytes, above target {self.target_bytes}"
            )
        return self


class EncoderPreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    encoder: Optional[EncoderChoice] = None  # None means auto
    force_software: bool = False
    auto_quality: bool = False

    @property
    def is_auto(self) -> bool:
        return self.encoder is None


class SessionPhase(str, Enum):
    CREATED = "CREATED"
    PROBING = "PROBING"
    PLANNING = "PLANNING"
    ENCODING = "ENCODING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.COMPLETED, SessionPhase.FAILED, SessionPhase.CANCELLED)


class EncodeOutcome(BaseModel):
    """What the transcoding backend reports back for one attempt."""
    success: bool
    output_bytes: int = 0
    returncode: Optional[int] = None
    cancelled: bool = False
    error_message: Optional[str] = None


class CompressionResult(BaseModel):
    input_path: Path
    output_path: Path
    input_bytes: int
    output_bytes: int
    target_bytes: int
    encoder: EncoderChoice
    video_bitrate_kbps: int
    quality_param: Optional[int] = None
    attempts: int = 1
    corrective_retries: int = 0
    elapsed_seconds: float = 0.0

    @property
    def compression_ratio(self) -> float:
        if self.output_bytes == 0:
            return 0.0
        return self.input_bytes / self.output_bytes

    def summary(self) -> Dict[str, object]:
        return {
            "input": str(self.input_path),
            "output": str(self.output_path),
            "input_bytes": self.input_bytes,
            "output_bytes": self.output_bytes,
            "target_bytes": self.target_bytes,
            "encoder": self.encoder.value,
            "hardware_accelerated": self.encoder.is_hardware,
            "video_bitrate_kbps": self.video_bitrate_kbps,
            "quality_param": self.quality_param,
            "attempts": self.attempts,
            "corrective_retries": self.corrective_retries,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }
