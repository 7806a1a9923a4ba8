import pytest
import threading
import yaml
from pathlib import Path
from typing import Dict, List, Optional
from smallmp4.config.models import AppConfig, GeneralConfig
from smallmp4.domain.errors import ProbeError
from smallmp4.domain.models import (
    DeviceInfo,
    EncodeOutcome,
    EncodePlan,
    EncoderChoice,
    HardwareCapabilities,
    VideoMetadata,
)


class FakeProbe:
    """Stands in for FFprobeAdapter; returns fixed metadata or raises ProbeError."""

    def __init__(self, metadata: Optional[VideoMetadata] = None, error: Optional[str] = None):
        self.metadata = metadata
        self.error = error
        self.calls: List[Path] = []

    def probe(self, path: Path) -> VideoMetadata:
        self.calls.append(path)
        if self.error:
            raise ProbeError(self.error, path=str(path))
        return self.metadata


class FakeBackend:
    """
    Stands in for FFmpegAdapter.

    Writes `sizes[n]` bytes on the n-th successful call (last size repeats),
    fails for every encoder listed in `failing`.
    """

    def __init__(self, sizes: Optional[List[int]] = None, failing=(), block: Optional[threading.Event] = None):
        self.sizes = sizes or [1000]
        self.failing = set(failing)
        self.block = block
        self.plans: List[EncodePlan] = []
        self.outputs: List[Path] = []
        self._lock = threading.Lock()

    def encode(self, plan, input_path, output_path, progress=None, cancel=None) -> EncodeOutcome:
        with self._lock:
            self.plans.append(plan)
            self.outputs.append(output_path)
            written = len([p for p in self.plans if p.encoder not in self.failing]) - 1
        output_path.write_bytes(b"\0" * 16)
        if progress:
            progress(0.5)
        if self.block is not None:
            # Simulates a long encode that only ends when cancelled
            while not cancel.wait(0.01):
                if self.block.is_set():
                    break
            if cancel.is_set():
                return EncodeOutcome(success=False, cancelled=True, returncode=-15)
        if plan.encoder in self.failing:
            return EncodeOutcome(success=False, returncode=1, error_message="encoder crashed")
        size = self.sizes[min(written, len(self.sizes) - 1)]
        output_path.write_bytes(b"\0" * size)
        if progress:
            progress(1.0)
        return EncodeOutcome(success=True, returncode=0, output_bytes=size)


@pytest.fixture
def metadata():
    return VideoMetadata(duration_seconds=60.0, width=1280, height=720, source_bitrate_kbps=8000, has_audio=True)


@pytest.fixture
def silent_metadata():
    return VideoMetadata(duration_seconds=60.0, width=1280, height=720, source_bitrate_kbps=8000, has_audio=False)


@pytest.fixture
def software_caps():
    return HardwareCapabilities.software_only()


@pytest.fixture
def nvidia_caps():
    return HardwareCapabilities(
        available_encoders=frozenset({
            EncoderChoice.NVENC_H264, EncoderChoice.NVENC_H265, EncoderChoice.SOFTWARE
        }),
        devices=(DeviceInfo(id=0, name="NVIDIA GeForce RTX 3060", vram_mb=12288,
                            max_concurrent_sessions=1, compute_capability=(8, 6)),),
        preferred_encoder=EncoderChoice.NVENC_H264,
    )


@pytest.fixture
def app_config():
    # Single-pass software keeps fake backend call counts predictable
    return AppConfig(general=GeneralConfig(two_pass_software=False))


@pytest.fixture
def input_file(tmp_path):
    path = tmp_path / "input.mov"
    path.write_bytes(b"\0" * 50_000)
    return path


@pytest.fixture
def config_yaml(tmp_path):
    conf_file = tmp_path / "small-mp4.yaml"
    content: Dict[str, dict] = {
        'general': {
            'target_size_mb': 5,
            'threads': 2,
            'quota_policy': 'queue',
            'preset': 'slow',
        },
        'estimator': {
            'tolerance_mb': 0.25,
        },
    }
    with open(conf_file, 'w') as f:
        yaml.dump(content, f)
    return conf_file


@pytest.fixture
def make_probe():
    return FakeProbe


@pytest.fixture
def make_backend():
    return FakeBackend
