import io
import pytest
from pathlib import Path
from rich.console import Console
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.ui.manager import UIManager
from smallmp4.domain.events import (
    CompressionCompleted,
    CompressionFailed,
    EncoderFallback,
    PhaseChanged,
    ProgressUpdated,
)
from smallmp4.domain.models import CompressionResult, EncoderChoice, SessionPhase


@pytest.fixture
def manager():
    bus = EventBus()
    console = Console(file=io.StringIO(), width=120)
    return UIManager(bus, console=console)


def test_ui_manager_tracks_progress(manager):
    path = Path("test.mp4")
    manager.bus.publish(PhaseChanged(session_id="s1", input_path=path,
                                     previous=SessionPhase.CREATED, phase=SessionPhase.PROBING))
    manager.bus.publish(ProgressUpdated(session_id="s1", input_path=path, fraction=0.25))

    task = manager.tasks["s1"]
    assert manager.progress.tasks[task].completed == 0.25
    assert manager.progress.tasks[task].fields["phase"] == "probing"


def test_ui_manager_records_results(manager):
    path = Path("test.mp4")
    result = CompressionResult(
        input_path=path, output_path=Path("test_compressed.mp4"), input_bytes=1000,
        output_bytes=100, target_bytes=200, encoder=EncoderChoice.SOFTWARE, video_bitrate_kbps=500,
    )
    manager.bus.publish(CompressionCompleted(session_id="s1", input_path=path, result=result))
    manager.bus.publish(CompressionFailed(session_id="s2", input_path=Path("bad.mp4"),
                                          error_kind="ProbeError", error_message="No video stream",
                                          could_not_start=True))

    assert manager.completed == [result]
    assert manager.failed == {"bad.mp4": "ProbeError: No video stream"}
    assert manager.progress.tasks[manager.tasks["s1"]].completed == 1.0


def test_ui_manager_reports_fallback(manager):
    manager.bus.publish(EncoderFallback(session_id="s1", input_path=Path("a.mp4"),
                                        failed_encoder=EncoderChoice.NVENC_H264,
                                        next_encoder=EncoderChoice.SOFTWARE, reason="exit code 1"))
    assert "falling back to software" in manager.messages[0]
    assert "falling back to software" in manager.console.file.getvalue()
