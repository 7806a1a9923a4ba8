import json
import pytest
from pathlib import Path
from unittest.mock import patch
from typer.testing import CliRunner
from smallmp4 import main
from smallmp4.domain.errors import CompressionCancelled, SizeOvershootError, ProbeError
from smallmp4.domain.models import MB, EncoderChoice
from smallmp4.infrastructure.housekeeping import HousekeepingService
from smallmp4.pipeline.orchestrator import BatchItem, BatchJob

runner = CliRunner()


def _json(result):
    # stdout may carry log lines ahead of the JSON document on older click versions
    text = result.stdout
    data, _ = json.JSONDecoder().raw_decode(text, text.index("{"))
    return data


@pytest.fixture
def patched(metadata, software_caps, make_probe, make_backend):
    """Replaces ffprobe, ffmpeg and hardware detection with fakes."""
    backend = make_backend(sizes=[5000])
    with patch("smallmp4.main.FFprobeAdapter", return_value=make_probe(metadata)), \
         patch("smallmp4.main.FFmpegAdapter", return_value=backend), \
         patch.object(main.registry, "detect", return_value=software_caps) as detect:
        yield backend, detect


def test_list_hw_json(patched):
    result = runner.invoke(main.app, ["list-hw", "--json"])
    assert result.exit_code == 0
    data = _json(result)
    assert data["preferred_encoder"] == "software"
    assert [e["id"] for e in data["encoders"]] == ["software"]
    assert data["devices"] == []


def test_list_hw_table(patched, nvidia_caps):
    _, detect = patched
    detect.return_value = nvidia_caps
    result = runner.invoke(main.app, ["list-hw", "--refresh"], env={"COLUMNS": "200"})
    assert result.exit_code == 0
    assert "nvenc-h264" in result.stdout
    assert "RTX 3060" in result.stdout
    detect.assert_called_with(refresh=True)


def test_compress_json_summary(patched, input_file):
    result = runner.invoke(main.app, ["compress", str(input_file), "--size", "10mb", "--json"])
    assert result.exit_code == 0, result.output
    data = _json(result)
    item = data["results"][0]
    assert data["succeeded"] == 1
    assert item["status"] == "completed"
    assert item["encoder"] == "software"
    assert item["output_bytes"] <= item["target_bytes"] == 10 * MB
    output = Path(item["output"])
    assert output.name == "input_compressed.mp4"
    assert output.stat().st_size == 5000


def test_compress_explicit_output(patched, input_file, tmp_path):
    target = tmp_path / "small.mp4"
    result = runner.invoke(main.app, ["compress", str(input_file), "-o", str(target), "--force-software"])
    assert result.exit_code == 0, result.output
    assert target.exists()
    backend, detect = patched
    assert not detect.called


def test_compress_applies_preset_and_auto_quality(patched, input_file):
    backend, _ = patched
    result = runner.invoke(main.app, ["compress", str(input_file), "--preset", "slow", "--auto-quality", "--json"])
    assert result.exit_code == 0, result.output
    plan = backend.plans[0]
    assert plan.preset.value == "slow"
    assert plan.quality_param is not None


def test_compress_infeasible_target_could_not_start(patched, input_file):
    result = runner.invoke(main.app, ["compress", str(input_file), "--size", "1mb", "--json"])
    assert result.exit_code == main.EXIT_COULD_NOT_START
    data = _json(result)
    assert data["results"][0]["error_kind"] == "InfeasibleTargetError"


def test_compress_unavailable_encoder(patched, input_file):
    result = runner.invoke(main.app, ["compress", str(input_file), "--encoder", "nvenc-h264", "--json"])
    assert result.exit_code == main.EXIT_COULD_NOT_START
    data = _json(result)
    assert data["results"][0]["error_kind"] == "EncoderUnavailableError"


def test_compress_all_encoders_failing(patched, input_file):
    backend, _ = patched
    backend.failing = {EncoderChoice.SOFTWARE}
    result = runner.invoke(main.app, ["compress", str(input_file), "--json"])
    assert result.exit_code == main.EXIT_SIZE_NOT_GUARANTEED
    assert not (input_file.parent / "input_compressed.mp4").exists()


def test_compress_rejects_unknown_encoder(patched, input_file):
    result = runner.invoke(main.app, ["compress", str(input_file), "--encoder", "quantum"])
    assert result.exit_code == 2


def test_compress_rejects_bad_size(patched, input_file):
    result = runner.invoke(main.app, ["compress", str(input_file), "--size", "lots"])
    assert result.exit_code == 2


def test_compress_bad_config(patched, input_file, tmp_path):
    config = tmp_path / "bad.yaml"
    config.write_text("general:\n  safety_margin: 7\n")
    result = runner.invoke(main.app, ["compress", str(input_file), "--config", str(config)])
    assert result.exit_code == main.EXIT_COULD_NOT_START


def test_exit_code_for():
    job = BatchJob(input_path=Path("a.mp4"), output_path=Path("b.mp4"))
    started = BatchItem(job=job, error=SizeOvershootError(10, 20, 2))
    not_started = BatchItem(job=job, error=ProbeError("bad"))
    cancelled = BatchItem(job=job, error=CompressionCancelled("stop"), cancelled=True)
    crashed = BatchItem(job=job, error=RuntimeError("boom"))

    assert main.exit_code_for([]) == main.EXIT_OK
    assert main.exit_code_for([crashed]) == main.EXIT_UNEXPECTED
    assert main.exit_code_for([not_started]) == main.EXIT_COULD_NOT_START
    assert main.exit_code_for([not_started, started]) == main.EXIT_SIZE_NOT_GUARANTEED
    assert main.exit_code_for([started, cancelled]) == main.EXIT_CANCELLED


def test_build_jobs_gives_same_stem_inputs_distinct_outputs(tmp_path):
    out_dir = tmp_path / "out"
    inputs = [tmp_path / "a" / "clip.mov", tmp_path / "b" / "clip.mov"]
    jobs = main._build_jobs(inputs, out_dir, HousekeepingService())

    outputs = [job.output_path for job in jobs]
    assert len(set(outputs)) == 2
    assert all(path.parent == out_dir for path in outputs)
