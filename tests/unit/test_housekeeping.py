from pathlib import Path
from smallmp4.infrastructure.housekeeping import HousekeepingService


def test_default_output_path_uses_first_free_suffix(tmp_path):
    source = tmp_path / "holiday.mov"
    source.write_bytes(b"x")
    service = HousekeepingService()

    assert service.default_output_path(source) == tmp_path / "holiday_compressed.mp4"
    (tmp_path / "holiday_compressed.mp4").write_bytes(b"x")
    assert service.default_output_path(source) == tmp_path / "holiday_small.mp4"


def test_default_output_path_numbers_when_all_taken(tmp_path):
    source = tmp_path / "clip.mp4"
    for suffix in ("_compressed", "_small", "_squeezed", "_compact"):
        (tmp_path / f"clip{suffix}.mp4").write_bytes(b"x")
    (tmp_path / "clip_compressed_2.mp4").write_bytes(b"x")
    assert HousekeepingService().default_output_path(source) == tmp_path / "clip_compressed_3.mp4"


def test_default_output_path_in_other_directory(tmp_path):
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    path = HousekeepingService().default_output_path(tmp_path / "a.mkv", out_dir)
    assert path == out_dir / "a_compressed.mp4"


def test_temp_path():
    assert HousekeepingService().temp_path_for(Path("/x/out.mp4")) == Path("/x/out.mp4.tmp")


def test_cleanup_temp_files(tmp_path):
    (tmp_path / "a.mp4.tmp").write_bytes(b"x")
    (tmp_path / "b.mp4.tmp").write_bytes(b"x")
    (tmp_path / "keep.mp4").write_bytes(b"x")
    (tmp_path / "notes.tmp").write_bytes(b"x")

    removed = HousekeepingService().cleanup_temp_files(tmp_path)

    assert removed == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["keep.mp4", "notes.tmp"]


def test_cleanup_missing_directory(tmp_path):
    assert HousekeepingService().cleanup_temp_files(tmp_path / "missing") == 0


def test_discard(tmp_path):
    partial = tmp_path / "out.mp4.tmp"
    partial.write_bytes(b"x")
    service = HousekeepingService()
    assert service.discard(partial)
    assert not partial.exists()
    assert not service.discard(partial)


def test_default_output_path_skips_names_taken_in_batch(tmp_path):
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    service = HousekeepingService()
    taken = set()

    first = service.default_output_path(tmp_path / "a" / "clip.mov", out_dir, taken)
    second = service.default_output_path(tmp_path / "b" / "clip.mov", out_dir, taken)

    assert first == out_dir / "clip_compressed.mp4"
    assert second == out_dir / "clip_small.mp4"
    assert taken == {first, second}
