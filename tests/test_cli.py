from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

np = pytest.importorskip("numpy")
pytest.importorskip("PIL.Image")
from PIL import Image  # noqa: E402  # pylint: disable=wrong-import-position

from hdr_jpeg_converter import cli  # noqa: E402  # pylint: disable=wrong-import-position


def _create_sample_image(path: Path, size: tuple[int, int] = (24, 12)) -> Path:
    Image.new("RGB", size, color=(200, 120, 40)).save(path)
    return path


def test_parse_args_defaults(tmp_path: Path):
    args = cli.parse_args([str(tmp_path)])

    assert args.path == tmp_path
    assert args.compression_ratio == pytest.approx(0.7)
    assert args.width == "original"
    assert args.output_dir is None
    assert args.workers == 1
    assert args.timeout is None
    assert args.icc_policy == "retain"
    assert args.no_hdr is False


def test_parse_args_positionals(tmp_path: Path):
    args = cli.parse_args([str(tmp_path), "0.9", "1024", str(tmp_path / "out")])

    assert args.compression_ratio == pytest.approx(0.9)
    assert args.width == "1024"
    assert args.output_dir == tmp_path / "out"


def test_unparseable_compression_ratio_falls_back(tmp_path: Path, caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING, logger="hdr_jpeg_converter"):
        args = cli.parse_args([str(tmp_path), "abc"])

    assert args.compression_ratio == pytest.approx(0.7)
    assert "Could not parse compression ratio" in caplog.text


@pytest.mark.parametrize("flag", [["--workers", "0"], ["--timeout", "0"], ["--icc-policy", "ignore"]])
def test_parse_args_rejects_invalid_options(tmp_path: Path, flag):
    with pytest.raises(SystemExit):
        cli.parse_args([str(tmp_path), *flag])


def test_config_file_supplies_defaults(tmp_path: Path):
    config = tmp_path / "settings.json"
    config.write_text(
        json.dumps({"compression-ratio": 0.5, "width": "640", "workers": 3, "no_progress": "yes"})
    )

    args = cli.parse_args(["--config", str(config), str(tmp_path)])

    assert args.compression_ratio == pytest.approx(0.5)
    assert args.width == "640"
    assert args.workers == 3
    assert args.no_progress is True


def test_command_line_overrides_config(tmp_path: Path):
    config = tmp_path / "settings.json"
    config.write_text(json.dumps({"workers": 3}))

    args = cli.parse_args(["--config", str(config), "--workers", "2", str(tmp_path)])

    assert args.workers == 2


def test_config_file_rejects_unknown_keys(tmp_path: Path):
    config = tmp_path / "settings.json"
    config.write_text(json.dumps({"sharpen": True}))

    with pytest.raises(SystemExit):
        cli.parse_args(["--config", str(config), str(tmp_path)])


def test_yaml_config_file(tmp_path: Path):
    pytest.importorskip("yaml")
    config = tmp_path / "settings.yaml"
    config.write_text("icc-policy: convert\nno-hdr: true\n")

    args = cli.parse_args(["--config", str(config), str(tmp_path)])

    assert args.icc_policy == "convert"
    assert args.no_hdr is True


def test_main_without_path_prints_usage(capsys: pytest.CaptureFixture[str]):
    exit_code = cli.main([])

    assert exit_code == 0
    assert "usage:" in capsys.readouterr().out


def test_main_missing_path_is_fatal(tmp_path: Path, caplog: pytest.LogCaptureFixture):
    missing = tmp_path / "missing"

    with caplog.at_level(logging.ERROR, logger="hdr_jpeg_converter"):
        exit_code = cli.main([str(missing), "--no-progress"])

    assert exit_code == 1
    assert f"The provided path does not exist: {missing}" in caplog.text


def test_main_bad_working_space_is_fatal(tmp_path: Path):
    _create_sample_image(tmp_path / "frame.png")

    exit_code = cli.main([str(tmp_path), "--working-space", str(tmp_path / "nope.icc"), "--no-progress"])

    assert exit_code == 1
    assert not (tmp_path / "converted").exists()


def test_main_converts_directory(tmp_path: Path):
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    _create_sample_image(input_dir / "a.png")
    _create_sample_image(input_dir / "b.tiff")
    (input_dir / "readme.md").write_text("ignored")
    output_dir = tmp_path / "out"

    exit_code = cli.main([str(input_dir), "0.8", "12", str(output_dir), "--no-progress"])

    assert exit_code == 0
    assert sorted(p.name for p in output_dir.iterdir()) == ["a.jpg", "b.jpg"]
    with Image.open(output_dir / "a.jpg") as written:
        assert written.size == (12, 6)


def test_main_partial_failure_still_succeeds(tmp_path: Path):
    _create_sample_image(tmp_path / "good.png")
    (tmp_path / "bad.png").write_bytes(b"garbage")

    exit_code = cli.main([str(tmp_path), "--no-progress", "--workers", "2"])

    assert exit_code == 0
    assert (tmp_path / "converted" / "good.jpg").exists()
    assert not (tmp_path / "converted" / "bad.jpg").exists()


def test_main_all_failures_exit_non_zero(tmp_path: Path):
    (tmp_path / "bad.png").write_bytes(b"garbage")

    exit_code = cli.main([str(tmp_path), "--no-progress"])

    assert exit_code == 1


def test_main_invalid_width_fails_candidates(tmp_path: Path):
    _create_sample_image(tmp_path / "frame.png")

    exit_code = cli.main([str(tmp_path), "0.7", "-20", "--no-progress"])

    assert exit_code == 1
    assert not (tmp_path / "converted" / "frame.jpg").exists()


def test_main_unreadable_directory_is_fatal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
):
    def denied(self):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "iterdir", denied)

    with caplog.at_level(logging.ERROR, logger="hdr_jpeg_converter"):
        exit_code = cli.main([str(tmp_path), "--no-progress"])

    assert exit_code == 1
    assert f"Error reading contents of directory {tmp_path}" in caplog.text


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"no-hdr": "maybe"}, "Invalid boolean for 'no-hdr'"),
        ({"workers": "many"}, "Invalid value for 'workers'"),
        ({"log-level": "LOUD"}, "choose from"),
        (["not", "a", "mapping"], "must contain a mapping"),
    ],
)
def test_config_file_rejects_unusable_values(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], payload, message
):
    config = tmp_path / "settings.json"
    config.write_text(json.dumps(payload))

    with pytest.raises(SystemExit):
        cli.parse_args(["--config", str(config), str(tmp_path)])

    assert message in capsys.readouterr().err


def test_config_file_switches_accept_booleans(tmp_path: Path):
    config = tmp_path / "settings.json"
    config.write_text(json.dumps({"no_hdr": True, "no-progress": "off", "output-dir": str(tmp_path / "out")}))

    args = cli.parse_args(["--config", str(config), str(tmp_path)])

    assert args.no_hdr is True
    assert args.no_progress is False
    assert args.output_dir == tmp_path / "out"
