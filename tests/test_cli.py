"""
Tests for the digislide command-line interface.

open_slide is replaced so the commands run against the in-memory TMA slide.
"""

import json
from types import SimpleNamespace

import pytest
from PIL import Image

from digislide import cli
from digislide.slide import DigitalSlide
from digislide.utils.config import load_config
from digislide.utils.logging import setup_logging


class Handle:
    closed = False

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def quiet_logging():
    yield
    setup_logging(level="WARNING", console=False)


@pytest.fixture
def fake_open(monkeypatch, tma_source):
    handle = Handle()
    opened = []

    def open_slide(args, config):
        opened.append((args, config))
        return DigitalSlide(tma_source, name="tma"), handle

    monkeypatch.setattr(cli, "open_slide", open_slide)
    return SimpleNamespace(handle=handle, opened=opened)


class TestParser:

    def test_detect_arguments(self):
        """Test that detect options parse into typed values."""
        args = cli.create_parser().parse_args(
            ["detect", "slide.svs", "--core-diameter", "1.2", "--strictness", "80",
             "--backend", "openslide", "-o", "/tmp/out"])
        assert args.command == "detect"
        assert args.core_diameter == 1.2
        assert args.strictness == 80
        assert args.radius_tolerance is None
        assert str(args.output_dir) == "/tmp/out"

    def test_core_arguments(self):
        """Test that core options parse with level 0 by default."""
        args = cli.create_parser().parse_args(
            ["core", "1234", "--cores", "c.json", "--id", "3", "-o", "core.png"])
        assert args.core_id == 3
        assert args.level == 0

    def test_unknown_backend(self):
        """Test that an unknown backend name is rejected by argparse."""
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args(["info", "x.svs", "--backend", "bioformats"])

    def test_guess_backend(self, tmp_path):
        """Test that the backend is guessed from the slide argument."""
        existing = tmp_path / "slide.svs"
        existing.write_bytes(b"")
        assert cli._guess_backend("scan.CZI") == "czi"
        assert cli._guess_backend(str(existing)) == "openslide"
        assert cli._guess_backend("1234") == "tepis"


class TestOpenSlide:

    @pytest.fixture
    def czi_calls(self, monkeypatch):
        calls = []

        def from_czi(path, **kwargs):
            calls.append((path, kwargs))
            return SimpleNamespace(source="czi-source")

        monkeypatch.setattr(cli.DigitalSlide, "from_czi", from_czi)
        return calls

    def test_czi_scene_from_config(self, czi_calls):
        """Test that the CZI scene defaults to czi.scene from the config."""
        config = load_config()
        config["czi"]["scene"] = 2
        args = cli.create_parser().parse_args(["info", "scan.czi"])
        slide, handle = cli.open_slide(args, config)
        assert handle == "czi-source"
        assert czi_calls[-1][1]["scene"] == 2
        assert czi_calls[-1][1]["min_level_size"] == config["czi"]["min_level_size"]

    def test_czi_scene_argument_wins(self, czi_calls):
        """Test that --scene overrides the configured scene."""
        config = load_config()
        config["czi"]["scene"] = 2
        args = cli.create_parser().parse_args(["info", "scan.czi", "--scene", "0"])
        cli.open_slide(args, config)
        assert czi_calls[-1][1]["scene"] == 0


class TestCommands:

    def test_no_command_prints_help(self, capsys):
        """Test that running without a command prints usage."""
        assert cli.main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_info(self, fake_open, capsys):
        """Test that info prints the pyramid and releases the slide."""
        assert cli.main(["-q", "info", "tma.svs"]) == 0
        out = capsys.readouterr().out
        assert "Levels: 2" in out
        assert "2000" in out
        assert fake_open.handle.closed

    def test_detect_writes_registry_and_overlay(self, fake_open, tmp_path, capsys):
        """Test that detect writes the core registry and an overlay image."""
        code = cli.main(["-q", "detect", "tma.svs", "--core-diameter", "0.6",
                         "--target-core-diameter-pixels", "10", "-o", str(tmp_path),
                         "--overlay"])
        assert code == 0

        registry = json.loads((tmp_path / "tma_cores.json").read_text())
        assert registry["detection_level"] == 1
        assert len(registry["cores"]) >= 9
        assert registry["parameters"]["core_diameter"] == 0.6

        with Image.open(tmp_path / "tma_cores.png") as img:
            assert img.size == (500, 500)
        assert "Detected" in capsys.readouterr().out

    def test_detect_uses_config_file(self, fake_open, tmp_path):
        """Test that detection parameters are read from digislide.json."""
        (tmp_path / "digislide.json").write_text(json.dumps(
            {"detection": {"core_diameter": 0.6, "target_core_diameter_pixels": 10,
                           "strictness": 100}}))
        code = cli.main(["-q", "detect", "tma.svs", "--config-dir", str(tmp_path),
                         "-o", str(tmp_path)])
        assert code == 0
        registry = json.loads((tmp_path / "tma_cores.json").read_text())
        assert registry["cores"] == []
        assert registry["parameters"]["strictness"] == 100

    def test_core_export(self, fake_open, tmp_path):
        """Test that a detected core is exported at the requested level."""
        cli.main(["-q", "detect", "tma.svs", "--core-diameter", "0.6",
                  "--target-core-diameter-pixels", "10", "-o", str(tmp_path)])
        output = tmp_path / "core1.png"
        code = cli.main(["-q", "core", "tma.svs", "--cores", str(tmp_path / "tma_cores.json"),
                         "--id", "1", "--level", "1", "-o", str(output)])
        assert code == 0
        with Image.open(output) as img:
            assert img.size == (15, 15)

    def test_unknown_core_id_fails(self, fake_open, tmp_path):
        """Test that an unknown core id exits with status 1."""
        cli.main(["-q", "detect", "tma.svs", "--core-diameter", "0.6",
                  "--target-core-diameter-pixels", "10", "-o", str(tmp_path)])
        code = cli.main(["-q", "core", "tma.svs", "--cores", str(tmp_path / "tma_cores.json"),
                         "--id", "999", "-o", str(tmp_path / "x.png")])
        assert code == 1
        assert fake_open.handle.closed

    def test_missing_registry_fails(self, fake_open, tmp_path):
        """Test that a missing registry file exits with status 1."""
        code = cli.main(["-q", "core", "tma.svs", "--cores", str(tmp_path / "none.json"),
                         "--id", "1", "-o", str(tmp_path / "x.png")])
        assert code == 1

    def test_invalid_parameter_fails(self, fake_open, tmp_path):
        """Test that invalid parameters fail before any slide is opened."""
        code = cli.main(["-q", "detect", "tma.svs", "--strictness", "150", "-o", str(tmp_path)])
        assert code == 1
        assert fake_open.opened == []
