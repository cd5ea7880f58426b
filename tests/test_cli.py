"""
Tests for the command-line interface.

Tests cover:
- Argument parsing into a StackConfig
- The inspect, analyze, thresh-test and stack commands
- Exit codes on errors

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import imageio.v3 as iio
import numpy as np
import pytest

from solstack.cli import config_from_args, create_parser, main
from solstack.cli_output import print_outputs, print_rejections
from solstack.config import DropKernel, LimbStage, MountKind, Target


@pytest.fixture
def capture(disk_frame, ser_writer):
    """Small drifting-disk capture."""
    return ser_writer([disk_frame(cx=50.0 + i, cy=50.0) for i in range(4)])


class TestParser:
    """Tests for argument parsing."""

    def test_stack_defaults(self):
        """Defaults map onto the configuration defaults."""
        args = create_parser().parse_args(["stack", "sun.ser"])
        config = config_from_args(args)
        assert config.light == "sun.ser"
        assert config.mount is MountKind.ALTAZ
        assert config.target is Target.SUN
        assert config.drop_kernel is DropKernel.SQUARE
        assert config.limb_stage is LimbStage.OFF
        assert config.debayer is True
        assert config.max_frames == 5000

    def test_stack_options(self):
        """Options are carried into the configuration."""
        args = create_parser().parse_args([
            "stack", "moon.ser", "--mount", "equatorial", "--target", "moon",
            "--drizzle", "1.5", "--kernel", "point", "--pixfrac", "0.6",
            "--limb", "post-stack", "--top", "20", "--no-debayer",
            "--crop-width", "800", "--offset-x", "-10", "--workers", "3",
        ])
        config = config_from_args(args)
        assert config.mount is MountKind.EQUATORIAL
        assert config.target is Target.MOON
        assert config.drizzle_scale == 1.5
        assert config.drop_kernel is DropKernel.POINT
        assert config.pixfrac == 0.6
        assert config.limb_stage is LimbStage.POST_STACK
        assert config.top_percentage == 20.0
        assert config.debayer is False
        assert (config.crop_width, config.horiz_offset) == (800, -10)
        assert config.workers == 3

    def test_invalid_choice(self):
        """Unknown mounts are rejected by the parser."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["stack", "sun.ser", "--mount", "dobson"])


class TestCommands:
    """Tests for the CLI commands."""

    def test_no_command(self):
        """Without a command the help is printed and the exit code is 1."""
        assert main([]) == 1

    def test_inspect(self, capture, capsys):
        """inspect prints the header fields."""
        assert main(["inspect", str(capture)]) == 0
        out = capsys.readouterr().out
        assert "100x100" in out
        assert "MONO" in out

    def test_inspect_missing_file(self, tmp_path):
        """A missing file exits with code 1."""
        assert main(["inspect", str(tmp_path / "missing.ser")]) == 1

    def test_analyze(self, capture, capsys):
        """analyze summarizes the quality of every frame."""
        assert main(["analyze", str(capture), "-q", "--sma", "2"]) == 0
        assert "Frames scored" in capsys.readouterr().out

    def test_thresh_test(self, capture, tmp_path):
        """thresh-test writes a binary mask of the first frame."""
        out = tmp_path / "mask.png"
        assert main(["thresh-test", str(capture), "--threshold", "500", "--out", str(out)]) == 0
        mask = iio.imread(out)
        assert set(np.unique(mask)) == {0, 255}

    def test_stack(self, capture, tmp_path):
        """stack writes the image next to the requested output."""
        out = tmp_path / "result.fits"
        code = main([
            "stack", str(capture), "--mount", "equatorial", "--reference", "first",
            "--out", str(out), "--workers", "1", "-q",
        ])
        assert code == 0
        assert out.exists()
        assert (tmp_path / "result_provenance.json").exists()

    def test_stack_configuration_error(self, capture):
        """Configuration errors exit with code 1."""
        assert main(["stack", str(capture), "--lat", "120", "-q"]) == 1

    def test_stack_without_timestamps(self, disk_frame, ser_writer):
        """An alt-az run on a capture without timestamps fails cleanly."""
        path = ser_writer([disk_frame()], name="nostamp.ser", timestamps=None)
        assert main(["stack", str(path), "-q"]) == 1


class TestOutputHelpers:
    """Tests for the colored summary printers."""

    def test_rejections_sorted_by_count(self, capsys):
        """The most frequent reason comes first with its share."""
        print_rejections({"centroid_not_found": 1, "low_quality_score": 3}, total=8)
        lines = capsys.readouterr().out.splitlines()
        assert "low_quality_score" in lines[0]
        assert "(37.5%)" in lines[0]
        assert "centroid_not_found" in lines[1]

    def test_no_rejection(self, capsys):
        """An empty tally prints a single success line."""
        print_rejections({}, total=5)
        assert "No frame rejected" in capsys.readouterr().out

    def test_outputs_image_first(self, capsys):
        """The stacked image is listed before the reports."""
        print_outputs({"report": "a_report.md", "image": "a.tif", "provenance": "a.json"})
        lines = capsys.readouterr().out.splitlines()
        assert "a.tif" in lines[0]
        assert "a.json" in lines[1]
