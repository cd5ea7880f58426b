"""
Tests for the report and utils modules.

Tests cover:
- Provenance JSON and Markdown report contents
- Output file naming
- Intensity normalization and duration formatting

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import json
import math
from pathlib import Path

import numpy as np
import pytest

from solstack.config import FrameScore, RejectedFrame, RejectionReason, StackConfig, StackResult
from solstack.report import build_provenance, write_all_reports
from solstack.utils import assemble_output_filename, format_duration, normalize_unit, to_uint16


@pytest.fixture
def result():
    """A small, fully populated stacking result."""
    config = StackConfig(light="/data/sun.ser", mount="altaz", target="sun")
    return StackResult(
        source="/data/sun.ser",
        total_frames=4,
        kept=[2, 0],
        rejected=[
            RejectedFrame(3, RejectionReason.OUTSIDE_TOP_PERCENTAGE, "score=1.0"),
            RejectedFrame(1, RejectionReason.CENTROID_NOT_FOUND, "Too few illuminated pixels"),
        ],
        scores=[
            FrameScore(index=2, sharpness=9.0, noise=1.0, illuminated_fraction=0.5, composite=9.0),
            FrameScore(index=0, sharpness=4.0, noise=1.0, illuminated_fraction=0.5,
                       composite=np.float64(4.0)),
        ],
        quality_threshold=4.0,
        reference_frame=2,
        reference_centroid=(50.0, 49.5),
        object_threshold=np.float32(512.0),
        rotation_angles={0: math.radians(-1.5), 2: 0.0},
        stats={"coverage_fraction": 0.28},
        warnings=["Post-stack limb correction skipped: Disk too small for a limb fit"],
        elapsed_s=3.25,
        config=config,
        version="0.4.0",
        timestamp="2026-10-18T10:00:00+00:00",
        platform="Linux",
    )


class TestProvenance:
    """Tests for the provenance record."""

    def test_frame_accounting(self, result):
        """Totals, kept and rejected frames are recorded in index order."""
        record = build_provenance(result)
        assert record["frames"] == {"total": 4, "used": 2, "rejected": 2}
        assert record["kept"] == [0, 2]
        assert [r["index"] for r in record["rejected"]] == [1, 3]
        assert record["rejection_reasons"] == {
            "outside_top_percentage": 1,
            "centroid_not_found": 1,
        }

    def test_config_serialized(self, result):
        """Enumerated options are stored by value."""
        config = build_provenance(result)["config"]
        assert config["mount"] == "altaz"
        assert config["target"] == "sun"
        assert config["drop_kernel"] == "square"
        assert config["limb_stage"] == "off"

    def test_json_written(self, result, tmp_path):
        """Both reports are written with the given stem."""
        paths = write_all_reports(result, tmp_path, "sun_Sun")
        assert paths["provenance"] == tmp_path / "sun_Sun_provenance.json"
        assert paths["report"] == tmp_path / "sun_Sun_report.md"

        record = json.loads(paths["provenance"].read_text())
        assert record["rotation_angles_deg"]["0"] == pytest.approx(-1.5)
        assert record["object_threshold"] == 512.0
        assert record["warnings"] == result.warnings
        assert record["scores"][1]["composite"] == 4.0

    def test_markdown(self, result, tmp_path):
        """The Markdown report summarizes the run."""
        text = Path(write_all_reports(result, tmp_path, "run")["report"]).read_text()
        assert text.startswith("# Stacking Report: sun.ser")
        assert "| Frames total | 4 |" in text
        assert "| Frames used | 2 |" in text
        assert "| Reference frame | 2 |" in text
        assert "| outside_top_percentage | 1 |" in text
        assert "Disk too small" in text


class TestOutputNames:
    """Tests for assembled output names."""

    def test_default_name(self):
        """Stem and capitalized target, next to the capture."""
        path = assemble_output_filename("/data/sun_0930.ser", target="sun")
        assert path == Path("/data/sun_0930_Sun.tif")

    def test_drizzle_and_freetext(self, tmp_path):
        """Drizzle scale and sanitized free text are appended."""
        path = assemble_output_filename("/data/moon.ser", output_dir=tmp_path, target="moon",
                                        drizzle_scale=1.5, freetext="best 10%")
        assert path == tmp_path / "moon_Moon_drizzle1.5_best_10%.tif"


class TestUtils:
    """Tests for normalization and formatting helpers."""

    def test_normalize_unit(self):
        """Global min/max maps onto [0, 1]."""
        out = normalize_unit(np.array([[10.0, 20.0], [30.0, 50.0]]))
        np.testing.assert_allclose(out, [[0.0, 0.25], [0.5, 1.0]])

    def test_decorrelated_channels(self):
        """Each channel is stretched on its own."""
        rgb = np.stack([np.array([[0.0, 1.0]]), np.array([[0.0, 4.0]]), np.array([[2.0, 3.0]])],
                       axis=-1)
        out = normalize_unit(rgb, decorrelated=True)
        for c in range(3):
            assert out[..., c].min() == 0.0
            assert out[..., c].max() == 1.0

    def test_constant_image(self):
        """A constant image maps to zeros."""
        assert not normalize_unit(np.full((3, 3), 7.0)).any()

    def test_to_uint16(self):
        """[0, 1] maps onto the full 16-bit range."""
        assert to_uint16(np.array([0.0, 1.0, 2.0])).tolist() == [0, 65535, 65535]

    @pytest.mark.parametrize("seconds, text", [(45.2, "45.2s"), (135, "2m 15s"),
                                               (8130, "2h 15m 30s")])
    def test_format_duration(self, seconds, text):
        """Durations are rendered in the largest sensible units."""
        assert format_duration(seconds) == text
