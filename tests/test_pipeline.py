"""
Integration tests for the anchor-constrained plausibility pipeline
"""

import json

import numpy as np
import pandas as pd
import pytest

from fibereval.data.bundle import StreamlineBundle
from fibereval.data.images import DimensionMismatch, Mask
from fibereval.data.io import LoadError, save_bundle, save_mask, save_peak_field
from fibereval.pipeline.config import PlausibilityConfig, RunMode
from fibereval.pipeline.plausibility import (
    NO_ANCHOR,
    AnchorConstrainedPlausibility,
    format_duration,
)


@pytest.fixture
def workspace(tmp_path, path_field, make_line):
    """Peak image, two candidates and an anchor written to disk"""
    reference = (path_field.shape, path_field.affine)

    peaks = tmp_path / "peaks.nii.gz"
    save_peak_field(path_field, peaks)

    candidates = tmp_path / "candidates"
    save_bundle(make_line(0.5, 3.5, name="A"), candidates / "A.trk", reference)
    save_bundle(make_line(0.5, 5.5, name="B"), candidates / "B.trk", reference)

    anchor = tmp_path / "anchor.trk"
    save_bundle(make_line(0.5, 2.5, name="anchor"), anchor, reference)

    return {
        'peaks': str(peaks),
        'candidates': str(candidates),
        'anchor': str(anchor),
        'output': str(tmp_path / "out"),
        'root': tmp_path,
    }


def run_pipeline(workspace, **options):
    config = PlausibilityConfig(
        peaks=workspace['peaks'],
        candidates=workspace['candidates'],
        output=workspace['output'],
        anchor=options.pop('anchor', workspace['anchor']),
        lambda_=options.pop('lambda_', 0.0),
        **options
    )
    return AnchorConstrainedPlausibility(config).run()


class TestAnchor:
    """Test the anchor stage"""

    def test_anchor_outputs(self, workspace):
        result = run_pipeline(workspace)
        out = result.output_dir

        assert result.anchor_name == "anchor"
        assert result.anchor_rmse == pytest.approx(np.sqrt(3.0 / 2000), rel=1e-4)
        assert (out / "Residual_anchor.nii.gz").exists()
        assert len(list(out.glob("*_anchor.trk"))) == 1

    def test_without_anchor(self, workspace):
        result = run_pipeline(workspace, anchor=None)
        assert result.anchor_name == NO_ANCHOR
        assert result.anchor_fit is None

    def test_empty_anchor(self, workspace, path_field):
        empty = workspace['root'] / "empty.trk"
        save_bundle(StreamlineBundle([], name="empty"), empty, (path_field.shape, path_field.affine))

        result = run_pipeline(workspace, anchor=str(empty))
        assert result.anchor_name == NO_ANCHOR


class TestScoringModes:
    """Test the output files of each scoring mode"""

    def test_log_header(self, workspace):
        result = run_pipeline(workspace)
        lines = (result.output_dir / "log.txt").read_text().splitlines()

        assert lines[0] == "V3"
        assert lines[1].startswith("RMS_DIFF:")

    def test_weights_mode(self, workspace):
        result = run_pipeline(workspace, use_weights=True)

        assert result.mode == RunMode.WEIGHTS
        assert (result.output_dir / "100000_A.trk").exists()
        assert (result.output_dir / "100000_B.trk").exists()
        assert [s.score for s in result.scores] == [1.0, 1.0]

    def test_streamline_count_mode(self, workspace):
        result = run_pipeline(workspace, use_num_streamlines=True)

        assert result.mode == RunMode.STREAMLINE_COUNT
        assert (result.output_dir / "1_A.trk").exists()
        assert (result.output_dir / "1_B.trk").exists()

    def test_joint_mode(self, workspace):
        result = run_pipeline(workspace)
        out = result.output_dir

        assert result.mode == RunMode.JOINT
        assert (out / "AllCandidates.trk").exists()
        assert (out / "Residual_AllCandidates.nii.gz").exists()
        assert [s.name for s in result.scores] == ["A", "B"]
        assert result.joint_fit.rmse <= result.anchor_rmse

    def test_greedy_mode(self, workspace):
        result = run_pipeline(workspace, greedy=True)
        out = result.output_dir

        assert result.mode == RunMode.GREEDY
        assert result.rounds[0].name == "B"
        assert result.rounds[0].rmse_before == pytest.approx(result.anchor_rmse)
        assert (out / "1_B.trk").exists()
        assert (out / "1_B.nii.gz").exists()
        assert result.scores[0].round == 1

    def test_greedy_after_overshooting_anchor(self, workspace, path_field, make_line):
        reference = (path_field.shape, path_field.affine)
        root = workspace['root']
        long_anchor = root / "long_anchor.trk"
        save_bundle(make_line(0.5, 8.5, name="long_anchor"), long_anchor, reference)
        far_candidates = root / "far_candidates"
        save_bundle(make_line(0.5, 8.5, y=8.0, name="far"), far_candidates / "far.trk", reference)

        workspace = dict(workspace, candidates=str(far_candidates))
        result = run_pipeline(workspace, anchor=str(long_anchor), greedy=True)

        assert result.anchor_name == "long_anchor"
        assert result.rounds == []
        assert result.scores == []
        assert not list(result.output_dir.glob("1_far.*"))

    def test_summaries(self, workspace):
        result = run_pipeline(workspace)
        out = result.output_dir

        frame = pd.read_csv(out / "scores.csv")
        assert list(frame["name"]) == ["A", "B"]

        summary = json.loads((out / "run_summary.json").read_text())
        assert summary["mode"] == "joint"
        assert summary["anchor"] == "anchor"
        assert summary["num_scored"] == 2

        assert "[RUN-MODE]" in (out / "decision_log.md").read_text()


class TestPipelineErrors:
    """Test input validation"""

    def test_missing_peaks(self, workspace):
        workspace = dict(workspace, peaks=str(workspace['root'] / "missing.nii.gz"))
        with pytest.raises(LoadError):
            run_pipeline(workspace)

    def test_missing_candidates(self, workspace):
        workspace = dict(workspace, candidates=str(workspace['root'] / "nowhere"))
        with pytest.raises(LoadError):
            run_pipeline(workspace)

    def test_mask_grid_mismatch(self, workspace):
        mask_path = workspace['root'] / "mask.nii.gz"
        save_mask(Mask(np.ones((8, 8, 8)), np.eye(4)), mask_path)
        with pytest.raises(DimensionMismatch):
            run_pipeline(workspace, mask=str(mask_path))

    def test_mask_resampled(self, workspace):
        mask_path = workspace['root'] / "mask.nii.gz"
        save_mask(Mask(np.ones((8, 8, 8)), np.eye(4)), mask_path)

        result = run_pipeline(workspace, mask=str(mask_path), resample_mask=True)
        assert len(result.scores) == 2


def test_format_duration():
    assert format_duration(3725.4) == "1h, 2m and 5s"
    assert format_duration(0) == "0h, 0m and 0s"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
