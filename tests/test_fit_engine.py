"""
Unit tests for the streamline weight fit
"""

import warnings

import pytest
import numpy as np
from scipy.optimize import OptimizeResult

from fibereval.data.bundle import StreamlineBundle
from fibereval.data.images import DimensionMismatch, Mask
from fibereval.fitting import engine as engine_module
from fibereval.fitting.engine import (
    EmptyInput,
    FitResult,
    LinearFitEngine,
    NumericalInstabilityWarning,
    fit_bundles,
)
from fibereval.fitting.regularization import Regularization


class TestSingleFiberFit:
    """A fiber that exactly generates the observed peaks"""

    @pytest.fixture
    def fiber(self, make_line):
        return make_line(0.5, 5.5, name="exact")

    def test_exact_generator(self, path_field, fiber):
        """Test weight ~1 and RMSE ~0 for the generating fiber"""
        result = fit_bundles(path_field, [fiber], regularization="NONE", lambda_=0.0)

        assert isinstance(result, FitResult)
        assert result.weights == pytest.approx([1.0], abs=1e-6)
        assert result.rmse < 1e-6
        assert result.num_covered_directions == 5
        assert result.bundles[0].weights == pytest.approx([1.0], abs=1e-6)

    def test_residual_fields(self, path_field, fiber):
        """Test the explained signal is removed from the residual"""
        result = fit_bundles(path_field, [fiber], lambda_=0.0)

        assert result.residual_field is result.underexplained_field
        assert result.residual_field.magnitudes().max() < 1e-6
        assert result.overexplained_field.magnitudes().max() < 1e-6
        assert result.signed_residual.shape == (10, 10, 10, 1)

    def test_input_field_unchanged(self, path_field, fiber):
        before = path_field.peaks.copy()
        fit_bundles(path_field, [fiber], lambda_=0.0)
        np.testing.assert_array_equal(path_field.peaks, before)

    def test_input_bundle_unchanged(self, path_field, make_line):
        """Test fitting attaches weights to copies only"""
        bundle = StreamlineBundle(make_line(0.5, 5.5).fibers, weights=[7.0])
        result = fit_bundles(path_field, [bundle], lambda_=0.0)
        assert bundle.weights == pytest.approx([7.0])
        assert result.bundles[0].weights == pytest.approx([1.0], abs=1e-6)

    def test_scaled_signal(self, make_field, fiber):
        """Test weight follows the peak magnitude"""
        field = make_field([(x, 4, 4) for x in range(1, 6)], magnitude=2.5)
        result = fit_bundles(field, [fiber], lambda_=0.0)
        assert result.weights[0] == pytest.approx(2.5, rel=1e-5)

    def test_partial_fiber(self, path_field, make_line):
        """Test a fiber covering part of the signal leaves the rest"""
        result = fit_bundles(path_field, [make_line(0.5, 3.5)], lambda_=0.0)
        assert result.weights[0] == pytest.approx(1.0, abs=1e-6)
        residual = result.residual_field.magnitudes()[:, 4, 4, 0]
        assert residual[1:4] == pytest.approx([0.0, 0.0, 0.0], abs=1e-6)
        assert residual[4:6] == pytest.approx([1.0, 1.0])
        assert result.rmse == pytest.approx(np.sqrt(2.0 / 2000), rel=1e-5)

    def test_fiber_through_empty_voxels_is_penalised(self, path_field, make_line):
        """Test segments in voxels without peaks pull the weight down"""
        # 5 voxels with unit peaks and 3 voxels without: min 5(1-w)^2 + 3w^2
        result = fit_bundles(path_field, [make_line(0.5, 8.5)], lambda_=0.0)
        assert result.weights[0] == pytest.approx(5.0 / 8.0, rel=1e-4)
        assert result.overexplained_field.magnitudes().max() == pytest.approx(0.0)

    def test_perpendicular_fiber_explains_nothing(self, path_field):
        bundle = StreamlineBundle([np.array([[3.0, 0.5, 4.0], [3.0, 8.5, 4.0]])])
        result = fit_bundles(path_field, [bundle], lambda_=0.0)
        assert result.weights[0] == pytest.approx(0.0, abs=1e-8)


class TestMultipleBundles:
    """Test per-fiber and per-bundle variables"""

    def test_per_fiber_weights_share_the_signal(self, path_field, make_line):
        """Test two identical fibers split the weight"""
        bundle = make_line(0.5, 5.5, n_fibers=2)
        result = fit_bundles(path_field, [bundle], lambda_=0.0, fit_per_fiber=True)
        assert len(result.weights) == 2
        assert result.weights.sum() == pytest.approx(1.0, abs=1e-6)
        assert result.rmse < 1e-6

    def test_per_bundle_single_variable(self, path_field, make_line):
        bundle = make_line(0.5, 5.5, n_fibers=2)
        result = fit_bundles(path_field, [bundle], lambda_=0.0, fit_per_fiber=False)
        assert len(result.weights) == 1
        assert result.weights[0] == pytest.approx(0.5, abs=1e-6)
        assert result.bundles[0].weights == pytest.approx([0.5, 0.5], abs=1e-6)

    def test_rms_diff_per_bundle(self, path_field, make_line):
        """Test the useful bundle has the larger RMS difference"""
        useful = make_line(0.5, 5.5, name="useful")
        useless = make_line(0.5, 8.5, y=8.0, name="useless")
        result = fit_bundles(path_field, [useful, useless], lambda_=0.0, fit_per_fiber=True)

        assert len(result.rms_diff_per_bundle) == 2
        assert result.rms_diff_per_bundle[0] > 0
        assert result.rms_diff_per_bundle[0] > result.rms_diff_per_bundle[1]
        np.testing.assert_array_equal(result.bundle_weights(1), result.weights[1:2])
        assert [b.name for b in result.bundles] == ["useful", "useless"]

    def test_empty_bundle_among_others(self, path_field, make_line):
        """Test an empty bundle gets zero weight and zero score"""
        result = fit_bundles(
            path_field, [StreamlineBundle([]), make_line(0.5, 5.5)], lambda_=0.0
        )
        assert result.bundles[0].is_empty
        assert result.rms_diff_per_bundle[0] == 0.0
        assert result.weights[-1] == pytest.approx(1.0, abs=1e-6)

    def test_all_bundles_empty(self, path_field):
        with pytest.raises(EmptyInput):
            fit_bundles(path_field, [StreamlineBundle([]), StreamlineBundle([])])


class TestMaskAndRegularization:
    """Test masked fits, regularization and outlier filtering"""

    def test_mask_restricts_observations(self, path_field, make_line):
        """Test voxels outside the mask neither count nor change"""
        data = np.zeros((10, 10, 10), dtype=bool)
        data[1:4, 4, 4] = True
        result = fit_bundles(path_field, [make_line(0.5, 8.5)], mask=Mask(data), lambda_=0.0)

        assert result.weights[0] == pytest.approx(1.0, abs=1e-6)
        assert result.num_observations == 3 * 2
        residual = result.residual_field.magnitudes()[:, 4, 4, 0]
        assert residual[4:6] == pytest.approx([1.0, 1.0])

    def test_mask_grid_mismatch(self, path_field, make_line):
        mask = Mask(np.ones((9, 10, 10)))
        with pytest.raises(DimensionMismatch):
            fit_bundles(path_field, [make_line(0.5, 5.5)], mask=mask)

    def test_msm_shrinks_weights(self, path_field, make_line):
        fiber = make_line(0.5, 5.5)
        plain = fit_bundles(path_field, [fiber], lambda_=0.0)
        shrunk = fit_bundles(path_field, [fiber], regularization=Regularization.MSM, lambda_=0.01)
        assert shrunk.weights[0] < plain.weights[0]
        assert shrunk.regularization is Regularization.MSM
        assert shrunk.rmse > plain.rmse

    @pytest.mark.parametrize("regu", ["Variance", "VoxelVariance", "Lasso", "GroupLasso", "GroupVariance"])
    def test_all_regularizers_run(self, path_field, make_line, regu):
        """Test every regularizer yields finite non-negative weights"""
        bundle = StreamlineBundle(make_line(0.5, 5.5).fibers + make_line(0.5, 3.5).fibers)
        result = fit_bundles(path_field, [bundle], regularization=regu, lambda_=0.1, fit_per_fiber=True)
        assert np.all(np.isfinite(result.weights))
        assert np.all(result.weights >= 0)

    def test_filter_outliers(self, path_field, make_line):
        """Test the second pass bounds weights by the first-pass 99th percentile"""
        fibers = make_line(0.5, 5.5).fibers + make_line(0.5, 2.5).fibers * 3
        bundle = StreamlineBundle(fibers)
        plain = fit_bundles(path_field, [bundle], lambda_=0.0, fit_per_fiber=True)
        bounded = fit_bundles(
            path_field, [bundle], lambda_=0.0, fit_per_fiber=True, filter_outliers=True
        )
        assert bounded.weights.max() <= np.percentile(plain.weights, 99) + 1e-9
        assert np.all(bounded.weights >= 0)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            LinearFitEngine(lambda_=-1.0)
        with pytest.raises(ValueError):
            LinearFitEngine(regularization="Ridge")

    def test_baseline_rmse(self, path_field, full_mask):
        engine = LinearFitEngine()
        assert engine.baseline_rmse(path_field) == pytest.approx(np.sqrt(5.0 / 2000))
        assert engine.baseline_rmse(path_field, full_mask) == pytest.approx(np.sqrt(5.0 / 2000))


class TestNumericalFallback:
    """Test the damped least-squares fallback"""

    def test_failed_optimiser_uses_fallback(self, path_field, make_line, monkeypatch):
        def broken_minimize(fun, x0, **kwargs):
            return OptimizeResult(
                x=np.full_like(x0, np.nan), success=False, message="forced failure"
            )

        monkeypatch.setattr(engine_module, "minimize", broken_minimize)
        with pytest.warns(NumericalInstabilityWarning):
            result = fit_bundles(path_field, [make_line(0.5, 5.5)], lambda_=0.0)

        assert result.weights[0] == pytest.approx(1.0, abs=1e-3)
        assert "fallback" in result.message
        assert not result.converged

    def test_converged_fit_emits_no_warning(self, path_field, make_line):
        with warnings.catch_warnings():
            warnings.simplefilter("error", NumericalInstabilityWarning)
            fit_bundles(path_field, [make_line(0.5, 5.5)], lambda_=0.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
