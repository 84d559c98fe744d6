"""
Unit tests for regularization strategies
"""

import pytest
import numpy as np
import scipy.sparse as sp

from fibereval.fitting.regularization import (
    REGULARIZERS,
    Regularization,
    RegularizationContext,
    get_regularizer,
)


class TestRegularizationNames:
    """Test parsing of regularization names"""

    @pytest.mark.parametrize("name,expected", [
        ("NONE", Regularization.NONE),
        ("MSM", Regularization.MSM),
        ("Variance", Regularization.VARIANCE),
        ("VoxelVariance", Regularization.VOXEL_VARIANCE),
        ("Lasso", Regularization.LASSO),
        ("GroupLasso", Regularization.GROUP_LASSO),
        ("GroupVariance", Regularization.GROUP_VARIANCE),
        ("grouplasso", Regularization.GROUP_LASSO),
        ("GROUP_VARIANCE", Regularization.GROUP_VARIANCE),
        ("voxel-variance", Regularization.VOXEL_VARIANCE),
        (None, Regularization.NONE),
        (Regularization.MSM, Regularization.MSM),
    ])
    def test_from_name(self, name, expected):
        assert Regularization.from_name(name) is expected

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown regularization"):
            Regularization.from_name("Ridge")

    def test_every_kind_has_a_strategy(self):
        for kind in Regularization:
            assert REGULARIZERS[kind].kind is kind
            assert get_regularizer(kind.value) is REGULARIZERS[kind]


class TestPenalties:
    """Test penalty values and analytic gradients"""

    @pytest.fixture
    def context(self):
        """Six variables in two groups with a random sparse design"""
        rng = np.random.default_rng(42)
        dense = rng.random((30, 6)) * (rng.random((30, 6)) < 0.4)
        design = sp.csr_matrix(dense)
        groups = np.array([0, 0, 0, 1, 1, 1])
        return RegularizationContext(groups, design)

    @pytest.fixture
    def x(self):
        return np.array([0.3, 1.2, 0.7, 2.0, 0.1, 0.9])

    def test_none_is_zero(self, context, x):
        reg = get_regularizer(Regularization.NONE)
        assert reg.penalty(x, context) == 0.0
        assert np.all(reg.gradient(x, context) == 0.0)

    def test_msm(self, context, x):
        reg = get_regularizer("MSM")
        assert reg.penalty(x, context) == pytest.approx(np.mean(x ** 2))

    def test_variance(self, context, x):
        reg = get_regularizer("Variance")
        assert reg.penalty(x, context) == pytest.approx(np.var(x))
        assert reg.penalty(np.full(6, 3.0), context) == pytest.approx(0.0)

    def test_lasso(self, context, x):
        reg = get_regularizer("Lasso")
        assert reg.penalty(x, context) == pytest.approx(np.sum(x) / 6)

    def test_group_lasso(self, context, x):
        reg = get_regularizer("GroupLasso")
        expected = (np.sqrt(3) * np.linalg.norm(x[:3]) + np.sqrt(3) * np.linalg.norm(x[3:])) / 6
        assert reg.penalty(x, context) == pytest.approx(expected)

    def test_group_variance(self, context, x):
        reg = get_regularizer("GroupVariance")
        expected = (3 * np.var(x[:3]) + 3 * np.var(x[3:])) / 6
        assert reg.penalty(x, context) == pytest.approx(expected)

    def test_group_variance_ignores_between_group_spread(self, context):
        """Test constant weights within each group are not penalised"""
        reg = get_regularizer("GroupVariance")
        x = np.array([1.0, 1.0, 1.0, 5.0, 5.0, 5.0])
        assert reg.penalty(x, context) == pytest.approx(0.0)
        assert get_regularizer("Variance").penalty(x, context) > 0

    def test_voxel_variance_constant_weights(self, context):
        reg = get_regularizer("VoxelVariance")
        assert reg.penalty(np.full(6, 2.0), context) == pytest.approx(0.0)

    def test_voxel_variance_requires_design(self, x):
        context = RegularizationContext(np.zeros(6, dtype=int))
        with pytest.raises(ValueError):
            get_regularizer("VoxelVariance").penalty(x, context)

    @pytest.mark.parametrize("kind", [k for k in Regularization])
    def test_gradient_matches_finite_differences(self, kind, context, x):
        """Test analytic gradients against central differences"""
        reg = get_regularizer(kind)
        grad = reg.gradient(x, context)
        eps = 1e-6
        numeric = np.zeros_like(x)
        for i in range(len(x)):
            step = np.zeros_like(x)
            step[i] = eps
            numeric[i] = (reg.penalty(x + step, context) - reg.penalty(x - step, context)) / (2 * eps)
        np.testing.assert_allclose(grad, numeric, rtol=1e-4, atol=1e-7)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
