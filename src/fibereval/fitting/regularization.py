"""
Regularization Strategies
=========================

Penalty terms for the non-negative streamline weight fit. Each kind of
regularization is one strategy class; ``Regularization`` names them and
``REGULARIZERS`` dispatches from name to strategy.

All penalties are normalised by the number of variables so that one lambda
behaves similarly for bundle-level and fiber-level fits.

"""

from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import scipy.sparse as sp


class Regularization(Enum):
    """Available penalty terms"""
    NONE = "NONE"
    MSM = "MSM"
    VARIANCE = "Variance"
    VOXEL_VARIANCE = "VoxelVariance"
    LASSO = "Lasso"
    GROUP_LASSO = "GroupLasso"
    GROUP_VARIANCE = "GroupVariance"

    @classmethod
    def from_name(cls, name) -> "Regularization":
        """
        Parse a regularization name

        Accepts the command-line spelling ('GroupLasso'), the member name
        ('GROUP_LASSO') and either in any letter case.
        """
        if isinstance(name, cls):
            return name
        if name is None:
            return cls.NONE

        key = str(name).strip().replace('-', '_').upper()
        for member in cls:
            if key in (member.name, member.value.upper()):
                return member
        valid = ', '.join(m.value for m in cls)
        raise ValueError(f"Unknown regularization '{name}'. Valid options: {valid}")


class RegularizationContext:
    """
    Problem structure needed by the penalties

    Parameters
    ----------
    groups : ndarray of shape (n_vars,)
        Group (bundle) label of every variable
    design : sparse matrix of shape (n_obs, n_vars), optional
        Design matrix; only its sparsity pattern is used (voxel variance)
    """

    def __init__(self, groups: np.ndarray, design: Optional[sp.spmatrix] = None):
        self.groups = np.asarray(groups, dtype=np.intp)
        self.n_vars = len(self.groups)
        self.group_indices: List[np.ndarray] = [
            np.where(self.groups == g)[0] for g in np.unique(self.groups)
        ]

        self._design = design
        self._incidence: Optional[sp.csr_matrix] = None
        self._row_counts: Optional[np.ndarray] = None

    def incidence(self):
        """Binary pattern of touched rows (rows without any entry removed) and row counts"""
        if self._incidence is None:
            if self._design is None:
                raise ValueError("Voxel variance regularization requires the design matrix")
            pattern = sp.csr_matrix(self._design, copy=True)
            pattern.eliminate_zeros()
            pattern.data = np.ones_like(pattern.data)
            counts = np.asarray(pattern.sum(axis=1)).ravel()
            touched = counts > 0
            self._incidence = pattern[touched]
            self._row_counts = counts[touched]
        return self._incidence, self._row_counts


class Regularizer:
    """Base class: zero penalty"""

    kind = Regularization.NONE

    def penalty(self, x: np.ndarray, context: RegularizationContext) -> float:
        return 0.0

    def gradient(self, x: np.ndarray, context: RegularizationContext) -> np.ndarray:
        return np.zeros_like(x)


class MSMRegularizer(Regularizer):
    """Mean squared magnitude of the weights"""

    kind = Regularization.MSM

    def penalty(self, x, context):
        return float(x @ x) / context.n_vars

    def gradient(self, x, context):
        return 2.0 * x / context.n_vars


class VarianceRegularizer(Regularizer):
    """Variance of all weights"""

    kind = Regularization.VARIANCE

    def penalty(self, x, context):
        d = x - x.mean()
        return float(d @ d) / context.n_vars

    def gradient(self, x, context):
        return 2.0 * (x - x.mean()) / context.n_vars


class LassoRegularizer(Regularizer):
    """L1 norm (weights are non-negative, so the plain sum)"""

    kind = Regularization.LASSO

    def penalty(self, x, context):
        return float(np.sum(np.abs(x))) / context.n_vars

    def gradient(self, x, context):
        return np.where(x >= 0, 1.0, -1.0) / context.n_vars


class GroupLassoRegularizer(Regularizer):
    """Sum of per-bundle L2 norms, scaled by sqrt of group size"""

    kind = Regularization.GROUP_LASSO

    def penalty(self, x, context):
        total = 0.0
        for idx in context.group_indices:
            total += np.sqrt(len(idx)) * np.linalg.norm(x[idx])
        return float(total) / context.n_vars

    def gradient(self, x, context):
        grad = np.zeros_like(x)
        for idx in context.group_indices:
            norm = np.linalg.norm(x[idx])
            if norm > 0:
                grad[idx] = np.sqrt(len(idx)) * x[idx] / norm
        return grad / context.n_vars


class GroupVarianceRegularizer(Regularizer):
    """Sum of within-bundle weight variances"""

    kind = Regularization.GROUP_VARIANCE

    def penalty(self, x, context):
        total = 0.0
        for idx in context.group_indices:
            d = x[idx] - x[idx].mean()
            total += d @ d
        return float(total) / context.n_vars

    def gradient(self, x, context):
        grad = np.zeros_like(x)
        for idx in context.group_indices:
            grad[idx] = 2.0 * (x[idx] - x[idx].mean())
        return grad / context.n_vars


class VoxelVarianceRegularizer(Regularizer):
    """
    Mean, over observation rows touched by any fiber, of the variance of
    the weights of the variables passing through that row
    """

    kind = Regularization.VOXEL_VARIANCE

    def _row_stats(self, x, context):
        incidence, counts = context.incidence()
        means = (incidence @ x) / counts
        mean_squares = (incidence @ (x * x)) / counts
        return incidence, counts, means, mean_squares

    def penalty(self, x, context):
        incidence, counts, means, mean_squares = self._row_stats(x, context)
        if len(counts) == 0:
            return 0.0
        variances = np.maximum(mean_squares - means ** 2, 0.0)
        return float(np.mean(variances))

    def gradient(self, x, context):
        incidence, counts, means, _ = self._row_stats(x, context)
        if len(counts) == 0:
            return np.zeros_like(x)
        inv_counts = 1.0 / counts
        # d var_r / d x_j = 2 (x_j - mean_r) / c_r for every j in row r
        grad = 2.0 * (x * (incidence.T @ inv_counts) - incidence.T @ (means * inv_counts))
        return grad / len(counts)


REGULARIZERS: Dict[Regularization, Regularizer] = {
    Regularization.NONE: Regularizer(),
    Regularization.MSM: MSMRegularizer(),
    Regularization.VARIANCE: VarianceRegularizer(),
    Regularization.VOXEL_VARIANCE: VoxelVarianceRegularizer(),
    Regularization.LASSO: LassoRegularizer(),
    Regularization.GROUP_LASSO: GroupLassoRegularizer(),
    Regularization.GROUP_VARIANCE: GroupVarianceRegularizer(),
}


def get_regularizer(kind) -> Regularizer:
    """Strategy for a Regularization member or name"""
    return REGULARIZERS[Regularization.from_name(kind)]
