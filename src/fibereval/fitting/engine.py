"""
Streamline Weight Fitting
=========================

Fits non-negative weights of streamlines (or whole bundles) so that their
summed, direction-matched contributions explain the magnitudes of a peak
image. The fit is a sparse linear least-squares problem

    min_w  ||A w - b||^2 / m  +  lambda * R(w),   w >= 0

where every row of ``A`` is one (voxel, peak slot) observation and every
column one fiber or bundle. A segment contributes ``|cos| * length`` (in
voxel units) to the slot of the peak it is best aligned with. Each voxel has
one extra slot with observed value 0 that collects segments running through
voxels without any peak.

"""

import time
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import logging

import numpy as np
import scipy.sparse as sp
from scipy.optimize import Bounds, minimize
from scipy.sparse.linalg import lsqr

from ..data.bundle import StreamlineBundle, sampling_step
from ..data.images import Mask, PeakField
from ..utils.memory_manager import MemoryManager
from .regularization import (
    Regularization,
    RegularizationContext,
    get_regularizer,
)

logger = logging.getLogger(__name__)


class EmptyInput(Exception):
    """Exception raised when no bundle contains any fiber"""
    pass


class NumericalInstabilityWarning(RuntimeWarning):
    """The optimiser failed and a damped least-squares solution was used"""
    pass


@dataclass
class FitSystem:
    """Assembled least-squares problem"""
    design: sp.csr_matrix
    observed: np.ndarray
    rows: np.ndarray
    n_slots: int
    groups: np.ndarray
    bundle_columns: List[np.ndarray]
    num_covered_directions: int

    @property
    def n_observations(self) -> int:
        return int(self.design.shape[0])

    @property
    def n_variables(self) -> int:
        return int(self.design.shape[1])


@dataclass
class FitResult:
    """Outcome of one fit invocation"""
    weights: np.ndarray
    bundles: List[StreamlineBundle]
    rmse: float
    rms_diff_per_bundle: np.ndarray
    residual_field: PeakField
    overexplained_field: PeakField
    signed_residual: np.ndarray
    num_covered_directions: int
    num_observations: int
    regularization: Regularization = Regularization.NONE
    lambda_: float = 0.0
    converged: bool = True
    message: str = ""
    fit_time_seconds: float = 0.0
    bundle_columns: List[np.ndarray] = field(default_factory=list)

    @property
    def underexplained_field(self) -> PeakField:
        """Observed minus fitted peak magnitudes, clipped at zero"""
        return self.residual_field

    def bundle_weights(self, index: int) -> np.ndarray:
        """Fitted variables belonging to one input bundle"""
        return self.weights[self.bundle_columns[index]]


class LinearFitEngine:
    """
    Fit streamline weights to a peak image.

    Parameters
    ----------
    regularization : Regularization or str, default=NONE
        Penalty term, see ``fitting.regularization``.
    lambda_ : float, default=0.1
        Regularization strength (>= 0).
    filter_outliers : bool, default=False
        Re-fit with an upper weight bound at the 99th percentile of the
        first-pass weights.
    fit_per_fiber : bool, default=False
        One variable per fiber instead of one per bundle.
    step_fraction : float, default=0.25
        Fiber resampling step as a fraction of the smallest voxel edge.
    max_iterations : int, default=1000
        L-BFGS-B iteration limit.
    memory_limit_gb : float, default=10.0
        Budget used to warn about very large systems.
    verbose : bool, default=False
        Log progress at INFO instead of DEBUG level.
    logger : logging.Logger, optional
        Logger receiving the engine's messages.
    """

    def __init__(
        self,
        regularization=Regularization.NONE,
        lambda_: float = 0.1,
        filter_outliers: bool = False,
        fit_per_fiber: bool = False,
        step_fraction: float = 0.25,
        max_iterations: int = 1000,
        memory_limit_gb: float = 10.0,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        if lambda_ < 0:
            raise ValueError(f"lambda must be >= 0, got {lambda_}")
        if step_fraction <= 0:
            raise ValueError(f"step_fraction must be positive, got {step_fraction}")

        self.regularization = Regularization.from_name(regularization)
        self.lambda_ = float(lambda_)
        self.filter_outliers = filter_outliers
        self.fit_per_fiber = fit_per_fiber
        self.step_fraction = step_fraction
        self.max_iterations = max_iterations
        self.memory_manager = MemoryManager(memory_limit_gb)
        self.verbose = verbose
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def _log(self, message: str):
        if self.verbose:
            self.logger.info(message)
        else:
            self.logger.debug(message)

    # ------------------------------------------------------------------
    # System assembly
    # ------------------------------------------------------------------

    def build_system(
        self,
        peak_field: PeakField,
        bundles: Sequence[StreamlineBundle],
        mask: Optional[Mask] = None
    ) -> FitSystem:
        """
        Assemble design matrix and observation vector

        Raises
        ------
        DimensionMismatch
            If the mask grid differs from the peak image grid
        EmptyInput
            If no bundle contains a fiber
        """
        if mask is not None:
            peak_field.check_same_grid(mask.shape, mask.affine, "peak image and mask")

        if sum(b.num_fibers for b in bundles) == 0:
            raise EmptyInput("None of the input bundles contains a fiber")

        shape = peak_field.shape
        n_peaks = peak_field.num_peaks
        n_slots = n_peaks + 1
        n_voxels = int(np.prod(shape))

        in_mask = np.ones(n_voxels, dtype=bool) if mask is None else mask.data.reshape(-1)
        directions = peak_field.directions().reshape(n_voxels, n_peaks, 3)
        magnitudes = peak_field.magnitudes().reshape(n_voxels, n_peaks)
        has_peak = magnitudes > 0
        step = sampling_step(peak_field.affine, self.step_fraction)

        rows, cols, vals = [], [], []
        groups: List[int] = []
        bundle_columns: List[np.ndarray] = []
        col = 0

        for bundle_idx, bundle in enumerate(bundles):
            n_vars = bundle.num_fibers if self.fit_per_fiber else 1
            bundle_columns.append(np.arange(col, col + n_vars))
            groups.extend([bundle_idx] * n_vars)

            samples = bundle.segments(peak_field.affine, step)
            samples = samples.select(samples.inside(shape))
            if len(samples):
                linear = np.ravel_multi_index(samples.voxel.T, shape)
                keep = in_mask[linear]
                linear = linear[keep]
                seg_dirs = samples.direction[keep]
                seg_len = samples.length_vox[keep]
                fiber_idx = samples.fiber_index[keep]

                # closest peak by absolute cosine, empty slots excluded
                cosines = np.abs(np.einsum('nk,npk->np', seg_dirs, directions[linear]))
                cosines[~has_peak[linear]] = -1.0
                best = np.argmax(cosines, axis=1)
                best_cos = cosines[np.arange(len(best)), best]
                matched = has_peak[linear].any(axis=1)

                slot = np.where(matched, best, n_peaks)
                weight = np.where(matched, best_cos, 1.0) * seg_len

                rows.append(linear * n_slots + slot)
                cols.append(col + fiber_idx if self.fit_per_fiber else np.full(len(linear), col))
                vals.append(weight)

            col += n_vars

        observed_full = np.concatenate(
            [magnitudes, np.zeros((n_voxels, 1))], axis=1
        ).reshape(-1)
        obs_rows = np.where(np.repeat(in_mask, n_slots))[0]

        if rows:
            rows_arr = np.concatenate(rows)
            cols_arr = np.concatenate(cols)
            vals_arr = np.concatenate(vals)
        else:
            rows_arr = np.zeros(0, dtype=np.intp)
            cols_arr = np.zeros(0, dtype=np.intp)
            vals_arr = np.zeros(0)

        design_full = sp.coo_matrix(
            (vals_arr, (rows_arr, cols_arr)),
            shape=(n_voxels * n_slots, col)
        ).tocsr()
        design_full.eliminate_zeros()
        design = design_full[obs_rows]
        observed = observed_full[obs_rows]

        row_nnz = np.diff(design.indptr)
        is_peak_slot = (obs_rows % n_slots) < n_peaks
        covered = int(np.count_nonzero(is_peak_slot & (observed > 0) & (row_nnz > 0)))

        self.memory_manager.check_system(design.shape[0], design.shape[1], design.nnz)
        self._log(
            f"Fit system: {design.shape[0]} observations x {design.shape[1]} variables, "
            f"{design.nnz} non-zeros, {covered} covered directions"
        )

        return FitSystem(
            design=design,
            observed=observed,
            rows=obs_rows,
            n_slots=n_slots,
            groups=np.asarray(groups, dtype=np.intp),
            bundle_columns=bundle_columns,
            num_covered_directions=covered
        )

    # ------------------------------------------------------------------
    # Solver
    # ------------------------------------------------------------------

    def _objective(self, system: FitSystem, regularizer, context):
        A = system.design
        b = system.observed
        m = max(len(b), 1)
        lam = self.lambda_

        def fun(x):
            r = A @ x - b
            value = (r @ r) / m + lam * regularizer.penalty(x, context)
            grad = 2.0 * (A.T @ r) / m + lam * regularizer.gradient(x, context)
            return value, grad

        return fun

    def _initial_guess(self, system: FitSystem, upper: Optional[float]) -> np.ndarray:
        """Best uniform weight for all variables"""
        n = system.n_variables
        v = system.design @ np.ones(n)
        vv = v @ v
        scale = max((v @ system.observed) / vv, 0.0) if vv > 0 else 0.0
        if upper is not None:
            scale = min(scale, upper)
        return np.full(n, scale)

    def _damped_solution(self, system: FitSystem, upper: Optional[float]) -> np.ndarray:
        """Damped least-squares (Tikhonov) solve clipped to the bounds"""
        m, n = system.design.shape
        damp = np.sqrt(max(self.lambda_, 1e-8) * max(m, 1) / max(n, 1))
        x = lsqr(system.design, system.observed, damp=damp)[0]
        x = np.nan_to_num(x, nan=0.0, posinf=0.0, neginf=0.0)
        return np.clip(x, 0.0, np.inf if upper is None else upper)

    def _solve(
        self,
        system: FitSystem,
        regularizer,
        context: RegularizationContext,
        upper: Optional[float] = None,
        x0: Optional[np.ndarray] = None
    ):
        n = system.n_variables
        fun = self._objective(system, regularizer, context)
        if x0 is None:
            x0 = self._initial_guess(system, upper)

        bounds = Bounds(np.zeros(n), np.full(n, np.inf if upper is None else upper))
        result = minimize(
            fun,
            x0,
            jac=True,
            method='L-BFGS-B',
            bounds=bounds,
            options={'maxiter': self.max_iterations, 'ftol': 1e-15, 'gtol': 1e-12}
        )

        x = result.x
        converged = bool(result.success)
        message = str(result.message)

        if not np.all(np.isfinite(x)) or not converged:
            fallback = self._damped_solution(system, upper)
            finite = np.all(np.isfinite(x))
            if not finite or fun(fallback)[0] < fun(x)[0]:
                warnings.warn(
                    f"Weight optimisation did not converge ({message}); "
                    f"using damped least-squares solution",
                    NumericalInstabilityWarning
                )
                self.logger.warning(f"Numerical fallback used: {message}")
                x = fallback
                message = f"damped least-squares fallback ({message})"
            else:
                self._log(f"Optimiser stopped early but kept its solution: {message}")

        x = np.clip(x, 0.0, np.inf if upper is None else upper)
        return x, converged, message

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fit(
        self,
        peak_field: PeakField,
        bundles: Sequence[StreamlineBundle],
        mask: Optional[Mask] = None
    ) -> FitResult:
        """
        Fit bundle or fiber weights to a peak image

        Args:
            peak_field: Observed peaks
            bundles: One or more bundles in world coordinates
            mask: Optional mask restricting the observations

        Returns:
            FitResult with weights, fitted bundle copies, RMSE, per-bundle
            RMS difference and residual fields. The input field is not modified.
        """
        start_time = time.time()
        bundles = list(bundles)
        system = self.build_system(peak_field, bundles, mask)

        regularizer = get_regularizer(self.regularization)
        context = RegularizationContext(system.groups, system.design)

        x, converged, message = self._solve(system, regularizer, context)

        if self.filter_outliers and len(x) > 0:
            upper = float(np.percentile(x, 99))
            if upper > 0:
                self._log(f"Outlier filtering: refitting with upper weight bound {upper:.5g}")
                x, converged, message = self._solve(
                    system, regularizer, context, upper=upper, x0=np.clip(x, 0.0, upper)
                )

        # variables without any contribution are not identifiable
        x[system.design.getnnz(axis=0) == 0] = 0.0

        prediction = system.design @ x
        m = max(system.n_observations, 1)
        rmse = float(np.sqrt(np.sum((prediction - system.observed) ** 2) / m))

        rms_diff = np.zeros(len(bundles))
        for i, columns in enumerate(system.bundle_columns):
            if len(columns) == 0:
                continue
            without = prediction - system.design[:, columns] @ x[columns]
            rmse_without = np.sqrt(np.sum((without - system.observed) ** 2) / m)
            rms_diff[i] = rmse_without - rmse

        residual_field, overexplained_field, signed = self._residual_fields(
            peak_field, system, prediction
        )

        fitted_bundles = [
            bundle.with_weights(x[columns] if len(columns) else np.zeros(0))
            for bundle, columns in zip(bundles, system.bundle_columns)
        ]

        elapsed = time.time() - start_time
        self._log(
            f"Fit complete: RMSE={rmse:.6g}, {len(x)} variables, "
            f"regularization={self.regularization.value}, lambda={self.lambda_}, "
            f"{elapsed:.2f}s"
        )

        return FitResult(
            weights=x,
            bundles=fitted_bundles,
            rmse=rmse,
            rms_diff_per_bundle=rms_diff,
            residual_field=residual_field,
            overexplained_field=overexplained_field,
            signed_residual=signed,
            num_covered_directions=system.num_covered_directions,
            num_observations=system.n_observations,
            regularization=self.regularization,
            lambda_=self.lambda_,
            converged=converged,
            message=message,
            fit_time_seconds=elapsed,
            bundle_columns=system.bundle_columns
        )

    def baseline_rmse(self, peak_field: PeakField, mask: Optional[Mask] = None) -> float:
        """RMSE of the empty model (all weights zero) over the observation rows"""
        magnitudes = peak_field.magnitudes()
        if mask is not None:
            peak_field.check_same_grid(mask.shape, mask.affine, "peak image and mask")
            magnitudes = magnitudes[mask.data]
        else:
            magnitudes = magnitudes.reshape(-1, peak_field.num_peaks)

        n_rows = magnitudes.shape[0] * (peak_field.num_peaks + 1)
        if n_rows == 0:
            return 0.0
        return float(np.sqrt(np.sum(magnitudes ** 2) / n_rows))

    def _residual_fields(self, peak_field: PeakField, system: FitSystem, prediction: np.ndarray):
        """Under- and overexplained peak fields and signed residual magnitudes"""
        shape = peak_field.shape
        n_peaks = peak_field.num_peaks
        n_voxels = int(np.prod(shape))

        fitted_full = np.zeros(n_voxels * system.n_slots)
        fitted_full[system.rows] = prediction
        fitted = fitted_full.reshape(n_voxels, system.n_slots)[:, :n_peaks]
        fitted = fitted.reshape(shape + (n_peaks,))

        signed = peak_field.magnitudes() - fitted
        underexplained = peak_field.with_magnitudes(np.maximum(signed, 0.0))
        overexplained = peak_field.with_magnitudes(np.maximum(-signed, 0.0))
        return underexplained, overexplained, signed


def fit_bundles(
    peak_field: PeakField,
    bundles: Sequence[StreamlineBundle],
    mask: Optional[Mask] = None,
    regularization=Regularization.NONE,
    lambda_: float = 0.1,
    filter_outliers: bool = False,
    fit_per_fiber: bool = False,
    **kwargs
) -> FitResult:
    """Functional shortcut for ``LinearFitEngine(...).fit(...)``"""
    engine = LinearFitEngine(
        regularization=regularization,
        lambda_=lambda_,
        filter_outliers=filter_outliers,
        fit_per_fiber=fit_per_fiber,
        **kwargs
    )
    return engine.fit(peak_field, bundles, mask)
