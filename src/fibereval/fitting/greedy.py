"""
Greedy Candidate Selection
==========================

Forward selection of candidate bundles: every round fits each remaining
candidate on its own against the current residual peak field, keeps the one
with the lowest RMSE and continues on its underexplained field. Selection
stops when no candidate lowers the RMSE or the pool is exhausted.

Round state is an immutable ``GreedyState``; ``GreedySelector.step`` maps one
state to the next so rounds can be examined in isolation.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple
import logging

from tqdm import tqdm

from ..data.bundle import StreamlineBundle
from ..data.images import Mask, PeakField
from .engine import FitResult, LinearFitEngine
from .regularization import Regularization

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GreedyState:
    """
    Loop state between two rounds

    Attributes:
        residual: Peak field still to be explained
        rmse: RMSE of the current model
        pool: Remaining candidates in their original order
        round_index: Number of rounds completed
        converged: True once no candidate improves the fit
    """
    residual: PeakField
    rmse: float
    pool: Tuple[StreamlineBundle, ...]
    round_index: int = 0
    converged: bool = False

    @property
    def searching(self) -> bool:
        return not self.converged and len(self.pool) > 0


@dataclass
class SelectionRound:
    """The candidate selected in one round"""
    round: int
    name: str
    bundle: StreamlineBundle
    fit: FitResult
    residual: PeakField
    rmse_before: float
    rmse_after: float
    covered_directions: int

    @property
    def improvement(self) -> float:
        return self.rmse_before - self.rmse_after


class GreedySelector:
    """
    Greedy forward selection of candidate bundles.

    Parameters
    ----------
    mask : Mask, optional
        Fit mask shared by all candidate fits
    lambda_ : float, default=0.1
        Regularization strength passed to the engine
    filter_outliers : bool, default=False
        Outlier-bounded refit for every candidate
    fit_per_fiber : bool, default=True
        Fit one weight per fiber of the candidate
    n_jobs : int, default=1
        Number of threads evaluating the candidates of a round
    engine : LinearFitEngine, optional
        Engine to use instead of one built from the arguments above
    verbose : bool, default=False
        Show a progress bar and log rounds at INFO level
    logger : logging.Logger, optional
        Logger receiving the selector's messages
    """

    def __init__(
        self,
        mask: Optional[Mask] = None,
        lambda_: float = 0.1,
        filter_outliers: bool = False,
        fit_per_fiber: bool = True,
        n_jobs: int = 1,
        engine: Optional[LinearFitEngine] = None,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
        **engine_kwargs
    ):
        if n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {n_jobs}")

        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.mask = mask
        self.n_jobs = n_jobs
        self.verbose = verbose

        if engine is None:
            engine = LinearFitEngine(
                regularization=Regularization.NONE,
                lambda_=lambda_,
                filter_outliers=filter_outliers,
                fit_per_fiber=fit_per_fiber,
                verbose=False,
                logger=self.logger,
                **engine_kwargs
            )
        self.engine = engine

    def initial_state(
        self,
        peak_field: PeakField,
        candidates: Sequence[StreamlineBundle],
        baseline_rmse: Optional[float] = None
    ) -> GreedyState:
        """
        Starting state of the selection

        Empty candidates are dropped from the pool. The starting RMSE is the
        empty model's RMSE on ``peak_field``, the field every candidate is
        fitted against. A caller-supplied ``baseline_rmse`` can only lower it.
        """
        pool = []
        for bundle in candidates:
            if bundle.is_empty:
                self.logger.info(f"Skipping empty candidate {bundle.name}")
                continue
            pool.append(bundle)

        empty_rmse = self.engine.baseline_rmse(peak_field, self.mask)
        if baseline_rmse is None or baseline_rmse > empty_rmse:
            baseline_rmse = empty_rmse

        return GreedyState(
            residual=peak_field,
            rmse=float(baseline_rmse),
            pool=tuple(pool),
            round_index=0,
            converged=len(pool) == 0
        )

    def evaluate(self, state: GreedyState) -> List[FitResult]:
        """Fit every remaining candidate against the current residual, in pool order"""

        def fit_one(bundle: StreamlineBundle) -> FitResult:
            return self.engine.fit(state.residual, [bundle], self.mask)

        desc = f"Round {state.round_index + 1}"
        if self.n_jobs > 1:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
                results = list(tqdm(
                    executor.map(fit_one, state.pool),
                    total=len(state.pool),
                    desc=desc,
                    unit="candidate",
                    disable=not self.verbose
                ))
        else:
            results = [
                fit_one(bundle)
                for bundle in tqdm(state.pool, desc=desc, unit="candidate", disable=not self.verbose)
            ]
        return results

    def step(self, state: GreedyState) -> Tuple[GreedyState, Optional[SelectionRound]]:
        """
        Run one selection round

        Returns:
            The next state and the selected round, or ``(converged state, None)``
            when no candidate strictly lowers the RMSE
        """
        if not state.searching:
            return replace(state, converged=True), None

        results = self.evaluate(state)

        best_index = None
        best_rmse = state.rmse
        for i, result in enumerate(results):
            self.logger.debug(f"Candidate {state.pool[i].name}: RMSE={result.rmse:.6g}")
            # strict comparison keeps the first of equal candidates
            if result.rmse < best_rmse:
                best_rmse = result.rmse
                best_index = i

        if best_index is None:
            self.logger.info(
                f"Greedy selection converged after {state.round_index} rounds "
                f"(RMSE={state.rmse:.6g})"
            )
            return replace(state, converged=True), None

        winner = state.pool[best_index]
        fit = results[best_index]
        selection = SelectionRound(
            round=state.round_index + 1,
            name=winner.name,
            bundle=fit.bundles[0],
            fit=fit,
            residual=fit.residual_field,
            rmse_before=state.rmse,
            rmse_after=fit.rmse,
            covered_directions=fit.num_covered_directions
        )

        message = (
            f"Round {selection.round}: selected {winner.name} "
            f"(RMSE {state.rmse:.6g} -> {fit.rmse:.6g}, "
            f"{len(state.pool) - 1} candidates left)"
        )
        if self.verbose:
            self.logger.info(message)
        else:
            self.logger.debug(message)

        next_state = GreedyState(
            residual=fit.residual_field,
            rmse=fit.rmse,
            pool=state.pool[:best_index] + state.pool[best_index + 1:],
            round_index=state.round_index + 1,
            converged=False
        )
        return next_state, selection

    def run(
        self,
        peak_field: PeakField,
        candidates: Sequence[StreamlineBundle],
        baseline_rmse: Optional[float] = None
    ) -> List[SelectionRound]:
        """
        Select candidates until convergence

        Args:
            peak_field: Initial (residual) peak field
            candidates: Candidate pool in deterministic order
            baseline_rmse: RMSE before any candidate is added, capped at
                the empty-model RMSE of ``peak_field``

        Returns:
            Selected rounds in selection order
        """
        state = self.initial_state(peak_field, candidates, baseline_rmse)
        self.logger.info(
            f"Greedy selection over {len(state.pool)} candidates, "
            f"baseline RMSE={state.rmse:.6g}"
        )

        rounds: List[SelectionRound] = []
        while state.searching:
            state, selection = self.step(state)
            if selection is not None:
                rounds.append(selection)

        return rounds
