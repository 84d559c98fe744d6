"""
Anchor-Constrained Plausibility Pipeline

Scores candidate tractograms by how much of a peak image they explain once
a trusted anchor tractogram has been fitted:

1. Load the peak image, fit mask, reference masks/peaks and candidates
2. Fit the anchor (if given) and continue on its underexplained field
3. Score candidates in exactly one mode:
   - by their stored weight or streamline count (no fitting)
   - jointly, one weight per fiber, score = RMS difference per bundle
   - greedily, adding the best candidate per round
4. Write scored tractograms, residual fields, log.txt, scores.csv,
   run_summary.json and decision_log.md to the output folder
"""

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from ..data.bundle import StreamlineBundle
from ..data.images import Mask, PeakField
from ..data.io import (
    IMAGE_EXTENSIONS,
    TRACTOGRAM_EXTENSIONS,
    LoadError,
    adapt_mask_to_grid,
    file_stem,
    list_files,
    load_bundle,
    load_mask,
    load_peak_field,
    save_bundle,
    save_peak_field,
)
from ..evaluation.overlap import OverlapReport, OverlapScorer
from ..fitting.engine import EmptyInput, FitResult, LinearFitEngine
from ..fitting.greedy import GreedySelector, SelectionRound
from ..fitting.regularization import Regularization
from ..utils.logger import ScoreLog, log_decision
from ..utils.memory_manager import get_memory_manager
from .config import PlausibilityConfig, RunMode

logger = logging.getLogger(__name__)

WEIGHT_SCORE_FACTOR = 100000
NO_ANCHOR = "NOANCHOR"

SCORE_COLUMNS = [
    "name", "score", "num_voxels", "num_fibers", "weight_sum", "round", "rmse",
    "best_overlap_reference", "best_overlap_volumetric", "best_overlap_directional",
    "best_dir_overlap_reference", "best_dir_overlap_directional", "best_dir_overlap_volumetric",
    "output_file",
]


@dataclass
class PipelineInputs:
    """Everything loaded before scoring starts"""
    peak_field: PeakField
    candidates: List[StreamlineBundle]
    mask: Optional[Mask] = None
    anchor: Optional[StreamlineBundle] = None
    reference_masks: List[Mask] = field(default_factory=list)
    reference_peaks: List[PeakField] = field(default_factory=list)
    reference_names: List[str] = field(default_factory=list)


@dataclass
class BundleScore:
    """One scored bundle as written to log.txt and scores.csv"""
    name: str
    score: float
    num_voxels: int
    num_fibers: int
    weight_sum: float
    overlap: OverlapReport
    output_file: Optional[Path] = None
    round: Optional[int] = None
    rmse: Optional[float] = None

    def to_record(self) -> Dict:
        best = self.overlap.best_volumetric
        directional = self.overlap.best_directional
        return {
            'name': self.name,
            'score': self.score,
            'num_voxels': self.num_voxels,
            'num_fibers': self.num_fibers,
            'weight_sum': self.weight_sum,
            'round': self.round,
            'rmse': self.rmse,
            'best_overlap_reference': best.name if best.index is not None else None,
            'best_overlap_volumetric': best.volumetric,
            'best_overlap_directional': best.directional,
            'best_dir_overlap_reference': (
                directional.name if directional is not None and directional.index is not None else None
            ),
            'best_dir_overlap_directional': directional.directional if directional is not None else None,
            'best_dir_overlap_volumetric': directional.volumetric if directional is not None else None,
            'output_file': str(self.output_file) if self.output_file is not None else None,
        }


@dataclass
class PlausibilityResult:
    """Outcome of a full run"""
    mode: RunMode
    scores: List[BundleScore]
    residual: PeakField
    anchor_name: str = NO_ANCHOR
    anchor_fit: Optional[FitResult] = None
    anchor_rmse: Optional[float] = None
    joint_fit: Optional[FitResult] = None
    rounds: List[SelectionRound] = field(default_factory=list)
    output_dir: Optional[Path] = None
    elapsed_seconds: float = 0.0

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([s.to_record() for s in self.scores], columns=SCORE_COLUMNS)


def format_duration(seconds: float) -> str:
    """'Hh, Mm and Ss' as used in the run log"""
    total = int(seconds)
    return f"{total // 3600}h, {(total % 3600) // 60}m and {total % 60}s"


class AnchorConstrainedPlausibility:
    """
    Pipeline driver for one plausibility run

    Parameters
    ----------
    config : PlausibilityConfig
        Run options (paths, mode toggles, fit settings)
    logger : logging.Logger, optional
        Logger used by the driver and handed to its components
    """

    def __init__(self, config: PlausibilityConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.output_dir = Path(config.output) if config.output else None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_inputs(self) -> PipelineInputs:
        """
        Load all inputs named in the configuration

        Raises
        ------
        LoadError
            If a mandatory or listed input cannot be read
        DimensionMismatch
            If the fit mask is not on the peak image grid
        """
        config = self.config
        self.config.validate()

        peak_field = load_peak_field(config.peaks)
        if config.flips:
            peak_field = peak_field.flip(config.flip_x, config.flip_y, config.flip_z)
            self.logger.info(
                f"Flipped peaks (x={config.flip_x}, y={config.flip_y}, z={config.flip_z})"
            )

        mask = None
        if config.mask:
            mask = load_mask(config.mask)
            if config.resample_mask:
                mask = adapt_mask_to_grid(mask, peak_field.shape, peak_field.affine)
            peak_field.check_same_grid(mask.shape, mask.affine, "peak image and fit mask")

        reference_masks, reference_names = [], []
        for entry in config.reference_mask_folders:
            for path in list_files(entry, IMAGE_EXTENSIONS):
                reference_masks.append(load_mask(path))
                reference_names.append(file_stem(path))

        reference_peaks = []
        for entry in config.reference_peaks_folders:
            for path in list_files(entry, IMAGE_EXTENSIONS):
                reference_peaks.append(load_peak_field(path))

        candidates_path = Path(config.candidates)
        if not candidates_path.exists():
            raise LoadError(f"Candidate folder not found: {candidates_path}")
        candidate_files = list_files(candidates_path, TRACTOGRAM_EXTENSIONS)
        candidates = []
        for path in candidate_files:
            bundle = load_bundle(path)
            if bundle.is_empty:
                self.logger.info(f"Skipping empty candidate {path.name}")
                continue
            candidates.append(bundle)

        anchor = load_bundle(config.anchor) if config.anchor else None

        self.logger.info(f"Loaded {len(candidate_files)} candidate tracts.")
        self.logger.info(f"Loaded {len(reference_masks)} reference masks.")
        self.logger.info(f"Loaded {len(reference_peaks)} reference peaks.")

        return PipelineInputs(
            peak_field=peak_field,
            candidates=candidates,
            mask=mask,
            anchor=anchor,
            reference_masks=reference_masks,
            reference_peaks=reference_peaks,
            reference_names=reference_names
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> PlausibilityResult:
        """Load inputs and score all candidates"""
        inputs = self.load_inputs()
        return self.process(inputs)

    def process(self, inputs: PipelineInputs) -> PlausibilityResult:
        """
        Score already loaded inputs and write all outputs

        Args:
            inputs: Peak field, candidates, anchor and references

        Returns:
            PlausibilityResult with per-bundle scores and the final residual
        """
        if self.output_dir is None:
            raise ValueError("No output folder configured")

        start_time = time.time()
        config = self.config
        mode = config.mode
        if not self.output_dir.exists():
            self.logger.info("Creating output directory")
        self.output_dir.mkdir(parents=True, exist_ok=True)

        log_decision(
            decision_id="RUN-MODE",
            component="pipeline.plausibility",
            decision=f"Candidates scored in {mode.value} mode",
            rationale=self._mode_rationale(mode),
            parameters={
                'anchor': config.anchor or NO_ANCHOR,
                'lambda': config.lambda_,
                'regularization': config.regularization.value,
                'filter_outliers': config.filter_outliers,
                'num_candidates': len(inputs.candidates),
            },
            output_file=self.output_dir / "decision_log.md"
        )

        scorer = OverlapScorer(
            inputs.reference_masks,
            inputs.reference_peaks,
            inputs.reference_names,
            step_fraction=config.step_fraction,
            logger=self.logger
        )

        with ScoreLog(self.output_dir / "log.txt") as score_log:
            residual, anchor_name, anchor_fit = self.fit_anchor(inputs, score_log)
            anchor_rmse = anchor_fit.rmse if anchor_fit is not None else None

            result = PlausibilityResult(
                mode=mode,
                scores=[],
                residual=residual,
                anchor_name=anchor_name,
                anchor_fit=anchor_fit,
                anchor_rmse=anchor_rmse,
                output_dir=self.output_dir
            )

            if mode in (RunMode.WEIGHTS, RunMode.STREAMLINE_COUNT):
                result.scores = self.score_by_annotation(inputs, scorer, score_log)
            elif mode == RunMode.JOINT:
                result.joint_fit, result.scores, result.residual = self.fit_joint(
                    inputs, residual, scorer, score_log
                )
            else:
                result.rounds, result.scores, result.residual = self.select_greedy(
                    inputs, residual, scorer, score_log
                )

        result.elapsed_seconds = time.time() - start_time
        self._write_summaries(result)

        self.logger.debug(
            f"Process memory: {get_memory_manager(config.memory_limit_gb).get_memory_usage():.2f} GB"
        )
        self.logger.info(f"Plausibility estimation took {format_duration(result.elapsed_seconds)}")
        return result

    @staticmethod
    def _mode_rationale(mode: RunMode) -> str:
        if mode == RunMode.WEIGHTS:
            return "use_weights set: first fiber weight of each candidate is its score"
        if mode == RunMode.STREAMLINE_COUNT:
            return "use_num_streamlines set: fiber count of each candidate is its score"
        if mode == RunMode.GREEDY:
            return "greedy set: candidates added one at a time while RMSE decreases"
        return "default: all candidates fitted jointly with one weight per fiber"

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _engine(self, regularization, fit_per_fiber: bool) -> LinearFitEngine:
        config = self.config
        return LinearFitEngine(
            regularization=regularization,
            lambda_=config.lambda_,
            filter_outliers=config.filter_outliers,
            fit_per_fiber=fit_per_fiber,
            step_fraction=config.step_fraction,
            max_iterations=config.max_iterations,
            memory_limit_gb=config.memory_limit_gb,
            verbose=config.verbose,
            logger=self.logger
        )

    def _reference(self, peak_field: PeakField) -> Tuple[Tuple[int, int, int], np.ndarray]:
        return peak_field.shape, peak_field.affine

    def fit_anchor(
        self,
        inputs: PipelineInputs,
        score_log: ScoreLog
    ) -> Tuple[PeakField, str, Optional[FitResult]]:
        """
        Fit the anchor tractogram as one bundle without regularization

        Returns:
            (residual field, anchor name, fit result); the input field, NOANCHOR
            and None when there is no usable anchor
        """
        anchor = inputs.anchor
        if anchor is None:
            return inputs.peak_field, NO_ANCHOR, None

        name = anchor.name or file_stem(self.config.anchor)
        if anchor.is_empty:
            self.logger.warning(f"Anchor tractogram {name} is empty; continuing without anchor")
            return inputs.peak_field, NO_ANCHOR, None

        self.logger.info("Fit anchor tracts")
        engine = self._engine(Regularization.NONE, fit_per_fiber=True)
        try:
            fit = engine.fit(inputs.peak_field, [anchor], inputs.mask)
        except EmptyInput as e:
            self.logger.warning(f"Anchor fit skipped: {e}")
            return inputs.peak_field, NO_ANCHOR, None

        rms_diff = float(fit.rms_diff_per_bundle[0])
        score_log.anchor(rms_diff, name, fit.rmse)
        self.logger.info(f"Anchor RMSE: {fit.rmse:.5g}")

        anchor_tracts = fit.bundles[0]
        anchor_tracts.set_colors(255, 255, 255)
        reference = self._reference(inputs.peak_field)
        save_bundle(
            anchor_tracts,
            self.output_dir / f"{int(WEIGHT_SCORE_FACTOR * rms_diff)}_{name}.trk",
            reference
        )
        save_peak_field(fit.residual_field, self.output_dir / f"Residual_{name}.nii.gz")
        return fit.residual_field, name, fit

    def score_by_annotation(
        self,
        inputs: PipelineInputs,
        scorer: OverlapScorer,
        score_log: ScoreLog
    ) -> List[BundleScore]:
        """Score candidates by first fiber weight or streamline count, no fitting"""
        use_weights = self.config.mode == RunMode.WEIGHTS
        self.logger.info(
            "Using tract weights as scores" if use_weights else "Using streamline counts as scores"
        )

        scores = []
        for bundle in inputs.candidates:
            if use_weights:
                score = bundle.fiber_weight(0)
                factor = WEIGHT_SCORE_FACTOR
            else:
                score = float(bundle.num_fibers)
                factor = 1
            bundle.color_by_orientation()

            path = self.output_dir / f"{int(factor * score)}_{bundle.name}.trk"
            save_bundle(bundle, path, self._reference(inputs.peak_field))
            scores.append(self._record(bundle, score, inputs, scorer, score_log, path))
        return scores

    def fit_joint(
        self,
        inputs: PipelineInputs,
        residual: PeakField,
        scorer: OverlapScorer,
        score_log: ScoreLog
    ) -> Tuple[Optional[FitResult], List[BundleScore], PeakField]:
        """Fit all candidates at once, one weight per fiber"""
        if not inputs.candidates:
            self.logger.warning("No non-empty candidates to fit")
            return None, [], residual

        self.logger.info("Fit candidate tracts")
        engine = self._engine(self.config.regularization, fit_per_fiber=True)
        fit = engine.fit(residual, inputs.candidates, inputs.mask)

        reference = self._reference(inputs.peak_field)
        scores = []
        for bundle, rms_diff in zip(fit.bundles, fit.rms_diff_per_bundle):
            if self.config.filter_zero_weights:
                bundle = bundle.filter_by_weights(0)
            path = self.output_dir / f"{int(WEIGHT_SCORE_FACTOR * rms_diff)}_{bundle.name}.trk"
            save_bundle(bundle, path, reference)
            scores.append(self._record(bundle, float(rms_diff), inputs, scorer, score_log, path))

        all_candidates = StreamlineBundle.concatenate(fit.bundles, name="AllCandidates")
        all_candidates.color_by_weights(normalize=True)
        save_bundle(all_candidates, self.output_dir / "AllCandidates.trk", reference)
        save_peak_field(fit.residual_field, self.output_dir / "Residual_AllCandidates.nii.gz")
        return fit, scores, fit.residual_field

    def select_greedy(
        self,
        inputs: PipelineInputs,
        residual: PeakField,
        scorer: OverlapScorer,
        score_log: ScoreLog
    ) -> Tuple[List[SelectionRound], List[BundleScore], PeakField]:
        """
        Add candidates one by one while the RMSE decreases

        Rounds start from the empty-model RMSE of ``residual``, not from the
        anchor RMSE.
        """
        config = self.config
        selector = GreedySelector(
            mask=inputs.mask,
            lambda_=config.lambda_,
            filter_outliers=config.filter_outliers,
            n_jobs=config.n_jobs,
            verbose=config.verbose,
            logger=self.logger,
            step_fraction=config.step_fraction,
            max_iterations=config.max_iterations,
            memory_limit_gb=config.memory_limit_gb
        )
        rounds = selector.run(residual, inputs.candidates)

        reference = self._reference(inputs.peak_field)
        scores = []
        for selection in rounds:
            bundle = selection.bundle
            if config.filter_zero_weights:
                bundle = bundle.filter_by_weights(0)
            prefix = f"{selection.round}_{selection.name}"
            path = self.output_dir / f"{prefix}.trk"
            save_bundle(bundle, path, reference)
            save_peak_field(selection.residual, self.output_dir / f"{prefix}.nii.gz")

            score_log.greedy_round(selection.rmse_after, selection.name, selection.covered_directions)
            report = scorer.score(bundle)
            score_log.overlap(report, inputs.reference_names)

            scores.append(BundleScore(
                name=selection.name,
                score=selection.improvement,
                num_voxels=self._covered_voxels(bundle, inputs),
                num_fibers=bundle.num_fibers,
                weight_sum=bundle.total_weight(),
                overlap=report,
                output_file=path,
                round=selection.round,
                rmse=selection.rmse_after
            ))

        final_residual = rounds[-1].residual if rounds else residual
        return rounds, scores, final_residual

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _covered_voxels(self, bundle: StreamlineBundle, inputs: PipelineInputs) -> int:
        """Voxels of the peak grid (inside the fit mask) traversed by the bundle"""
        field = inputs.peak_field
        covered = bundle.density_map(
            field.shape, field.affine, binary=True, step_fraction=self.config.step_fraction
        )
        if inputs.mask is not None:
            covered &= inputs.mask.data
        return int(np.count_nonzero(covered))

    def _record(
        self,
        bundle: StreamlineBundle,
        score: float,
        inputs: PipelineInputs,
        scorer: OverlapScorer,
        score_log: ScoreLog,
        path: Path
    ) -> BundleScore:
        report = scorer.score(bundle)
        record = BundleScore(
            name=bundle.name,
            score=score,
            num_voxels=self._covered_voxels(bundle, inputs),
            num_fibers=bundle.num_fibers,
            weight_sum=bundle.total_weight(),
            overlap=report,
            output_file=path
        )
        score_log.bundle_score(
            record.score, record.name, record.num_voxels, record.num_fibers, record.weight_sum
        )
        score_log.overlap(report, inputs.reference_names)
        return record

    def _write_summaries(self, result: PlausibilityResult):
        frame = result.to_dataframe()
        frame.to_csv(self.output_dir / "scores.csv", index=False)

        summary = {
            'mode': result.mode.value,
            'anchor': result.anchor_name,
            'anchor_rmse': result.anchor_rmse,
            'num_scored': len(result.scores),
            'greedy_rounds': len(result.rounds),
            'final_rmse': (
                result.rounds[-1].rmse_after if result.rounds
                else result.joint_fit.rmse if result.joint_fit is not None
                else result.anchor_rmse
            ),
            'elapsed_seconds': round(result.elapsed_seconds, 3),
            'config': self.config.to_dict(),
        }
        with open(self.output_dir / "run_summary.json", 'w', encoding='utf-8') as f:
            json.dump(summary, f, indent=2)
        self.logger.info(f"Wrote scores for {len(result.scores)} bundles to {self.output_dir}")
