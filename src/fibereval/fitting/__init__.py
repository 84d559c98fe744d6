"""
Fitting Module

Non-negative streamline weight fitting against peak images.

Main components:
- LinearFitEngine: Sparse regularized least-squares fit of fiber/bundle weights
- Regularization: Available penalty terms and their strategies
- GreedySelector: Round-by-round forward selection of candidate bundles
"""

from .regularization import Regularization, RegularizationContext, get_regularizer
from .engine import (
    LinearFitEngine,
    FitResult,
    EmptyInput,
    NumericalInstabilityWarning,
    fit_bundles,
)
from .greedy import GreedySelector, GreedyState, SelectionRound

__all__ = [
    "Regularization",
    "RegularizationContext",
    "get_regularizer",
    "LinearFitEngine",
    "FitResult",
    "EmptyInput",
    "NumericalInstabilityWarning",
    "fit_bundles",
    "GreedySelector",
    "GreedyState",
    "SelectionRound",
]
