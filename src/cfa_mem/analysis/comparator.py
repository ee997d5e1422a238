"""
Comparator
==========

Aligns the ML-CFA and Bayesian-MEM estimates with each other and with the
ground truth.

Both fits are identified only up to a joint sign flip of loadings and latent
scores. The Bayesian fit is oriented by its positive-mean loading
hyperprior, so the ML solution is aligned to it: when the congruence
(uncentred correlation) of the two loading vectors is negative, the ML
loadings and factor scores are negated. No other transformation is applied.

Usage:
    from cfa_mem.analysis.comparator import compare

    table = compare(parameters, latent, ml_result, sampling_result)
    print(table.items)
    print(table.recovery())
"""

from dataclasses import dataclass
from typing import Dict

import numpy as np
import pandas as pd

from ..estimation.bayes_mem import SamplingResult
from ..estimation.ml_cfa import MLFitResult
from ..exceptions import IncompleteSampling, InvalidParameter
from ..simulation.one_factor_simulator import GenerativeParameters, LatentFactorDraw
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ComparisonTable:
    """Per-item and per-subject estimates side by side."""
    items: pd.DataFrame
    subjects: pd.DataFrame
    ml_sign_flipped: bool
    n_chains: int

    def recovery(self) -> pd.DataFrame:
        """
        Pearson r and mean absolute error of each estimate.

        Rows compare ML and Bayes against truth, and ML against Bayes.
        """
        pairs = [
            ('loading', 'ml', 'true', self.items),
            ('loading', 'bayes', 'true', self.items),
            ('loading', 'ml', 'bayes', self.items),
            ('intercept', 'ml', 'true', self.items),
            ('intercept', 'bayes', 'true', self.items),
            ('intercept', 'ml', 'bayes', self.items),
            ('residual_variance', 'ml', 'true', self.items),
            ('residual_variance', 'bayes', 'true', self.items),
            ('latent', 'ml', 'true', self.subjects),
            ('latent', 'bayes', 'true', self.subjects),
            ('latent', 'ml', 'bayes', self.subjects),
        ]
        records = []
        for quantity, estimate, reference, frame in pairs:
            x = frame[f'{estimate}_{quantity}'].to_numpy()
            y = frame[f'{reference}_{quantity}'].to_numpy()
            records.append({
                'quantity': quantity,
                'estimate': estimate,
                'reference': reference,
                'pearson_r': _pearson(x, y),
                'mae': float(np.mean(np.abs(x - y))),
            })
        return pd.DataFrame(records)

    def correlation(self, quantity: str, estimate: str, reference: str = 'true') -> float:
        frame = self.subjects if quantity == 'latent' else self.items
        return _pearson(frame[f'{estimate}_{quantity}'].to_numpy(),
                        frame[f'{reference}_{quantity}'].to_numpy())

    def to_dict(self) -> Dict[str, pd.DataFrame]:
        return {'items': self.items, 'subjects': self.subjects}


def _pearson(x: np.ndarray, y: np.ndarray) -> float:
    if len(x) < 2 or np.std(x) == 0 or np.std(y) == 0:
        return float('nan')
    return float(np.corrcoef(x, y)[0, 1])


def congruence(a: np.ndarray, b: np.ndarray) -> float:
    """Tucker's congruence coefficient (uncentred correlation)."""
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(a @ b / denom)


def compare(parameters: GenerativeParameters,
            latent: LatentFactorDraw,
            ml_result: MLFitResult,
            posterior: SamplingResult,
            min_chains: int = 1) -> ComparisonTable:
    """
    Build the joint parameter table.

    Args:
        parameters: True generating parameters
        latent: True latent scores
        ml_result: ML-CFA fit
        posterior: Bayesian-MEM sampling result (possibly partial)
        min_chains: Minimum number of successful chains required

    Raises:
        IncompleteSampling: if fewer than ``min_chains`` chains succeeded
        InvalidParameter: if the fits used different identification anchors
            or disagree on the data dimensions
    """
    if posterior.n_successful < min_chains:
        raise IncompleteSampling(
            f"Only {posterior.n_successful} of {posterior.n_chains_requested} chains "
            f"succeeded; {min_chains} required",
            successful_chains=posterior.successful_chain_ids,
            failed_chains=sorted(posterior.failures),
        )
    if ml_result.anchor != posterior.anchor:
        raise InvalidParameter(
            "ML-CFA and Bayesian-MEM fits used different identification anchors",
            ml_anchor=ml_result.anchor,
            bayes_anchor=posterior.anchor,
        )

    estimates = posterior.point_estimates()
    m = parameters.n_items
    n = latent.n_subjects
    if ml_result.n_items != m or len(estimates.loadings) != m:
        raise InvalidParameter("Item counts of the fits and the ground truth differ")
    if len(ml_result.factor_scores) != n or len(estimates.latent) != n:
        raise InvalidParameter("Subject counts of the fits and the ground truth differ")

    flipped = congruence(ml_result.loadings, estimates.loadings) < 0
    sign = -1.0 if flipped else 1.0
    if flipped:
        logger.info("ML loadings negatively congruent with Bayesian loadings; flipping ML sign")

    items = pd.DataFrame({
        'true_loading': parameters.loadings,
        'true_intercept': parameters.intercepts,
        'true_residual_variance': parameters.residual_variances,
        'ml_loading': sign * ml_result.loadings,
        'ml_intercept': ml_result.intercepts,
        'ml_residual_variance': ml_result.residual_variances,
        'bayes_loading': estimates.loadings,
        'bayes_intercept': estimates.intercepts,
        'bayes_residual_variance': estimates.residual_variances,
    }, index=pd.RangeIndex(m, name='item'))

    subjects = pd.DataFrame({
        'true_latent': latent.scores,
        'ml_latent': sign * ml_result.factor_scores,
        'bayes_latent': estimates.latent,
    }, index=pd.RangeIndex(n, name='subject'))

    return ComparisonTable(items=items, subjects=subjects,
                           ml_sign_flipped=flipped, n_chains=posterior.n_successful)
