"""
Integrated abundance: the expected number of events in a region,
Lambda = int exp(eta(s)) ds, and the posterior predictive distribution of
the number of events N ~ Poisson(Lambda).
"""

import numpy as np
from scipy import stats

from typing import Dict, Optional

from lgcp_spde.exceptions import ModelError
from lgcp_spde.integration import IntegrationPoints
from lgcp_spde.predict import summarise_samples


def abundance_samples(result, ips: Optional[IntegrationPoints] = None,
                      n_samples: int = 1000, seed: Optional[int] = None) -> np.ndarray:
    """
    Posterior samples of Lambda = sum_j w_j exp(eta(u_j)).

    :raises ModelError: if the region has zero total weight, e.g. when it does
        not overlap the mesh
    """
    ips = ips if ips is not None else result.ips
    if ips.total_measure <= 0:
        raise ModelError("Abundance region has zero total weight; does it overlap the mesh "
                         "and use the same coordinates?")
    eta = result.sample_linear_predictor(ips.locations, n_samples=n_samples, seed=seed)
    with np.errstate(over='ignore'):
        return np.exp(eta) @ ips.weights


def count_distribution(lambda_samples: np.ndarray, n_max: Optional[int] = None,
                       chunk_cells: int = 250_000) -> Dict[str, np.ndarray]:
    """
    Posterior predictive distribution of N, the average of Poisson(Lambda_s) pmfs.

    The support runs from 8 Poisson sd below the smallest Lambda to 8 sd above
    the largest, and the pmfs are accumulated over unique Lambda values in
    blocks of at most ``chunk_cells`` entries.

    :param lambda_samples: Samples of Lambda
    :param n_max: Largest count; defaults to well beyond the upper tail
    :param chunk_cells: Size of the pmf blocks held in memory at once
    :returns: Dict with 'n', 'pmf', 'mean', 'sd', 'q0.025', 'median', 'q0.975'
    """
    lam = np.asarray(lambda_samples, dtype=float).ravel()
    if len(lam) == 0 or np.any(~np.isfinite(lam)) or np.any(lam < 0):
        raise ValueError("Abundance samples must be finite and non-negative")

    bottom, top = float(np.min(lam)), float(np.max(lam))
    if n_max is None:
        n_max = int(np.ceil(top + 8.0 * np.sqrt(top) + 10))
    n_min = min(max(0, int(np.floor(bottom - 8.0 * np.sqrt(bottom) - 10))), n_max)
    n = np.arange(n_min, n_max + 1)

    values, counts = np.unique(lam, return_counts=True)
    pmf = np.zeros(len(n))
    block = max(1, chunk_cells // len(n))
    for start in range(0, len(values), block):
        stop = start + block
        pmf += counts[start:stop] @ stats.poisson.pmf(n[None, :], values[start:stop, None])
    pmf /= len(lam)
    cdf = np.cumsum(pmf)

    mean = float(np.sum(n * pmf))
    var = float(np.sum((n - mean) ** 2 * pmf))

    def quantile(p):
        return int(n[min(np.searchsorted(cdf, p), len(n) - 1)])

    return {
        'n': n,
        'pmf': pmf,
        'mean': mean,
        'sd': float(np.sqrt(var)),
        'q0.025': quantile(0.025),
        'median': quantile(0.5),
        'q0.975': quantile(0.975),
    }


def estimate_abundance(
    result,
    ips: Optional[IntegrationPoints] = None,
    n_samples: int = 1000,
    seed: Optional[int] = None,
    n_max: Optional[int] = None,
) -> Dict[str, Dict]:
    """
    Estimate abundance in the observation domain or a sub-region.

    :param result: LGCPResult
    :param ips: Integration points of the region; defaults to those used for fitting
    :param n_samples: Posterior samples of the latent field
    :param seed: Random seed
    :param n_max: Largest count of the N distribution
    :returns: Dict with 'lambda' (summary of Lambda and its samples) and 'N'
        (predictive distribution of the count)

    Examples
    --------
    >>> abundance = estimate_abundance(result, n_samples=2000, seed=1)
    >>> abundance['lambda']['mean'], abundance['N']['q0.975']
    """
    lam = abundance_samples(result, ips, n_samples, seed)
    summary = {k: float(v[0]) for k, v in summarise_samples(lam[:, None]).items()}
    summary['samples'] = lam
    return {
        'lambda': summary,
        'N': count_distribution(lam, n_max),
    }
