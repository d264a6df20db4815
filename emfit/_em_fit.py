# emfit/_em_fit.py
"""Expectation-Maximization fitter for Gaussian mixtures.

EMFit fits K GaussianDistribution components plus a (K,) mixing-weight tensor to
observations (N, D), optionally with per-point weights. The caller owns the
model; estimate() mutates it in place and returns the final log-likelihood.

Loop, per iteration:
- E-step: resp[:, k] = weights[k] * p_k(X), rows normalized by their sum.
  Rows whose sum is exactly 0 stay all-zero.
- M-step: effective mass nk = resp.sum(0) (times point weights when given).
  Components with nk != 0 get a new mean, then a new covariance around that
  mean, projected by the constraint. Components with nk == 0 are left as is.
  weights = nk / total mass.
- log-likelihood: sum_n log sum_k weights[k] p_k(x_n).

The loop runs while |l - l_old| > tolerance and iteration != max_iterations,
with iteration starting at 1. So max_iterations=1 runs no E/M pass at all and
max_iterations=0 only stops on convergence.

Strategies:
- clusterer (default KMeansClusterer) seeds the model when use_initial_model is
  False.
- constraint (default PositiveDefiniteConstraint) projects every covariance.
  With a DiagonalConstraint the unweighted estimate() is handed to DiagonalGMM,
  which converges with its own fixed tolerance.
"""

from __future__ import annotations

import logging
import sys
from typing import Dict, List, Optional

import numpy as np
import torch

from emfit._clustering import Clusterer, ClustererKind, KMeansClusterer, clusterer_from_config
from emfit._constraints import (
    ConstraintKind,
    CovarianceConstraint,
    PositiveDefiniteConstraint,
    constraint_from_config,
)
from emfit._diag_gmm import DiagonalGMM
from emfit._gaussian import GaussianDistribution, _to_float64


STATE_VERSION = 1


def _as_weights_tensor(weights) -> torch.Tensor:
    """View the caller's weight vector as a tensor sharing its memory."""
    if isinstance(weights, np.ndarray):
        return torch.from_numpy(weights)
    return weights


# ---------------------------
# EM steps
# ---------------------------

@torch.no_grad()
def _responsibilities(
    X: torch.Tensor,
    components: List[GaussianDistribution],
    weights: torch.Tensor,
) -> torch.Tensor:
    """E-step. Returns the (N, K) responsibility matrix."""
    resp = torch.stack(
        [w * gaussian.probability(X) for gaussian, w in zip(components, weights.tolist())],
        dim=1,
    )  # (N,K)

    # all-zero rows are divided by 1 instead of 0 so they stay zero
    row_sums = resp.sum(dim=1, keepdim=True)  # (N,1)
    return resp / row_sums.masked_fill(row_sums == 0, 1.0)


@torch.no_grad()
def _maximization_step(
    X: torch.Tensor,
    resp: torch.Tensor,
    components: List[GaussianDistribution],
    weights: torch.Tensor,
    constraint: CovarianceConstraint,
    probabilities: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """M-step, in place on components and weights. Returns effective mass (K,)."""
    if probabilities is None:
        point_resp = resp
        total_mass = float(X.shape[0])
    else:
        point_resp = resp * probabilities.unsqueeze(1)
        total_mass = probabilities.sum()

    nk = point_resp.sum(dim=0)  # (K,)

    for k, gaussian in enumerate(components):
        if nk[k] == 0:
            continue

        r = point_resp[:, k]
        mean = (r @ X) / nk[k]  # (D,)
        diff = X - mean.unsqueeze(0)  # (N,D)
        covariance = (diff * r.unsqueeze(1)).T @ diff / nk[k]  # (D,D)

        gaussian.mean = mean
        gaussian.covariance = constraint.apply_constraint(covariance)

    weights.copy_(nk / total_mass)
    return nk


# ---------------------------
# Fitter
# ---------------------------

class EMFit:
    """EM fitter with pluggable initial clustering and covariance constraint."""

    DEFAULT_MAX_ITERATIONS = 300
    DEFAULT_TOLERANCE = 1e-10

    def __init__(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
        clusterer: Optional[Clusterer] = None,
        constraint: Optional[CovarianceConstraint] = None,
        logger: Optional[logging.Logger] = None,
        fast_diagonal: bool = True,
    ) -> None:
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.clusterer = KMeansClusterer() if clusterer is None else clusterer
        self.constraint = PositiveDefiniteConstraint() if constraint is None else constraint
        self.logger = logging.getLogger(__name__) if logger is None else logger
        self.fast_diagonal = fast_diagonal

    # -----------------------
    # Accessors
    # -----------------------

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._max_iterations = int(value)

    @property
    def tolerance(self) -> float:
        return self._tolerance

    @tolerance.setter
    def tolerance(self, value: float) -> None:
        self._tolerance = float(value)

    @property
    def clusterer(self) -> Clusterer:
        return self._clusterer

    @clusterer.setter
    def clusterer(self, value: Clusterer) -> None:
        self._clusterer = value

    @property
    def constraint(self) -> CovarianceConstraint:
        return self._constraint

    @constraint.setter
    def constraint(self, value: CovarianceConstraint) -> None:
        self._constraint = value

    # -----------------------
    # Public API
    # -----------------------

    @torch.no_grad()
    def estimate(
        self,
        observations,
        components: List[GaussianDistribution],
        weights,
        use_initial_model: bool = False,
    ) -> float:
        """Fit components/weights to observations (N, D). Returns the log-likelihood."""
        X = _to_float64(observations)
        weights = _as_weights_tensor(weights)

        if self.fast_diagonal and self._constraint.kind == ConstraintKind.DIAGONAL:
            return self._diagonal_estimate(X, components, weights, use_initial_model)

        return self._estimate(X, components, weights, use_initial_model, probabilities=None)

    @torch.no_grad()
    def estimate_weighted(
        self,
        observations,
        probabilities,
        components: List[GaussianDistribution],
        weights,
        use_initial_model: bool = False,
    ) -> float:
        """Like estimate(), with a nonnegative weight (N,) per observation."""
        X = _to_float64(observations)
        probabilities = _to_float64(probabilities)
        weights = _as_weights_tensor(weights)

        return self._estimate(X, components, weights, use_initial_model, probabilities=probabilities)

    def _estimate(
        self,
        X: torch.Tensor,
        components: List[GaussianDistribution],
        weights: torch.Tensor,
        use_initial_model: bool,
        probabilities: Optional[torch.Tensor],
    ) -> float:
        if not use_initial_model:
            self.initial_clustering(X, components, weights)

        l = self.log_likelihood(X, components, weights)
        self.logger.debug("EMFit.estimate(): initial clustering log-likelihood: %f", l)

        l_old = -sys.float_info.max

        iteration = 1
        while abs(l - l_old) > self._tolerance and iteration != self._max_iterations:
            self.logger.info("EMFit.estimate(): iteration %d, log-likelihood %f.", iteration, l)

            resp = _responsibilities(X, components, weights)
            _maximization_step(X, resp, components, weights, self._constraint, probabilities)

            l_old = l
            l = self.log_likelihood(X, components, weights)

            iteration += 1

        return l

    @torch.no_grad()
    def initial_clustering(
        self,
        observations,
        components: List[GaussianDistribution],
        weights,
    ) -> None:
        """Seed components/weights from a hard clustering of the observations."""
        X = _to_float64(observations)
        weights = _as_weights_tensor(weights)
        N, D = X.shape
        K = len(components)

        assignments = self._clusterer.cluster(X, K).to(device=X.device, dtype=torch.long)

        counts = torch.bincount(assignments, minlength=K).to(X.dtype)  # (K,)
        denom = counts.clamp_min(1.0)

        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype).index_add_(0, assignments, X)
        means = sums / denom.unsqueeze(1)  # (K,D)

        # second pass around the cluster means
        diff = X - means[assignments]  # (N,D)
        outer = diff.unsqueeze(2) * diff.unsqueeze(1)  # (N,D,D)
        covs = torch.zeros((K, D, D), device=X.device, dtype=X.dtype).index_add_(0, assignments, outer)
        covs = covs / denom.view(K, 1, 1)

        for k, gaussian in enumerate(components):
            gaussian.mean = means[k]
            gaussian.covariance = self._constraint.apply_constraint(covs[k])

        new_weights = counts / N
        weights.copy_(new_weights / new_weights.sum())

    @torch.no_grad()
    def log_likelihood(
        self,
        observations,
        components: List[GaussianDistribution],
        weights,
    ) -> float:
        """sum_n log sum_k weights[k] p_k(x_n). Zero-density points give -inf."""
        X = _to_float64(observations)
        weights = _as_weights_tensor(weights)

        likelihoods = torch.stack(
            [w * gaussian.probability(X) for gaussian, w in zip(components, weights.tolist())],
            dim=0,
        )  # (K,N)
        point_likelihoods = likelihoods.sum(dim=0)  # (N,)

        for j in torch.nonzero(point_likelihoods == 0).flatten().tolist():
            self.logger.info("Likelihood of point %d is 0!  It is probably an outlier.", j)

        return float(torch.log(point_likelihoods).sum().item())

    # -----------------------
    # Fast diagonal path
    # -----------------------

    def _diagonal_estimate(
        self,
        X: torch.Tensor,
        components: List[GaussianDistribution],
        weights: torch.Tensor,
        use_initial_model: bool,
    ) -> float:
        if self._tolerance != self.DEFAULT_TOLERANCE:
            self.logger.warning(
                "EMFit.estimate(): tolerance ignored when training GMMs with DiagonalConstraint."
            )

        N, D = X.shape
        K = len(components)
        g = DiagonalGMM()

        # the default k-means is left to the learner's own seeding
        if self._clusterer.kind != ClustererKind.KMEANS or use_initial_model:
            if not use_initial_model:
                self.initial_clustering(X, components, weights)

            g.reset(D, K)
            g.set_params(
                torch.stack([gaussian.mean for gaussian in components]),
                torch.stack([torch.diagonal(gaussian.covariance) for gaussian in components]),
                weights,
            )
            g.learn(X, K, seed_mode="keep_existing", km_iter=0,
                    em_iter=self._max_iterations, var_floor=1e-10)
        else:
            g.learn(X, K, seed_mode="static_subset", km_iter=1000,
                    em_iter=self._max_iterations, var_floor=1e-10)

        weights.copy_(g.hefts)
        for k, gaussian in enumerate(components):
            gaussian.mean = g.means[k]
            gaussian.covariance = torch.diag(g.dcovs[k])

        return float(g.log_p(X).sum().item())

    # -----------------------
    # Persistence
    # -----------------------

    def state_dict(self) -> Dict:
        """Versioned, JSON-serializable record of the tunables."""
        return {
            "version": STATE_VERSION,
            "max_iterations": self._max_iterations,
            "tolerance": self._tolerance,
            "clusterer": self._clusterer.get_config(),
            "constraint": self._constraint.get_config(),
        }

    def load_state_dict(self, state: Dict) -> None:
        version = state.get("version")
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported EMFit state version {version!r} (expected {STATE_VERSION})")

        self.max_iterations = state["max_iterations"]
        self.tolerance = state["tolerance"]
        self.clusterer = clusterer_from_config(state["clusterer"])
        self.constraint = constraint_from_config(state["constraint"])

    @classmethod
    def from_state_dict(cls, state: Dict, logger: Optional[logging.Logger] = None) -> "EMFit":
        fitter = cls(logger=logger)
        fitter.load_state_dict(state)
        return fitter

    def __repr__(self) -> str:
        return (
            f"EMFit(max_iterations={self._max_iterations}, tolerance={self._tolerance}, "
            f"clusterer={self._clusterer!r}, constraint={self._constraint!r})"
        )
