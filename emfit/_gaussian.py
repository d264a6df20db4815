# emfit/_gaussian.py
"""Multivariate Gaussian component used by the EM fitter.

Densities are evaluated through the Cholesky factor of the covariance, the same
way the precision-Cholesky E-step does it: for cov = L L^T,

    log N(x | mu, cov) = -0.5 * (D log(2 pi) + log|cov| + ||L^{-1} (x - mu)||^2)

The factor is recomputed whenever the covariance is assigned, so a covariance
that is not positive definite fails at assignment time with
torch.linalg.LinAlgError.

All tensors are float64. Observations are (N, D) with one point per row.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np
import torch


def _to_float64(x) -> torch.Tensor:
    """Convert array-likes to a float64 tensor (no copy for float64 tensors)."""
    if not torch.is_tensor(x):
        x = torch.as_tensor(np.asarray(x))
    return x.to(torch.float64)


class GaussianDistribution:
    """A single Gaussian: mean (D,) and covariance (D, D).

    Setting a covariance factors it with Cholesky, so a matrix that is not
    positive definite raises torch.linalg.LinAlgError. During initial
    clustering an empty or single-point cluster yields such a matrix unless the
    fitter uses PositiveDefiniteConstraint, the only constraint that repairs it.
    """

    def __init__(
        self,
        mean: Optional[torch.Tensor] = None,
        covariance: Optional[torch.Tensor] = None,
        dimension: Optional[int] = None,
    ) -> None:
        if mean is None:
            if dimension is None:
                raise ValueError("either mean or dimension must be given")
            mean = torch.zeros(dimension, dtype=torch.float64)
        self.mean = mean

        if covariance is None:
            covariance = torch.eye(self.dimensionality, dtype=torch.float64)
        self.covariance = covariance

    @property
    def dimensionality(self) -> int:
        return int(self._mean.shape[0])

    @property
    def mean(self) -> torch.Tensor:
        return self._mean

    @mean.setter
    def mean(self, value) -> None:
        value = _to_float64(value).clone()
        if value.dim() != 1:
            raise ValueError(f"mean must be 1-D, got shape {tuple(value.shape)}")
        self._mean = value

    @property
    def covariance(self) -> torch.Tensor:
        return self._covariance

    @covariance.setter
    def covariance(self, value) -> None:
        value = _to_float64(value).clone()
        D = self.dimensionality
        if value.shape != (D, D):
            raise ValueError(f"covariance must have shape {(D, D)}, got {tuple(value.shape)}")
        self._covariance = value
        self._factor_covariance()

    def _factor_covariance(self) -> None:
        # cov = L L^T (L lower); log|cov| = 2 * sum log diag(L)
        self._cov_lower = torch.linalg.cholesky(self._covariance)
        self._log_det_cov = 2.0 * torch.sum(torch.log(torch.diagonal(self._cov_lower)))

    @torch.no_grad()
    def log_probability(self, observations) -> torch.Tensor:
        """Log-density of every row of observations, shape (N,)."""
        X = _to_float64(observations)
        D = self.dimensionality

        diff = X - self._mean.unsqueeze(0)  # (N,D)
        y = torch.linalg.solve_triangular(self._cov_lower, diff.T, upper=False)  # (D,N)
        mahal = torch.sum(y * y, dim=0)  # (N,)

        return -0.5 * (D * math.log(2 * math.pi) + self._log_det_cov + mahal)

    @torch.no_grad()
    def probability(self, observations) -> torch.Tensor:
        return torch.exp(self.log_probability(observations))

    @torch.no_grad()
    def random(self, n_samples: int = 1, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        """Draw n_samples points, shape (n_samples, D)."""
        z = torch.randn((self.dimensionality, n_samples), generator=generator, dtype=torch.float64)
        return (self._mean.unsqueeze(1) + self._cov_lower @ z).T

    def __repr__(self) -> str:
        return f"GaussianDistribution(dimension={self.dimensionality})"
