# emfit/_diag_gmm.py
"""Diagonal-covariance GMM learner (the fitter's fast path).

EMFit hands diagonal-constrained fits to this learner. It keeps all parameters
as stacked tensors and runs a vectorized, log-domain EM:

- means: (K, D)
- dcovs: (K, D)   per-component per-dimension variances
- hefts: (K,)     mixing weights

Convergence uses a fixed tolerance (TOLERANCE, machine epsilon for float64) on
the change of the mean per-point log-likelihood. It does not take a tolerance
argument: the fitter's own tolerance never reaches this learner.

Seeding modes for learn():
- 'keep_existing':  start from the parameters set by set_params()
- 'static_subset':  evenly spaced data points as initial means
- 'random_subset':  randomly chosen data points as initial means
Any mode is followed by km_iter Lloyd k-means iterations when km_iter > 0, after
which variances and hefts are re-estimated from the hard assignment.
"""

from __future__ import annotations

import math
from typing import List, Optional

import torch

from emfit._clustering import _kmeans_lloyd_with_init
from emfit._gaussian import _to_float64


SEED_MODES = ("keep_existing", "static_subset", "random_subset")


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _estimate_log_gaussian_prob_diag(
    X: torch.Tensor,
    means: torch.Tensor,
    dcovs: torch.Tensor,
) -> torch.Tensor:
    """Diag log N(X | means, dcovs) for all components at once, shape (N, K)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert dcovs.shape == (K, D)

    precisions_chol = 1.0 / torch.sqrt(dcovs)   # (K,D)
    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)
    y = diff * precisions_chol.unsqueeze(0)     # (N,K,D)
    mahal = torch.sum(y * y, dim=2)             # (N,K)

    # 0.5 * logdet(precision) = sum_d log(prec_chol_{k,d})
    log_det_term = torch.sum(torch.log(precisions_chol), dim=1)  # (K,)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


class DiagonalGMM:
    """Vectorized EM learner for diagonal-covariance mixtures."""

    TOLERANCE = float(torch.finfo(torch.float64).eps)

    def __init__(self) -> None:
        self.means: Optional[torch.Tensor] = None
        self.dcovs: Optional[torch.Tensor] = None
        self.hefts: Optional[torch.Tensor] = None

        self.n_iter_: int = 0
        self.converged_: bool = False
        self.lower_bounds_: List[float] = []

    @property
    def n_dims(self) -> int:
        return 0 if self.means is None else int(self.means.shape[1])

    @property
    def n_gaus(self) -> int:
        return 0 if self.means is None else int(self.means.shape[0])

    def reset(self, n_dims: int, n_gaus: int) -> None:
        """Zero means, unit variances, uniform hefts."""
        self.means = torch.zeros((n_gaus, n_dims), dtype=torch.float64)
        self.dcovs = torch.ones((n_gaus, n_dims), dtype=torch.float64)
        self.hefts = torch.full((n_gaus,), 1.0 / n_gaus, dtype=torch.float64)

    def set_params(self, means, dcovs, hefts) -> None:
        means = _to_float64(means).clone()
        dcovs = _to_float64(dcovs).clone()
        hefts = _to_float64(hefts).clone()

        if means.dim() != 2:
            raise ValueError(f"means must have shape (K,D), got {tuple(means.shape)}")
        if dcovs.shape != means.shape:
            raise ValueError(f"dcovs must have shape {tuple(means.shape)}, got {tuple(dcovs.shape)}")
        if hefts.shape != (means.shape[0],):
            raise ValueError(f"hefts must have shape ({means.shape[0]},), got {tuple(hefts.shape)}")

        self.means, self.dcovs, self.hefts = means, dcovs, hefts

    def _check_fitted(self) -> None:
        if self.means is None:
            raise RuntimeError("Model has no parameters; call reset(), set_params() or learn() first.")

    # -----------------------
    # Seeding
    # -----------------------

    @torch.no_grad()
    def _seed_means(self, X: torch.Tensor, n_gaus: int, seed_mode: str) -> torch.Tensor:
        N = X.shape[0]
        if seed_mode == "static_subset":
            idx = torch.linspace(0, N - 1, n_gaus).round().long()
        elif N >= n_gaus:
            idx = torch.randperm(N)[:n_gaus]
        else:
            idx = torch.randint(0, N, (n_gaus,))
        return X[idx].clone()

    @torch.no_grad()
    def _params_from_labels(self, X: torch.Tensor, labels: torch.Tensor, var_floor: float) -> None:
        N, D = X.shape
        K = self.n_gaus

        counts = torch.bincount(labels, minlength=K).to(X.dtype)
        diff = X - self.means[labels]  # (N,D)
        sq = torch.zeros((K, D), dtype=X.dtype).index_add_(0, labels, diff * diff)

        self.dcovs = (sq / counts.clamp_min(1.0).unsqueeze(1)).clamp_min(var_floor)
        self.hefts = counts / N

    # -----------------------
    # EM
    # -----------------------

    @torch.no_grad()
    def _em_iterate(self, X: torch.Tensor, em_iter: int, var_floor: float) -> None:
        tiny = torch.finfo(X.dtype).tiny

        prev = self.avg_log_p(X)
        self.lower_bounds_ = [prev]
        self.converged_ = False
        self.n_iter_ = 0

        for _ in range(em_iter):
            # E-step
            weighted_log_prob = _estimate_log_gaussian_prob_diag(X, self.means, self.dcovs) + \
                _safe_log(self.hefts).unsqueeze(0)  # (N,K)
            log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
            resp = torch.exp(weighted_log_prob - log_prob_norm.unsqueeze(1))  # (N,K)

            # M-step; components with no mass keep their parameters
            nk = resp.sum(dim=0)  # (K,)
            active = nk > tiny

            new_means = (resp.T @ X) / nk.clamp_min(tiny).unsqueeze(1)  # (K,D)
            diff = X.unsqueeze(1) - new_means.unsqueeze(0)  # (N,K,D)
            new_dcovs = (resp.unsqueeze(2) * diff ** 2).sum(dim=0) / nk.clamp_min(tiny).unsqueeze(1)
            new_dcovs = new_dcovs.clamp_min(var_floor)

            self.means = torch.where(active.unsqueeze(1), new_means, self.means)
            self.dcovs = torch.where(active.unsqueeze(1), new_dcovs, self.dcovs)
            self.hefts = nk / nk.sum()

            self.n_iter_ += 1
            current = self.avg_log_p(X)
            self.lower_bounds_.append(current)

            if not math.isfinite(current):
                break
            if abs(current - prev) <= self.TOLERANCE:
                self.converged_ = True
                break
            prev = current

    # -----------------------
    # Public API
    # -----------------------

    @torch.no_grad()
    def learn(
        self,
        observations,
        n_gaus: int,
        seed_mode: str = "static_subset",
        km_iter: int = 10,
        em_iter: int = 5,
        var_floor: float = 1e-10,
    ) -> bool:
        """Fit the mixture. Returns True when all parameters come out finite."""
        if seed_mode not in SEED_MODES:
            raise ValueError(f"seed_mode must be one of {SEED_MODES}, got {seed_mode!r}")
        if n_gaus <= 0:
            raise ValueError("n_gaus must be positive")

        X = _to_float64(observations)
        N, D = X.shape

        if seed_mode == "keep_existing":
            self._check_fitted()
            if (self.n_gaus, self.n_dims) != (n_gaus, D):
                raise ValueError(
                    f"existing model has shape {(self.n_gaus, self.n_dims)}, expected {(n_gaus, D)}"
                )
            self.dcovs = self.dcovs.clamp_min(var_floor)
        else:
            self.reset(D, n_gaus)
            self.means = self._seed_means(X, n_gaus, seed_mode)

        if km_iter > 0:
            labels, self.means = _kmeans_lloyd_with_init(X, self.means, n_iter=km_iter)
            self._params_from_labels(X, labels, var_floor)

        if em_iter > 0:
            self._em_iterate(X, em_iter, var_floor)

        return bool(
            torch.isfinite(self.means).all()
            and torch.isfinite(self.dcovs).all()
            and torch.isfinite(self.hefts).all()
        )

    @torch.no_grad()
    def log_p(self, observations) -> torch.Tensor:
        """Per-point mixture log-density, shape (N,)."""
        self._check_fitted()
        X = _to_float64(observations)
        weighted = _estimate_log_gaussian_prob_diag(X, self.means, self.dcovs) + \
            _safe_log(self.hefts).unsqueeze(0)
        return torch.logsumexp(weighted, dim=1)

    @torch.no_grad()
    def avg_log_p(self, observations) -> float:
        return float(self.log_p(observations).mean().item())

    @torch.no_grad()
    def assign(self, observations) -> torch.Tensor:
        """Index of the most probable component for every point."""
        self._check_fitted()
        X = _to_float64(observations)
        weighted = _estimate_log_gaussian_prob_diag(X, self.means, self.dcovs) + \
            _safe_log(self.hefts).unsqueeze(0)
        return torch.argmax(weighted, dim=1)
