# emfit/_gmm.py
"""Gaussian mixture model trained with EMFit.

GMM owns its components (list of GaussianDistribution) and mixing weights (K,)
and delegates fitting to an EMFit instance, optionally running several trials
and keeping the one with the highest log-likelihood.

Exposed after train():
- components, weights
- log_likelihood_ (of the kept trial)
"""

from __future__ import annotations

import copy
import logging
import math
from typing import Callable, Dict, List, Optional, Tuple

import torch

from emfit._em_fit import EMFit
from emfit._gaussian import GaussianDistribution, _to_float64


class GMM:
    """A mixture of `gaussians` full-covariance Gaussians in `dimensionality` dims."""

    def __init__(
        self,
        gaussians: int,
        dimensionality: int,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if gaussians <= 0:
            raise ValueError("gaussians must be positive")
        if dimensionality <= 0:
            raise ValueError("dimensionality must be positive")

        self.gaussians = gaussians
        self.dimensionality = dimensionality

        self.components: List[GaussianDistribution] = [
            GaussianDistribution(dimension=dimensionality) for _ in range(gaussians)
        ]
        self.weights = torch.full((gaussians,), 1.0 / gaussians, dtype=torch.float64)

        self.log_likelihood_: float = float("-inf")
        self.logger = logging.getLogger(__name__) if logger is None else logger

    # -----------------------
    # Training
    # -----------------------

    @torch.no_grad()
    def train(
        self,
        observations,
        trials: int = 1,
        use_existing_model: bool = False,
        fitter: Optional[EMFit] = None,
    ) -> float:
        """Fit the mixture; returns the log-likelihood of the kept model."""
        fitter = EMFit() if fitter is None else fitter
        X = _to_float64(observations)

        def run(components, weights):
            return fitter.estimate(X, components, weights, use_existing_model)

        return self._train(X, run, trials)

    @torch.no_grad()
    def train_weighted(
        self,
        observations,
        probabilities,
        trials: int = 1,
        use_existing_model: bool = False,
        fitter: Optional[EMFit] = None,
    ) -> float:
        """Like train(), with a weight per observation."""
        fitter = EMFit() if fitter is None else fitter
        X = _to_float64(observations)
        probabilities = _to_float64(probabilities)

        def run(components, weights):
            return fitter.estimate_weighted(X, probabilities, components, weights, use_existing_model)

        return self._train(X, run, trials)

    def _train(
        self,
        X: torch.Tensor,
        run: Callable[[List[GaussianDistribution], torch.Tensor], float],
        trials: int,
    ) -> float:
        if trials <= 0:
            raise ValueError("trials must be positive")
        if X.dim() != 2 or X.shape[1] != self.dimensionality:
            raise ValueError(
                f"observations must have shape (N, {self.dimensionality}), got {tuple(X.shape)}"
            )

        # every trial starts from the model as it is now
        start = (self.components, self.weights)
        best: Optional[Tuple[List[GaussianDistribution], torch.Tensor]] = None
        best_l = float("-inf")

        for trial in range(trials):
            components = copy.deepcopy(start[0])
            weights = start[1].clone()
            l = run(components, weights)
            self.logger.debug("GMM.train(): log-likelihood of trial %d is %f.", trial, l)

            if best is None or l > best_l:
                best = (components, weights)
                best_l = l

        self.components, self.weights = best
        self.log_likelihood_ = best_l
        self.logger.debug("GMM.train(): log-likelihood of trained GMM is %f.", best_l)
        return best_l

    # -----------------------
    # Scoring
    # -----------------------

    @torch.no_grad()
    def _weighted_log_prob(self, X: torch.Tensor) -> torch.Tensor:
        log_prob = torch.stack([g.log_probability(X) for g in self.components], dim=1)  # (N,K)
        return log_prob + torch.log(self.weights).unsqueeze(0)

    @torch.no_grad()
    def log_probability(self, observations) -> torch.Tensor:
        """Per-point log of the mixture density (N,)."""
        X = _to_float64(observations)
        return torch.logsumexp(self._weighted_log_prob(X), dim=1)

    @torch.no_grad()
    def probability(self, observations) -> torch.Tensor:
        return torch.exp(self.log_probability(observations))

    @torch.no_grad()
    def component_probability(self, observations, component: int) -> torch.Tensor:
        """Weighted density of a single component, weights[k] * p_k(x) (N,)."""
        X = _to_float64(observations)
        return self.weights[component] * self.components[component].probability(X)

    @torch.no_grad()
    def predict_proba(self, observations) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        X = _to_float64(observations)
        weighted = self._weighted_log_prob(X)
        return torch.exp(weighted - torch.logsumexp(weighted, dim=1, keepdim=True))

    @torch.no_grad()
    def classify(self, observations) -> torch.Tensor:
        return torch.argmax(self._weighted_log_prob(_to_float64(observations)), dim=1)

    def n_parameters(self) -> int:
        """Parameter count for AIC/BIC (full covariances)."""
        K, D = self.gaussians, self.dimensionality
        return int((K - 1) + K * D + K * D * (D + 1) // 2)

    @torch.no_grad()
    def aic(self, observations) -> float:
        """Akaike information criterion."""
        ll = float(self.log_probability(observations).sum().item())
        return 2.0 * self.n_parameters() - 2.0 * ll

    @torch.no_grad()
    def bic(self, observations) -> float:
        """Bayesian information criterion."""
        X = _to_float64(observations)
        ll = float(self.log_probability(X).sum().item())
        return math.log(X.shape[0]) * self.n_parameters() - 2.0 * ll

    # -----------------------
    # Sampling
    # -----------------------

    @torch.no_grad()
    def random(
        self,
        n_samples: int,
        generator: Optional[torch.Generator] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Sample from the mixture.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")

        labels = torch.multinomial(self.weights, n_samples, replacement=True, generator=generator)

        X_out = torch.empty((n_samples, self.dimensionality), dtype=torch.float64)
        for k, gaussian in enumerate(self.components):
            mask = labels == k
            n_k = int(mask.sum().item())
            if n_k:
                X_out[mask] = gaussian.random(n_k, generator=generator)

        return X_out, labels

    # -----------------------
    # Parameters
    # -----------------------

    def state_dict(self) -> Dict[str, torch.Tensor]:
        return {
            "weights": self.weights.clone(),
            "means": torch.stack([g.mean for g in self.components]),
            "covariances": torch.stack([g.covariance for g in self.components]),
        }

    def load_state_dict(self, state: Dict[str, torch.Tensor]) -> None:
        weights = _to_float64(state["weights"])
        means = _to_float64(state["means"])
        covariances = _to_float64(state["covariances"])

        K, D = means.shape
        if weights.shape != (K,) or covariances.shape != (K, D, D):
            raise ValueError(
                f"inconsistent shapes: weights {tuple(weights.shape)}, means {tuple(means.shape)}, "
                f"covariances {tuple(covariances.shape)}"
            )

        self.gaussians, self.dimensionality = int(K), int(D)
        self.weights = weights.clone()
        self.components = [GaussianDistribution(means[k], covariances[k]) for k in range(K)]

    def __repr__(self) -> str:
        return f"GMM(gaussians={self.gaussians}, dimensionality={self.dimensionality})"
