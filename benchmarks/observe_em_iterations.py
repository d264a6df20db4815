"""Observe EM log-likelihood iteration-by-iteration."""

import os
import sys
import logging

import numpy as np
import torch
from sklearn.mixture import GaussianMixture

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from emfit._clustering import SklearnKMeansClusterer
from emfit._em_fit import EMFit
from emfit._gmm import GMM


N_SAMPLES = 5000
N_DIMS = 20
N_COMPONENTS = 3


def _data():
    rng = np.random.RandomState(42)
    centers = rng.randn(N_COMPONENTS, N_DIMS) * 4.0
    labels = rng.randint(0, N_COMPONENTS, size=N_SAMPLES)
    return centers[labels] + rng.randn(N_SAMPLES, N_DIMS)


def observe_sklearn(X):
    """Observe scikit-learn EM iterations."""
    print("=" * 70)
    print("SCIKIT-LEARN GMM - Observing EM Iterations")
    print("=" * 70)
    print(f"\nConfiguration: N={N_SAMPLES}, D={N_DIMS}, K={N_COMPONENTS}")
    print("Covariance: full, max_iter=20, init=kmeans\n")

    gmm = GaussianMixture(
        n_components=N_COMPONENTS,
        covariance_type="full",
        max_iter=20,
        init_params="kmeans",
        tol=1e-3,
        random_state=42,
        verbose=2,
        verbose_interval=1,
    )
    gmm.fit(X)

    print(f"\nConverged: {gmm.converged_}, iterations: {gmm.n_iter_}")
    print(f"Final total log-likelihood: {gmm.score(X) * len(X):.6f}\n")


def observe_emfit(X):
    """Observe EMFit iterations through its logger."""
    print("=" * 70)
    print("EMFIT - Observing EM Iterations")
    print("=" * 70)
    print(f"\nConfiguration: N={N_SAMPLES}, D={N_DIMS}, K={N_COMPONENTS}")
    print("Covariance: positive definite, max_iterations=20, init=sklearn kmeans\n")

    logger = logging.getLogger("observe_em_iterations")
    logger.setLevel(logging.DEBUG)

    fitter = EMFit(
        max_iterations=20,
        tolerance=1e-3,
        clusterer=SklearnKMeansClusterer(random_state=42),
        logger=logger,
    )
    gmm = GMM(N_COMPONENTS, N_DIMS)
    log_likelihood = gmm.train(torch.from_numpy(X), fitter=fitter)

    print(f"\nFinal total log-likelihood: {log_likelihood:.6f}")
    print(f"Final weights: {gmm.weights.numpy()}")
    print("Final means (first 5 dims of each component):")
    for k, g in enumerate(gmm.components):
        print(f"  Component {k}: {g.mean[:5].numpy()}")
    print("=" * 70 + "\n")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s: %(message)s")
    X = _data()
    observe_sklearn(X)
    observe_emfit(X)
