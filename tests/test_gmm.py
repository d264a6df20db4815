# tests/test_gmm.py
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
import math

import numpy as np
import torch
import pytest

from emfit._clustering import KMeansClusterer
from emfit._constraints import DiagonalConstraint
from emfit._em_fit import EMFit
from emfit._gmm import GMM


def _blobs(seed=0, n_per=200):
    rng = np.random.RandomState(seed)
    X1 = rng.randn(n_per, 2) + np.array([-6.0, 0.0])
    X2 = rng.randn(n_per, 2) * 0.7 + np.array([6.0, 3.0])
    truth = np.repeat([0, 1], n_per)
    return torch.from_numpy(np.concatenate([X1, X2])), truth


def _agreement(labels, truth):
    labels = np.asarray(labels)
    return max((labels == truth).mean(), (labels != truth).mean())


def test_new_model_is_standard():
    gmm = GMM(3, 2)
    assert len(gmm.components) == 3
    assert torch.allclose(gmm.weights, torch.full((3,), 1.0 / 3.0, dtype=torch.float64))
    for g in gmm.components:
        assert torch.equal(g.covariance, torch.eye(2, dtype=torch.float64))


@pytest.mark.parametrize("gaussians, dimensionality", [(0, 2), (2, 0), (-1, 3)])
def test_invalid_sizes(gaussians, dimensionality):
    with pytest.raises(ValueError):
        GMM(gaussians, dimensionality)


def test_train_and_classify():
    X, truth = _blobs()
    gmm = GMM(2, 2)
    fitter = EMFit(clusterer=KMeansClusterer(seed=1))

    l = gmm.train(X, fitter=fitter)

    assert math.isfinite(l)
    assert l == pytest.approx(gmm.log_likelihood_)
    assert l == pytest.approx(gmm.log_probability(X).sum().item(), rel=1e-9)
    assert _agreement(gmm.classify(X).numpy(), truth) >= 0.99
    assert abs(gmm.weights.sum().item() - 1.0) < 1e-9


def test_multiple_trials_keep_best():
    class RecordingEMFit(EMFit):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.results = []

        def estimate(self, *args, **kwargs):
            l = super().estimate(*args, **kwargs)
            self.results.append(l)
            return l

    X, _ = _blobs(seed=1)
    fitter = RecordingEMFit(max_iterations=50)

    l = GMM(3, 2).train(X, trials=4, fitter=fitter)

    assert len(fitter.results) == 4
    assert l == pytest.approx(max(fitter.results), rel=1e-12)


def test_injected_logger_receives_trial_results(caplog):
    X, _ = _blobs(seed=9, n_per=50)
    sink = logging.getLogger("tests.gmm_sink")
    caplog.set_level(logging.DEBUG, logger="tests.gmm_sink")

    gmm = GMM(2, 2, logger=sink)
    gmm.train(X, trials=2, fitter=EMFit(clusterer=KMeansClusterer(seed=0)))

    messages = [r.getMessage() for r in caplog.records if r.name == "tests.gmm_sink"]
    assert any("log-likelihood of trial 0" in m for m in messages)
    assert any("log-likelihood of trial 1" in m for m in messages)
    assert any("log-likelihood of trained GMM" in m for m in messages)


def test_train_with_existing_model():
    X, truth = _blobs(seed=2)
    gmm = GMM(2, 2)
    gmm.components[0].mean = torch.tensor([-5.0, 0.0])
    gmm.components[1].mean = torch.tensor([5.0, 2.0])

    gmm.train(X, use_existing_model=True, fitter=EMFit(max_iterations=100))

    assert torch.allclose(gmm.components[0].mean, torch.tensor([-6.0, 0.0], dtype=torch.float64), atol=0.3)
    assert torch.allclose(gmm.components[1].mean, torch.tensor([6.0, 3.0], dtype=torch.float64), atol=0.3)


def test_train_with_diagonal_constraint():
    X, truth = _blobs(seed=3)
    gmm = GMM(2, 2)
    gmm.train(X, fitter=EMFit(constraint=DiagonalConstraint()))

    for g in gmm.components:
        assert g.covariance[0, 1].item() == 0.0
    assert _agreement(gmm.classify(X).numpy(), truth) >= 0.99


def test_train_weighted():
    X, truth = _blobs(seed=4)
    probabilities = torch.ones(X.shape[0], dtype=torch.float64)
    probabilities[truth == 1] = 3.0

    gmm = GMM(2, 2)
    gmm.train_weighted(X, probabilities, fitter=EMFit(clusterer=KMeansClusterer(seed=0)))

    heavy = int(torch.argmax(gmm.weights))
    assert gmm.weights[heavy].item() == pytest.approx(0.75, abs=0.02)


def test_train_validates_arguments():
    X, _ = _blobs(seed=5, n_per=10)
    with pytest.raises(ValueError):
        GMM(2, 2).train(X, trials=0)
    with pytest.raises(ValueError):
        GMM(2, 3).train(X)


def test_probability_and_predict_proba():
    X, _ = _blobs(seed=6, n_per=50)
    gmm = GMM(2, 2)
    gmm.train(X, fitter=EMFit(clusterer=KMeansClusterer(seed=2)))

    p = gmm.probability(X)
    assert (p > 0).all()
    assert torch.allclose(torch.log(p), gmm.log_probability(X))

    parts = torch.stack([gmm.component_probability(X, k) for k in range(2)], dim=1)
    assert torch.allclose(parts.sum(dim=1), p)

    resp = gmm.predict_proba(X)
    assert torch.allclose(resp.sum(dim=1), torch.ones(100, dtype=torch.float64))
    assert torch.equal(torch.argmax(resp, dim=1), gmm.classify(X))


def test_random_samples_follow_model():
    gmm = GMM(2, 2)
    gmm.weights = torch.tensor([0.25, 0.75], dtype=torch.float64)
    gmm.components[0].mean = torch.tensor([-10.0, 0.0])
    gmm.components[1].mean = torch.tensor([10.0, 0.0])

    generator = torch.Generator().manual_seed(0)
    X, labels = gmm.random(8000, generator=generator)

    assert X.shape == (8000, 2)
    assert (labels == 1).double().mean().item() == pytest.approx(0.75, abs=0.02)
    assert torch.allclose(X[labels == 0].mean(dim=0), torch.tensor([-10.0, 0.0], dtype=torch.float64), atol=0.1)

    with pytest.raises(ValueError):
        gmm.random(0)


def test_information_criteria():
    X, _ = _blobs(seed=7, n_per=50)
    gmm = GMM(2, 2)
    gmm.train(X, fitter=EMFit(clusterer=KMeansClusterer(seed=0)))

    assert gmm.n_parameters() == 1 + 4 + 6
    ll = gmm.log_probability(X).sum().item()
    assert gmm.aic(X) == pytest.approx(2 * 11 - 2 * ll)
    assert gmm.bic(X) == pytest.approx(math.log(100) * 11 - 2 * ll)


def test_state_dict_round_trip():
    X, _ = _blobs(seed=8, n_per=40)
    gmm = GMM(2, 2)
    gmm.train(X, fitter=EMFit(clusterer=KMeansClusterer(seed=0)))

    other = GMM(1, 1)
    other.load_state_dict(gmm.state_dict())

    assert other.gaussians == 2 and other.dimensionality == 2
    assert torch.allclose(other.log_probability(X), gmm.log_probability(X))

    bad = gmm.state_dict()
    bad["weights"] = torch.ones(3)
    with pytest.raises(ValueError):
        other.load_state_dict(bad)
