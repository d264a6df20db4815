# tests/test_gaussian.py
import sys
import os

# Add parent directory to path so we can import emfit
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import torch
import pytest

from emfit._gaussian import GaussianDistribution


def _random_spd(rng, D):
    A = rng.randn(D, D)
    return A @ A.T + 0.5 * np.eye(D)


@pytest.mark.parametrize("D", [1, 2, 5])
def test_log_probability_matches_torch_distribution(D):
    rng = np.random.RandomState(7)
    mean = rng.randn(D)
    cov = _random_spd(rng, D)
    X = torch.from_numpy(rng.randn(40, D) * 2.0)

    g = GaussianDistribution(mean, cov)
    reference = torch.distributions.MultivariateNormal(
        torch.from_numpy(mean), covariance_matrix=torch.from_numpy(cov)
    ).log_prob(X)

    assert torch.allclose(g.log_probability(X), reference, atol=1e-10)
    assert torch.allclose(g.probability(X), reference.exp(), atol=1e-12)


def test_default_component_is_standard_normal():
    g = GaussianDistribution(dimension=3)
    assert g.dimensionality == 3
    assert torch.equal(g.mean, torch.zeros(3, dtype=torch.float64))
    assert torch.equal(g.covariance, torch.eye(3, dtype=torch.float64))

    expected = -1.5 * np.log(2 * np.pi)
    assert g.log_probability(torch.zeros(1, 3)).item() == pytest.approx(expected)


def test_needs_mean_or_dimension():
    with pytest.raises(ValueError):
        GaussianDistribution()


def test_covariance_shape_is_checked():
    g = GaussianDistribution(dimension=2)
    with pytest.raises(ValueError):
        g.covariance = torch.eye(3)


def test_non_positive_definite_covariance_raises():
    g = GaussianDistribution(dimension=2)
    with pytest.raises(torch.linalg.LinAlgError):
        g.covariance = torch.tensor([[1.0, 2.0], [2.0, 1.0]])


def test_setters_copy_their_input():
    mean = torch.tensor([1.0, 2.0], dtype=torch.float64)
    g = GaussianDistribution(mean)
    mean[0] = 100.0
    assert g.mean[0].item() == 1.0


def test_random_matches_moments():
    mean = torch.tensor([3.0, -1.0], dtype=torch.float64)
    cov = torch.tensor([[2.0, 0.6], [0.6, 1.0]], dtype=torch.float64)
    g = GaussianDistribution(mean, cov)

    generator = torch.Generator().manual_seed(0)
    samples = g.random(20000, generator=generator)

    assert samples.shape == (20000, 2)
    assert torch.allclose(samples.mean(dim=0), mean, atol=0.05)
    assert torch.allclose(torch.cov(samples.T), cov, atol=0.08)
