# emfit/_clustering.py
"""Initial clusterers used to seed the EM fitter.

A clusterer turns observations (N, D) into a hard assignment (N,) with labels in
[0, k). The fitter only calls it once, before the first E-step, and only when it
is not asked to start from the caller's model.

- KMeansClusterer:        k-means++ seeding followed by Lloyd iterations in
                          PyTorch. This is the library default, and the fitter
                          recognises it (ClustererKind.KMEANS) when choosing the
                          fast diagonal path.
- SklearnKMeansClusterer: scikit-learn's KMeans, for matching sklearn's seeding.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple

import torch
from sklearn.cluster import KMeans


class ClustererKind(str, Enum):
    KMEANS = "kmeans"
    SKLEARN_KMEANS = "sklearn_kmeans"


# ---------------------------
# k-means helpers
# ---------------------------

def _make_generator(seed: Optional[int], device) -> torch.Generator:
    generator = torch.Generator(device=device)
    if seed is None:
        generator.seed()
    else:
        generator.manual_seed(int(seed))
    return generator


@torch.no_grad()
def _kmeans_plus_plus_init_centroids(
    X: torch.Tensor,
    K: int,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape

    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)

    # First centroid uniformly
    i0 = torch.randint(0, N, (1,), device=X.device, generator=generator).item()
    centroids[0] = X[i0]

    # Closest squared dist to any chosen centroid so far
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total > 0:
            idx = torch.multinomial(closest_d2 / total, 1, generator=generator).item()
        else:
            # every point already sits on a centroid
            idx = torch.randint(0, N, (1,), device=X.device, generator=generator).item()
        centroids[k] = X[idx]

        d2_new = torch.sum((X - centroids[k]) ** 2, dim=1)
        closest_d2 = torch.minimum(closest_d2, d2_new)

    return centroids


@torch.no_grad()
def _kmeans_lloyd_with_init(
    X: torch.Tensor,
    centroids: torch.Tensor,
    n_iter: int = 10,
    generator: Optional[torch.Generator] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Run Lloyd iterations from the given centroids.

    Stops early once assignments no longer change. Empty clusters are reseeded
    with random points. Returns (labels (N,), centroids (K, D)).
    """
    N, D = X.shape
    K, D2 = centroids.shape
    assert D == D2

    centroids = centroids.clone()
    labels = torch.argmin(torch.cdist(X, centroids), dim=1)
    for _ in range(n_iter):
        counts = torch.zeros((K,), device=X.device, dtype=X.dtype)
        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype)

        counts.scatter_add_(0, labels, torch.ones((N,), device=X.device, dtype=X.dtype))
        sums.scatter_add_(0, labels.unsqueeze(1).expand(N, D), X)

        centroids = sums / counts.clamp_min(1.0).unsqueeze(1)

        empty_mask = counts == 0
        if empty_mask.any():
            n_empty = int(empty_mask.sum().item())
            random_idx = torch.randint(0, N, (n_empty,), device=X.device, generator=generator)
            centroids[empty_mask] = X[random_idx]

        new_labels = torch.argmin(torch.cdist(X, centroids), dim=1)
        if torch.equal(new_labels, labels) and not empty_mask.any():
            break
        labels = new_labels

    return labels, centroids


# ---------------------------
# Clusterers
# ---------------------------

class Clusterer:
    """Base class. cluster() returns a LongTensor of labels in [0, k)."""

    kind: ClustererKind

    def cluster(self, X: torch.Tensor, k: int) -> torch.Tensor:
        raise NotImplementedError

    def get_config(self) -> Dict:
        return {"kind": self.kind.value}

    @classmethod
    def from_config(cls, config: Dict) -> "Clusterer":
        params = {key: value for key, value in config.items() if key != "kind"}
        return cls(**params)

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.get_config() == other.get_config()


class KMeansClusterer(Clusterer):
    """k-means++ seeding and Lloyd iterations (PyTorch)."""

    kind = ClustererKind.KMEANS

    def __init__(self, max_iterations: int = 1000, seed: Optional[int] = None) -> None:
        self.max_iterations = max_iterations
        self.seed = seed

    @torch.no_grad()
    def cluster(self, X: torch.Tensor, k: int) -> torch.Tensor:
        generator = _make_generator(self.seed, X.device)
        centroids = _kmeans_plus_plus_init_centroids(X, k, generator=generator)
        labels, _ = _kmeans_lloyd_with_init(X, centroids, n_iter=self.max_iterations, generator=generator)
        return labels

    def get_config(self) -> Dict:
        return {"kind": self.kind.value, "max_iterations": self.max_iterations, "seed": self.seed}

    def __repr__(self) -> str:
        return f"KMeansClusterer(max_iterations={self.max_iterations}, seed={self.seed})"


class SklearnKMeansClusterer(Clusterer):
    """scikit-learn KMeans labels."""

    kind = ClustererKind.SKLEARN_KMEANS

    def __init__(self, n_init: int = 1, random_state: Optional[int] = None) -> None:
        self.n_init = n_init
        self.random_state = random_state

    @torch.no_grad()
    def cluster(self, X: torch.Tensor, k: int) -> torch.Tensor:
        X_np = X.cpu().numpy()
        label = KMeans(
            n_clusters=k,
            n_init=self.n_init,
            random_state=self.random_state,
        ).fit(X_np).labels_
        return torch.from_numpy(label).to(device=X.device, dtype=torch.long)

    def get_config(self) -> Dict:
        return {"kind": self.kind.value, "n_init": self.n_init, "random_state": self.random_state}

    def __repr__(self) -> str:
        return f"SklearnKMeansClusterer(n_init={self.n_init}, random_state={self.random_state})"


_CLUSTERERS = {
    ClustererKind.KMEANS: KMeansClusterer,
    ClustererKind.SKLEARN_KMEANS: SklearnKMeansClusterer,
}


def clusterer_from_config(config: Dict) -> Clusterer:
    try:
        kind = ClustererKind(config["kind"])
    except (KeyError, ValueError):
        raise ValueError(f"Unknown clusterer config {config!r}") from None
    return _CLUSTERERS[kind].from_config(config)
