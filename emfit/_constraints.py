# emfit/_constraints.py
"""Covariance constraint policies.

A policy projects a (D, D) covariance onto a feasible family. The fitter calls
apply_constraint() once per updated covariance, both after the initial
clustering and after every M-step.

Policies:
- NoConstraint:               full covariance, unchanged
- DiagonalConstraint:         off-diagonal entries zeroed
- PositiveDefiniteConstraint: eigenvalues clamped so the matrix stays positive
                              definite with condition number <= 1e5 (default)
- EigenvalueRatioConstraint:  eigenvalues forced to fixed ratios of the smallest

Each policy carries a ConstraintKind tag (used by the fitter to pick the fast
diagonal path) and a JSON-friendly config dict for EMFit.state_dict().
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Sequence

import torch


class ConstraintKind(str, Enum):
    NONE = "none"
    DIAGONAL = "diagonal"
    POSITIVE_DEFINITE = "positive_definite"
    EIGENVALUE_RATIO = "eigenvalue_ratio"


def _symmetrize_upper(cov: torch.Tensor) -> torch.Tensor:
    """Mirror the upper triangle into the lower one."""
    return torch.triu(cov) + torch.triu(cov, diagonal=1).T


class CovarianceConstraint:
    """Base class. Subclasses return the projected matrix from apply_constraint."""

    kind: ConstraintKind

    def apply_constraint(self, covariance: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def get_config(self) -> Dict:
        return {"kind": self.kind.value}

    @classmethod
    def from_config(cls, config: Dict) -> "CovarianceConstraint":
        return cls()

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.get_config() == other.get_config()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class NoConstraint(CovarianceConstraint):
    kind = ConstraintKind.NONE

    def apply_constraint(self, covariance: torch.Tensor) -> torch.Tensor:
        return covariance


class DiagonalConstraint(CovarianceConstraint):
    kind = ConstraintKind.DIAGONAL

    def apply_constraint(self, covariance: torch.Tensor) -> torch.Tensor:
        return torch.diag(torch.diagonal(covariance))


class PositiveDefiniteConstraint(CovarianceConstraint):
    """Keep the covariance positive definite and reasonably conditioned.

    If the smallest eigenvalue is not positive, the largest is below MIN_EIGENVALUE,
    or the condition number exceeds MAX_CONDITION, every eigenvalue is raised to at
    least max(lambda_max / MAX_CONDITION, MIN_EIGENVALUE) and the matrix is
    reassembled from the eigendecomposition. A well-conditioned matrix is only
    symmetrized.
    """

    kind = ConstraintKind.POSITIVE_DEFINITE

    MAX_CONDITION = 1e5
    MIN_EIGENVALUE = 1e-50

    def apply_constraint(self, covariance: torch.Tensor) -> torch.Tensor:
        covariance = _symmetrize_upper(covariance)
        eigval, eigvec = torch.linalg.eigh(covariance)  # ascending

        lo = float(eigval[0])
        hi = float(eigval[-1])
        if lo <= 0.0 or hi < self.MIN_EIGENVALUE or hi > self.MAX_CONDITION * lo:
            min_eigval = max(hi / self.MAX_CONDITION, self.MIN_EIGENVALUE)
            eigval = eigval.clamp_min(min_eigval)
            covariance = (eigvec * eigval.unsqueeze(0)) @ eigvec.T
            covariance = 0.5 * (covariance + covariance.T)

        return covariance


class EigenvalueRatioConstraint(CovarianceConstraint):
    """Force the eigenvalues to ratios[i] * lambda_min.

    ratios has one entry per dimension, starts at 1 and is non-decreasing, so the
    smallest eigenvalue is preserved and the projection is idempotent.
    """

    kind = ConstraintKind.EIGENVALUE_RATIO

    def __init__(self, ratios: Sequence[float]) -> None:
        ratios = torch.as_tensor(list(ratios), dtype=torch.float64)
        if ratios.dim() != 1 or ratios.numel() == 0:
            raise ValueError("ratios must be a non-empty 1-D sequence")
        if abs(float(ratios[0]) - 1.0) > 1e-20:
            raise ValueError(f"first element of ratios must be 1, got {float(ratios[0])}")
        if (ratios[1:] < ratios[:-1]).any():
            raise ValueError("ratios must be non-decreasing")
        self.ratios = ratios

    def apply_constraint(self, covariance: torch.Tensor) -> torch.Tensor:
        if covariance.shape[0] != self.ratios.numel():
            raise ValueError(
                f"ratios has {self.ratios.numel()} entries but covariance has dimension {covariance.shape[0]}"
            )
        covariance = _symmetrize_upper(covariance)
        eigval, eigvec = torch.linalg.eigh(covariance)

        eigval = eigval[0] * self.ratios.to(covariance.dtype)
        covariance = (eigvec * eigval.unsqueeze(0)) @ eigvec.T
        return 0.5 * (covariance + covariance.T)

    def get_config(self) -> Dict:
        return {"kind": self.kind.value, "ratios": self.ratios.tolist()}

    @classmethod
    def from_config(cls, config: Dict) -> "EigenvalueRatioConstraint":
        return cls(config["ratios"])

    def __repr__(self) -> str:
        return f"EigenvalueRatioConstraint(ratios={self.ratios.tolist()})"


_CONSTRAINTS = {
    ConstraintKind.NONE: NoConstraint,
    ConstraintKind.DIAGONAL: DiagonalConstraint,
    ConstraintKind.POSITIVE_DEFINITE: PositiveDefiniteConstraint,
    ConstraintKind.EIGENVALUE_RATIO: EigenvalueRatioConstraint,
}


def constraint_from_config(config: Dict) -> CovarianceConstraint:
    try:
        kind = ConstraintKind(config["kind"])
    except (KeyError, ValueError):
        raise ValueError(f"Unknown covariance constraint config {config!r}") from None
    return _CONSTRAINTS[kind].from_config(config)
