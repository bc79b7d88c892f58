"""Projection of sampled moving intensities onto an appearance model.

The measure is the mean squared reconstruction residual

    f = || v - r ||^2 / n,    r = mu_S + B_S c

where v holds the n moving intensities, mu_S and B_S are the rows of the
model mean and basis at the samples' representer indices, and c are the
principal-component coefficients. When every representer is sampled B_S has
orthonormal columns and c = B_S^T (v - mu_S). For a partial sample set, c is
the least-squares solution, which is again the orthogonal projection onto
the span of B_S. Either way the residual lies in the orthogonal complement
of the model subspace.
"""

import logging
from dataclasses import dataclass

import numpy as np

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.metric_exceptions import InsufficientSamplesError
from appearancereg.sample_collector import SampleSet
from appearancereg.statistical_model import LevelModel


@dataclass
class ReconstructionResult:
    """Outcome of projecting one SampleSet onto a LevelModel.

    Attributes:
        measure: Mean squared residual
        coefficients: (k,) principal-component coefficients
        reconstruction: (n,) reconstructed intensities at the samples
        residual: (n,) ``v - reconstruction``
        number_of_samples: n
    """

    measure: float
    coefficients: np.ndarray
    reconstruction: np.ndarray
    residual: np.ndarray
    number_of_samples: int


class ReconstructionScorer(AppearanceRegBase):
    """Scores sampled intensities by their distance to the model subspace."""

    def __init__(self, log_level: int | str = logging.INFO):
        super().__init__(class_name="ReconstructionScorer", log_level=log_level)

    def score(self, sample_set: SampleSet, level_model: LevelModel) -> ReconstructionResult:
        """Project the moving intensities of ``sample_set`` and score the residual.

        Args:
            sample_set: Mapped samples carrying ``moving_values``
            level_model: Selected model record (basis already truncated)

        Returns:
            ReconstructionResult

        Raises:
            InsufficientSamplesError: If the set is empty
        """
        if sample_set.moving_values is None:
            raise ValueError("Samples must be mapped before they can be scored")

        n = len(sample_set)
        if n == 0:
            raise InsufficientSamplesError(0, sample_set.number_of_requested_samples)

        indices = sample_set.representer_indices
        if indices.max() >= level_model.model.number_of_representers:
            raise IndexError(
                f"Representer index {indices.max()} out of range for a model with "
                f"{level_model.model.number_of_representers} representers"
            )

        v = sample_set.moving_values
        mean_s = level_model.mean[indices]
        difference = v - mean_s

        k = level_model.number_of_components
        if k == 0:
            coefficients = np.zeros(0)
            reconstruction = mean_s.copy()
        else:
            basis_s = level_model.basis[indices, :]
            if n == level_model.model.number_of_representers:
                coefficients = basis_s.T @ difference
            else:
                if n <= k:
                    self.log_warning(
                        "%d samples do not exceed %d model components; "
                        "the reconstruction fits them exactly",
                        n,
                        k,
                    )
                coefficients = np.linalg.lstsq(basis_s, difference, rcond=None)[0]
            reconstruction = mean_s + basis_s @ coefficients

        residual = v - reconstruction
        measure = float(np.sum(residual * residual) / n)

        return ReconstructionResult(
            measure=measure,
            coefficients=coefficients,
            reconstruction=reconstruction,
            residual=residual,
            number_of_samples=n,
        )

    def reconstruct(self, coefficients: np.ndarray, level_model: LevelModel) -> np.ndarray:
        """Full representer-ordered reconstruction ``mu + B c``."""
        if level_model.number_of_components == 0:
            return np.array(level_model.mean, copy=True)
        return level_model.mean + level_model.basis @ coefficients
