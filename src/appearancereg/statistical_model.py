"""Statistical appearance models and their per-level collection.

A StatisticalModel is a principal-component model of image intensities:
a mean vector, an orthonormal basis (one column per component) and the
variance of each component. Vector entries follow the representer ordering,
the ITK buffer order of the model's reference image.

A ModelCollection maps each registration level to a LevelModel record. The
collection is populated once before registration and read-only afterwards.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Optional

import numpy as np

from appearancereg.metric_exceptions import ConfigurationError

ORTHONORMALITY_TOLERANCE = 1e-6


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


def _check_orthonormal(basis: np.ndarray, name: str) -> None:
    if basis.shape[1] == 0:
        return
    gram = basis.T @ basis
    if not np.allclose(gram, np.eye(basis.shape[1]), atol=ORTHONORMALITY_TOLERANCE):
        raise ValueError(f"{name} columns are not orthonormal")


@dataclass(frozen=True, eq=False)
class StatisticalModel:
    """Immutable principal-component appearance model.

    Attributes:
        mean: (N,) mean intensity vector
        basis: (N, K) orthonormal principal directions, one column per component
        variance: (K,) variance of each component, in decreasing order
        reference_image: Optional ITK image whose voxel grid defines the
            representer ordering; samples for this model are drawn from it
    """

    mean: np.ndarray
    basis: np.ndarray
    variance: np.ndarray
    reference_image: Optional[Any] = None

    def __post_init__(self) -> None:
        mean = _read_only(np.ravel(self.mean))
        basis = _read_only(self.basis)
        if basis.ndim == 1:
            basis = _read_only(basis.reshape(-1, 1))
        variance = _read_only(np.ravel(self.variance))

        if basis.shape[0] != mean.shape[0]:
            raise ValueError(
                f"Basis has {basis.shape[0]} rows but the mean has {mean.shape[0]} entries"
            )
        if variance.shape[0] != basis.shape[1]:
            raise ValueError(
                f"{variance.shape[0]} variances given for {basis.shape[1]} components"
            )
        _check_orthonormal(basis, "Model basis")

        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "basis", basis)
        object.__setattr__(self, "variance", variance)

    @property
    def number_of_representers(self) -> int:
        return self.mean.shape[0]

    @property
    def number_of_components(self) -> int:
        return self.basis.shape[1]


@dataclass(frozen=True, eq=False)
class LevelModel:
    """Configuration record of one registration level.

    Attributes:
        level: Resolution level index
        model: Statistical model used at this level
        basis: (N, k) orthonormal basis used for projection
        number_of_components: k, the number of basis columns
    """

    level: int
    model: StatisticalModel
    basis: np.ndarray
    number_of_components: int

    @property
    def mean(self) -> np.ndarray:
        return self.model.mean

    @property
    def reference_image(self):
        return self.model.reference_image


class ModelCollection:
    """Read-only mapping from resolution level to LevelModel.

    Args:
        models: Mapping from level index to StatisticalModel
        bases: Optional parallel mapping from level index to an orthonormal
            basis matrix. Levels without an entry use the model's own basis.

    Raises:
        ValueError: If a basis does not match its model or is not orthonormal
        ConfigurationError: If a basis is given for a level without a model
    """

    def __init__(
        self,
        models: Mapping[int, StatisticalModel],
        bases: Optional[Mapping[int, np.ndarray]] = None,
    ):
        bases = dict(bases or {})
        unknown = set(bases) - set(models)
        if unknown:
            raise ConfigurationError(
                f"Basis matrices given for levels without a model: {sorted(unknown)}"
            )

        records = {}
        for level in sorted(models):
            model = models[level]
            if level in bases:
                basis = _read_only(bases[level])
                if basis.shape[0] != model.number_of_representers:
                    raise ValueError(
                        f"Level {level} basis has {basis.shape[0]} rows, model has "
                        f"{model.number_of_representers} representers"
                    )
                _check_orthonormal(basis, f"Level {level} basis")
            else:
                basis = model.basis
            records[int(level)] = LevelModel(
                level=int(level),
                model=model,
                basis=basis,
                number_of_components=basis.shape[1],
            )
        self._records = MappingProxyType(records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, level) -> bool:
        return level in self._records

    def __iter__(self) -> Iterator[LevelModel]:
        return iter(self._records.values())

    def __getitem__(self, level: int) -> LevelModel:
        try:
            return self._records[level]
        except KeyError:
            raise ConfigurationError(
                f"No statistical model for level {level}; "
                f"available levels: {self.levels}"
            ) from None

    @property
    def levels(self) -> list[int]:
        return list(self._records)

    def model_for(self, level: int) -> StatisticalModel:
        return self[level].model

    def basis_for(self, level: int) -> np.ndarray:
        return self[level].basis
