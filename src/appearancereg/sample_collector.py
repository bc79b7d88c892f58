"""Fixed-domain samples and their collection for one metric evaluation.

A SampleSet is a struct-of-arrays container: one row per sample, with the
fixed point, its representer index (position in the statistical model
vector), the fixed intensity and, once mapped, the moving point, moving
intensity and optionally the moving gradient and transform Jacobian.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterator, Optional

import numpy as np

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.metric_exceptions import ConfigurationError
from appearancereg.metric_interfaces import ImageSamplerBase

_PER_SAMPLE_FIELDS = (
    "fixed_points",
    "representer_indices",
    "fixed_values",
    "moving_points",
    "moving_values",
    "moving_gradients",
    "jacobians",
)


@dataclass(frozen=True)
class Sample:
    """One fixed-domain point and what was measured for it."""

    fixed_point: np.ndarray
    representer_index: int
    fixed_value: float
    moving_point: Optional[np.ndarray] = None
    moving_value: Optional[float] = None
    moving_gradient: Optional[np.ndarray] = None
    jacobian: Optional[np.ndarray] = None


@dataclass
class SampleSet:
    """Ordered samples of one evaluation call.

    Attributes:
        fixed_points: (n, d) physical points in the fixed image
        representer_indices: (n,) positions in the model's representer ordering
        fixed_values: (n,) fixed image intensities
        number_of_requested_samples: Sample count the sampler asked for,
            used as the denominator of the valid-sample ratio
        moving_points: (n, d) mapped points, set by the correspondence mapper
        moving_values: (n,) interpolated moving intensities
        moving_gradients: (n, d) moving image gradients at moving_points
        jacobians: (n, d, P) transform Jacobians at fixed_points
    """

    fixed_points: np.ndarray
    representer_indices: np.ndarray
    fixed_values: np.ndarray
    number_of_requested_samples: int = -1
    moving_points: Optional[np.ndarray] = None
    moving_values: Optional[np.ndarray] = None
    moving_gradients: Optional[np.ndarray] = None
    jacobians: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.fixed_points = np.atleast_2d(np.asarray(self.fixed_points, dtype=np.float64))
        self.representer_indices = np.asarray(self.representer_indices, dtype=np.int64)
        self.fixed_values = np.asarray(self.fixed_values, dtype=np.float64)
        n = len(self.representer_indices)
        if len(self.fixed_points) != n or len(self.fixed_values) != n:
            raise ValueError(
                f"Sample arrays disagree in length: {len(self.fixed_points)} points, "
                f"{n} representer indices, {len(self.fixed_values)} values"
            )
        if self.number_of_requested_samples < 0:
            self.number_of_requested_samples = n

    def __len__(self) -> int:
        return len(self.representer_indices)

    def __iter__(self) -> Iterator[Sample]:
        for i in range(len(self)):
            yield Sample(
                fixed_point=self.fixed_points[i],
                representer_index=int(self.representer_indices[i]),
                fixed_value=float(self.fixed_values[i]),
                moving_point=None if self.moving_points is None else self.moving_points[i],
                moving_value=None if self.moving_values is None else float(self.moving_values[i]),
                moving_gradient=None
                if self.moving_gradients is None
                else self.moving_gradients[i],
                jacobian=None if self.jacobians is None else self.jacobians[i],
            )

    @property
    def dimension(self) -> int:
        return self.fixed_points.shape[1]

    def _take(self, selector) -> dict:
        taken = {}
        for name in _PER_SAMPLE_FIELDS:
            value = getattr(self, name)
            taken[name] = None if value is None else value[selector]
        return taken

    def subset(self, mask: np.ndarray) -> "SampleSet":
        """Samples where ``mask`` is True, in their original order."""
        return replace(self, **self._take(np.asarray(mask, dtype=bool)))

    def permuted(self, order: np.ndarray) -> "SampleSet":
        """Samples reordered by the index array ``order``."""
        return replace(self, **self._take(np.asarray(order, dtype=np.int64)))


class SampleCollector(AppearanceRegBase):
    """Obtains the fixed-domain SampleSet for one evaluation from a sampler.

    Sampler failures (for example an empty fixed mask) are configuration
    problems and are not handled here.
    """

    def __init__(self, log_level: int | str = logging.INFO):
        super().__init__(class_name="SampleCollector", log_level=log_level)

    def collect(self, fixed_image, sampler: ImageSamplerBase) -> SampleSet:
        """Draw a fresh SampleSet from ``fixed_image``.

        Args:
            fixed_image: ITK image defining the sampling domain
            sampler: Injected sampler

        Returns:
            SampleSet with at most the sampler's requested number of samples

        Raises:
            ConfigurationError: If the sampler or image is missing, or the
                sampler produced no samples
        """
        if sampler is None:
            raise ConfigurationError("An image sampler must be set before sampling")
        if fixed_image is None:
            raise ConfigurationError("A fixed image must be set before sampling")

        sample_set = sampler.collect(fixed_image)
        if len(sample_set) == 0:
            self.log_error("Sampler %s produced no samples", type(sampler).__name__)
            raise ConfigurationError(
                f"{type(sampler).__name__} produced no samples; "
                "check the fixed image mask"
            )
        self.log_debug(
            "Collected %d of %d requested samples",
            len(sample_set),
            sample_set.number_of_requested_samples,
        )
        return sample_set
