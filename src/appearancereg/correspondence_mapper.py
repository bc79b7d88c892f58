"""Mapping of fixed samples into the moving image.

For the current transform parameters, every fixed sample is mapped to the
moving image and its intensity interpolated. Samples that land outside the
moving buffer or mask, or whose intensity (or gradient) is not finite, are
dropped. If too few samples survive, InsufficientSamplesError is raised for
the metric to handle.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import numpy as np

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.metric_exceptions import InsufficientSamplesError
from appearancereg.metric_interfaces import MetricInterpolatorBase, MetricTransformBase
from appearancereg.sample_collector import SampleSet


class CorrespondenceMapper(AppearanceRegBase):
    """Annotates a SampleSet with moving intensities for given parameters.

    Attributes:
        required_ratio_of_valid_samples (float): Minimum fraction of the
            sampler's request that must map inside the moving image
        minimum_number_of_samples (int): Minimum absolute number of valid samples
        number_of_threads (int): Worker threads used for interpolation
    """

    def __init__(
        self,
        required_ratio_of_valid_samples: float = 0.25,
        minimum_number_of_samples: int = 1,
        number_of_threads: int = 1,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name="CorrespondenceMapper", log_level=log_level)
        self.required_ratio_of_valid_samples = required_ratio_of_valid_samples
        self.minimum_number_of_samples = minimum_number_of_samples
        self.number_of_threads = number_of_threads

    def _interpolate_chunk(
        self,
        interpolator: MetricInterpolatorBase,
        points: np.ndarray,
        compute_derivatives: bool,
    ):
        values, inside = interpolator.evaluate_points(points)
        gradients = None
        if compute_derivatives:
            gradients = np.full(points.shape, np.nan)
            if inside.any():
                gradients[inside] = interpolator.gradients(points[inside])
        return values, inside, gradients

    def _interpolate(
        self,
        interpolator: MetricInterpolatorBase,
        points: np.ndarray,
        compute_derivatives: bool,
    ):
        if self.number_of_threads <= 1 or len(points) < 2 * self.number_of_threads:
            return self._interpolate_chunk(interpolator, points, compute_derivatives)

        # Chunks are reassembled in sample order so the result is
        # independent of the thread count.
        chunks = np.array_split(points, self.number_of_threads)
        with ThreadPoolExecutor(max_workers=self.number_of_threads) as executor:
            results = list(
                executor.map(
                    lambda chunk: self._interpolate_chunk(
                        interpolator, chunk, compute_derivatives
                    ),
                    chunks,
                )
            )
        values = np.concatenate([r[0] for r in results])
        inside = np.concatenate([r[1] for r in results])
        gradients = None
        if compute_derivatives:
            gradients = np.concatenate([r[2] for r in results])
        return values, inside, gradients

    def check_number_of_samples(
        self, number_of_valid_samples: int, number_of_requested_samples: int
    ) -> None:
        """Raise InsufficientSamplesError if too few samples are valid."""
        required = max(
            self.minimum_number_of_samples,
            self.required_ratio_of_valid_samples * number_of_requested_samples,
        )
        if number_of_valid_samples == 0 or number_of_valid_samples < required:
            raise InsufficientSamplesError(
                number_of_valid_samples, number_of_requested_samples
            )

    def map_samples(
        self,
        sample_set: SampleSet,
        transform: MetricTransformBase,
        interpolator: MetricInterpolatorBase,
        parameters: np.ndarray,
        compute_derivatives: bool = False,
    ) -> SampleSet:
        """Map ``sample_set`` through ``transform`` and interpolate the moving image.

        Args:
            sample_set: Fixed-domain samples
            transform: Transform evaluated with ``parameters``
            interpolator: Moving image interpolator
            parameters: Transform parameter vector (not modified)
            compute_derivatives: Also record moving image gradients and
                transform Jacobians

        Returns:
            New SampleSet holding only the valid samples, annotated with
            ``moving_points`` and ``moving_values`` (and ``moving_gradients``
            and ``jacobians`` when requested)

        Raises:
            InsufficientSamplesError: If fewer samples remain than required
        """
        moving_points = transform.transform_points(sample_set.fixed_points, parameters)
        values, inside, gradients = self._interpolate(
            interpolator, moving_points, compute_derivatives
        )

        finite = np.isfinite(values)
        if compute_derivatives:
            finite &= np.all(np.isfinite(gradients), axis=1)
        valid = inside & finite

        n_anomalous = int(np.count_nonzero(inside & ~finite))
        if n_anomalous > 0:
            self.log_warning(
                "Excluded %d samples with non-finite intensity or gradient",
                n_anomalous,
            )

        n_valid = int(np.count_nonzero(valid))
        n_outside = len(sample_set) - int(np.count_nonzero(inside))
        if n_outside > 0:
            self.log_debug(
                "%d of %d samples map outside the moving image",
                n_outside,
                len(sample_set),
            )
        self.check_number_of_samples(n_valid, sample_set.number_of_requested_samples)

        mapped = replace(
            sample_set,
            moving_points=moving_points,
            moving_values=values,
            moving_gradients=gradients,
            jacobians=None,
        ).subset(valid)

        if compute_derivatives:
            mapped = replace(
                mapped, jacobians=transform.jacobians(mapped.fixed_points, parameters)
            )
        return mapped
