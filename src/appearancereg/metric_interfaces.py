"""Capability contracts for the collaborators of the appearance model metric.

The metric depends only on these abstract classes, never on concrete image,
transform or sampler types. Optional capabilities (transform Jacobians,
image gradients, masks) are advertised through ``has_*`` methods so that the
metric can choose a derivative strategy at run time.
"""

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np


class ImageMaskBase(ABC):
    """Optional region restriction for a fixed or moving image."""

    def has_mask(self) -> bool:
        return True

    @abstractmethod
    def in_mask(self, point) -> bool:
        """Return True if the physical point lies inside the mask."""

    def in_mask_points(self, points: np.ndarray) -> np.ndarray:
        """Vectorized ``in_mask`` over an (n, d) array of physical points."""
        return np.array([self.in_mask(p) for p in points], dtype=bool)


class MetricTransformBase(ABC):
    """Maps fixed-image points into the moving image for a parameter vector.

    Implementations must not retain or mutate the parameter vector passed in.
    """

    @abstractmethod
    def get_number_of_parameters(self) -> int:
        """Length of the parameter vector accepted by this transform."""

    @abstractmethod
    def get_identity_parameters(self) -> np.ndarray:
        """Parameter vector that maps every point onto itself."""

    @abstractmethod
    def transform_point(self, point, parameters) -> np.ndarray:
        """Map one physical point."""

    def transform_points(self, points: np.ndarray, parameters) -> np.ndarray:
        """Map an (n, d) array of physical points."""
        return np.array(
            [self.transform_point(p, parameters) for p in points], dtype=np.float64
        ).reshape(points.shape)

    def has_jacobian(self) -> bool:
        return False

    def jacobian(self, point, parameters) -> np.ndarray:
        """(d, P) derivative of the mapped point with respect to the parameters."""
        raise NotImplementedError(
            f"{self.__class__.__name__} does not provide a parameter Jacobian"
        )

    def jacobians(self, points: np.ndarray, parameters) -> np.ndarray:
        """(n, d, P) stack of Jacobians for an (n, d) array of points."""
        return np.array([self.jacobian(p, parameters) for p in points])


class MetricInterpolatorBase(ABC):
    """Moving image intensity lookup at continuous physical coordinates."""

    @abstractmethod
    def evaluate(self, point) -> tuple[float, bool]:
        """Return ``(intensity, inside)``; intensity is 0.0 when outside."""

    def evaluate_points(self, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Vectorized ``evaluate``: returns ``(values, inside_flags)``."""
        values = np.zeros(len(points), dtype=np.float64)
        inside = np.zeros(len(points), dtype=bool)
        for i, point in enumerate(points):
            values[i], inside[i] = self.evaluate(point)
        return values, inside

    def has_gradient(self) -> bool:
        return False

    def gradient(self, point) -> np.ndarray:
        """Spatial intensity gradient in physical coordinates."""
        raise NotImplementedError(
            f"{self.__class__.__name__} does not provide image gradients"
        )

    def gradients(self, points: np.ndarray) -> np.ndarray:
        """(n, d) stack of spatial gradients."""
        return np.array([self.gradient(p) for p in points], dtype=np.float64)


class ImageSamplerBase(ABC):
    """Produces the fixed-domain samples for one metric evaluation.

    Attributes:
        image_mask (ImageMaskBase): Optional fixed image mask; samples outside
            it are never produced.
    """

    def __init__(self, image_mask: Optional[ImageMaskBase] = None):
        self.image_mask = image_mask

    def has_mask(self) -> bool:
        return self.image_mask is not None and self.image_mask.has_mask()

    @abstractmethod
    def get_number_of_requested_samples(self, image) -> int:
        """Number of samples a call to ``collect`` asks for on this image."""

    @abstractmethod
    def collect(self, image):
        """Return a fresh SampleSet drawn from ``image``."""


class DiagnosticImageWriterBase(ABC):
    """Receives the reconstructed image when diagnostic output is enabled."""

    @abstractmethod
    def write(self, image, iteration_tag: str) -> None:
        """Persist ``image``; ``iteration_tag`` distinguishes successive calls."""
