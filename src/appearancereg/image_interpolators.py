"""ITK-backed moving image interpolation and binary image masks."""

from typing import Optional

import itk
import numpy as np

from appearancereg.metric_interfaces import ImageMaskBase, MetricInterpolatorBase


def _continuous_index(image, points: np.ndarray) -> np.ndarray:
    """(n, d) continuous ITK indices (x, y, z order) of physical points."""
    origin = np.array(list(itk.origin(image)), dtype=np.float64)
    spacing = np.array(list(itk.spacing(image)), dtype=np.float64)
    direction = itk.array_from_matrix(image.GetDirection())
    return ((np.atleast_2d(points) - origin) @ direction) / spacing


class BinaryImageMask(ImageMaskBase):
    """Mask defined by the non-zero voxels of an ITK image.

    Points are looked up at their nearest voxel; points outside the mask
    image's grid are outside the mask. An all-zero mask image is still a
    mask: every point lies outside it.

    Args:
        mask_image: ITK image; any non-zero voxel is foreground
    """

    def __init__(self, mask_image):
        self.mask_image = mask_image
        self._mask_array = itk.array_from_image(mask_image) > 0
        # array axes are (z, y, x)
        self._size = np.array(self._mask_array.shape[::-1])

    def in_mask(self, point) -> bool:
        return bool(self.in_mask_points(np.asarray(point, dtype=np.float64))[0])

    def in_mask_points(self, points: np.ndarray) -> np.ndarray:
        index = np.rint(_continuous_index(self.mask_image, points)).astype(np.int64)
        inside = np.all((index >= 0) & (index < self._size), axis=1)
        result = np.zeros(len(index), dtype=bool)
        if inside.any():
            idx = index[inside]
            result[inside] = self._mask_array[tuple(idx[:, ::-1].T)]
        return result


class LinearImageInterpolator(MetricInterpolatorBase):
    """Linear interpolation of a scalar ITK image at physical points.

    Uses itk.LinearInterpolateImageFunction for intensities. When gradients
    are enabled, the central-difference gradient of the image is computed
    once and each component is interpolated with its own linear
    interpolator, then rotated into physical coordinates.

    Args:
        image: Moving ITK image (scalar pixels)
        image_mask: Optional moving image mask; points outside it are
            reported as outside
        compute_gradient: Precompute gradient images so that
            ``has_gradient()`` is True. Default: True
    """

    def __init__(
        self,
        image,
        image_mask: Optional[ImageMaskBase] = None,
        compute_gradient: bool = True,
    ):
        self.image = image
        self.image_mask = image_mask
        self.dimension = image.GetImageDimension()

        ImageType = type(image)
        self._interpolator = itk.LinearInterpolateImageFunction[ImageType, itk.D].New()
        self._interpolator.SetInputImage(image)
        self._size = [int(s) for s in image.GetLargestPossibleRegion().GetSize()]

        self._direction = itk.array_from_matrix(image.GetDirection())
        self._gradient_images = None
        self._gradient_interpolators = None
        if compute_gradient:
            self._create_gradient_interpolators()

    def _create_gradient_interpolators(self) -> None:
        image_arr = itk.array_from_image(self.image).astype(np.float64)
        spacing = [float(s) for s in itk.spacing(self.image)]
        # np.gradient works on (z, y, x) axes; reverse back to (x, y, z)
        components = np.gradient(image_arr, *reversed(spacing))
        if self.dimension == 1:
            components = [components]
        components = list(reversed(components))

        self._gradient_images = []
        self._gradient_interpolators = []
        for component in components:
            component_image = itk.image_from_array(component.astype(np.float32))
            component_image.CopyInformation(self.image)
            interpolator = itk.LinearInterpolateImageFunction[
                type(component_image), itk.D
            ].New()
            interpolator.SetInputImage(component_image)
            self._gradient_images.append(component_image)
            self._gradient_interpolators.append(interpolator)

    def _itk_point(self, point):
        itk_point = itk.Point[itk.D, self.dimension]()
        for i in range(self.dimension):
            itk_point[i] = float(point[i])
        return itk_point

    def _buffer_continuous_index(self, point):
        """Continuous index of ``point``, or None outside the image buffer."""
        coord_index = self.image.TransformPhysicalPointToContinuousIndex(
            self._itk_point(point)
        )
        for i in range(self.dimension):
            if not 0 <= coord_index[i] < self._size[i]:
                return None
        return coord_index

    def _inside_continuous_index(self, point):
        coord_index = self._buffer_continuous_index(point)
        if coord_index is None:
            return None
        if self.image_mask is not None and self.image_mask.has_mask():
            if not self.image_mask.in_mask(point):
                return None
        return coord_index

    def is_inside(self, point) -> bool:
        return self._inside_continuous_index(point) is not None

    def evaluate(self, point) -> tuple[float, bool]:
        coord_index = self._inside_continuous_index(point)
        if coord_index is None:
            return 0.0, False
        return float(self._interpolator.EvaluateAtContinuousIndex(coord_index)), True

    def has_gradient(self) -> bool:
        return self._gradient_interpolators is not None

    def gradient(self, point) -> np.ndarray:
        if self._gradient_interpolators is None:
            return super().gradient(point)
        coord_index = self._buffer_continuous_index(point)
        if coord_index is None:
            return np.zeros(self.dimension)
        index_gradient = np.array(
            [
                float(interp.EvaluateAtContinuousIndex(coord_index))
                for interp in self._gradient_interpolators
            ]
        )
        # d/dp = D d/du where p = origin + D u and u is the spacing-scaled index
        return self._direction @ index_gradient
