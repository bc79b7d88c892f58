"""Fixed image samplers.

Every sampler walks the voxel grid of an ITK image and returns a SampleSet
whose representer indices are linear voxel indices in ITK buffer order
(x fastest). That is the ordering used by appearance models built on the
same image grid.
"""

from collections.abc import Sequence
from typing import Optional

import itk
import numpy as np

from appearancereg.metric_exceptions import ConfigurationError
from appearancereg.metric_interfaces import ImageMaskBase, ImageSamplerBase
from appearancereg.sample_collector import SampleSet


def image_number_of_voxels(image) -> int:
    """Number of voxels in the buffered region of an ITK image."""
    return int(np.prod([int(s) for s in itk.size(image)]))


def image_voxel_points(image, flat_indices: np.ndarray) -> np.ndarray:
    """Physical coordinates of voxels given by linear buffer indices.

    Args:
        image: ITK image
        flat_indices: (n,) linear indices in ITK buffer order

    Returns:
        (n, d) physical points
    """
    arr_shape = tuple(reversed([int(s) for s in itk.size(image)]))
    # numpy axes are (z, y, x); ITK indices are (x, y, z)
    unraveled = np.unravel_index(np.asarray(flat_indices, dtype=np.int64), arr_shape)
    index = np.stack(unraveled[::-1], axis=1).astype(np.float64)

    origin = np.array(list(itk.origin(image)), dtype=np.float64)
    spacing = np.array(list(itk.spacing(image)), dtype=np.float64)
    direction = itk.array_from_matrix(image.GetDirection())

    return origin + (index * spacing) @ direction.T


def _candidate_indices(
    image, flat_indices: np.ndarray, image_mask: Optional[ImageMaskBase]
) -> np.ndarray:
    """Linear indices of the voxels in ``flat_indices`` inside the fixed mask."""
    flat_indices = np.asarray(flat_indices, dtype=np.int64)
    if image_mask is not None and image_mask.has_mask():
        keep = image_mask.in_mask_points(image_voxel_points(image, flat_indices))
        flat_indices = flat_indices[keep]

    if len(flat_indices) == 0:
        raise ConfigurationError(
            "No fixed image samples available; the fixed mask may be empty"
        )
    return flat_indices


def _build_sample_set(image, flat_indices: np.ndarray) -> SampleSet:
    # number_of_requested_samples counts in-mask samples only
    values = itk.array_view_from_image(image).ravel()[flat_indices].astype(np.float64)
    return SampleSet(
        fixed_points=image_voxel_points(image, flat_indices),
        representer_indices=flat_indices,
        fixed_values=values,
        number_of_requested_samples=len(flat_indices),
    )


class ImageFullSampler(ImageSamplerBase):
    """Samples every voxel of the fixed image inside the mask (deterministic)."""

    def _full_indices(self, image) -> np.ndarray:
        return _candidate_indices(
            image, np.arange(image_number_of_voxels(image)), self.image_mask
        )

    def get_number_of_requested_samples(self, image) -> int:
        return len(self._full_indices(image))

    def collect(self, image) -> SampleSet:
        return _build_sample_set(image, self._full_indices(image))


class ImageGridSampler(ImageSamplerBase):
    """Samples a regular sub-grid of the fixed image (deterministic).

    Args:
        sample_grid_spacing: Step in voxels, either one int for all axes or
            one int per image axis in ITK (x, y, z) order. Default: 2
        image_mask: Optional fixed image mask
    """

    def __init__(
        self,
        sample_grid_spacing: int | Sequence[int] = 2,
        image_mask: Optional[ImageMaskBase] = None,
    ):
        super().__init__(image_mask=image_mask)
        self.sample_grid_spacing = sample_grid_spacing

    def _grid_indices(self, image) -> np.ndarray:
        size = [int(s) for s in itk.size(image)]
        if isinstance(self.sample_grid_spacing, Sequence):
            steps = [int(s) for s in self.sample_grid_spacing]
        else:
            steps = [int(self.sample_grid_spacing)] * len(size)
        if len(steps) != len(size) or min(steps) < 1:
            raise ConfigurationError(
                f"Invalid sample grid spacing {self.sample_grid_spacing} "
                f"for image of size {size}"
            )
        all_indices = np.arange(int(np.prod(size))).reshape(tuple(reversed(size)))
        grid = all_indices[tuple(slice(None, None, s) for s in reversed(steps))]
        return _candidate_indices(image, grid.ravel(), self.image_mask)

    def get_number_of_requested_samples(self, image) -> int:
        return len(self._grid_indices(image))

    def collect(self, image) -> SampleSet:
        return _build_sample_set(image, self._grid_indices(image))


class ImageRandomSampler(ImageSamplerBase):
    """Draws voxels uniformly at random without replacement (stochastic).

    Voxels are drawn from inside the fixed mask, so a masked call returns
    ``number_of_samples`` samples whenever the mask holds that many voxels.
    A new subset is drawn on every call. Passing a seed makes the sequence of
    subsets reproducible, not the individual calls identical.

    Args:
        number_of_samples: Samples requested per call. Default: 5000
        seed: Optional seed for numpy's random generator
        image_mask: Optional fixed image mask
    """

    def __init__(
        self,
        number_of_samples: int = 5000,
        seed: Optional[int] = None,
        image_mask: Optional[ImageMaskBase] = None,
    ):
        super().__init__(image_mask=image_mask)
        if number_of_samples < 1:
            raise ValueError("number_of_samples must be positive")
        self.number_of_samples = number_of_samples
        self.reinitialize_seed(seed)

    def reinitialize_seed(self, seed: Optional[int] = None) -> None:
        self._rng = np.random.default_rng(seed)

    def _candidates(self, image) -> np.ndarray:
        return _candidate_indices(
            image, np.arange(image_number_of_voxels(image)), self.image_mask
        )

    def get_number_of_requested_samples(self, image) -> int:
        return min(self.number_of_samples, len(self._candidates(image)))

    def collect(self, image) -> SampleSet:
        candidates = self._candidates(image)
        n_requested = min(self.number_of_samples, len(candidates))
        chosen = self._rng.choice(candidates, size=n_requested, replace=False)
        return _build_sample_set(image, chosen)
