"""Create per-level PCA appearance models from a population of training images.

This module provides the WorkflowCreateAppearanceModels class that builds the
ModelCollection consumed by ActiveRegistrationModelMetric:

1. Validate that the training images of each level share one voxel grid
2. Stack the images of each level as rows of a data matrix (ITK buffer order)
3. Fit a PCA per level
4. Optionally keep only the components explaining a given fraction of the
   variance
5. Return a ModelCollection whose models carry the level's reference image

The workflow does no file I/O.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Optional

import itk
import numpy as np
from sklearn.decomposition import PCA

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.statistical_model import ModelCollection, StatisticalModel


class WorkflowCreateAppearanceModels(AppearanceRegBase):
    """Fit one PCA appearance model per resolution level.

    Attributes:
        training_images (dict[int, list]): Training ITK images per level; all
            images of a level must share size, spacing, origin and direction
        pca_number_of_components (int): Maximum number of PCA components
        variance_fraction (float): If set, keep the fewest leading components
            whose explained variance ratio sums to at least this fraction
        pca_fitted (dict[int, PCA]): Fitted sklearn PCA objects per level
    """

    def __init__(
        self,
        training_images: Mapping[int, Sequence] | Sequence,
        pca_number_of_components: int = 15,
        variance_fraction: Optional[float] = None,
        log_level: int | str = logging.INFO,
    ):
        """Initialize the create-appearance-models workflow.

        Args:
            training_images: Mapping from level to a list of ITK images, or a
                single list of ITK images used for level 0.
            pca_number_of_components: Number of PCA components. Default 15.
            variance_fraction: Optional variance fraction in (0, 1] for
                truncating the model. Default: None (keep all components).
            log_level: Logging level.
        """
        super().__init__(
            class_name="WorkflowCreateAppearanceModels", log_level=log_level
        )
        if not isinstance(training_images, Mapping):
            training_images = {0: training_images}
        self.training_images = {
            int(level): list(images) for level, images in training_images.items()
        }
        self.pca_number_of_components = pca_number_of_components
        self.set_variance_fraction(variance_fraction)

        self.pca_fitted: dict[int, PCA] = {}

    def set_pca_number_of_components(self, n: int) -> None:
        """Set number of PCA components to retain."""
        self.pca_number_of_components = n

    def set_variance_fraction(self, variance_fraction: Optional[float]) -> None:
        if variance_fraction is not None and not 0.0 < variance_fraction <= 1.0:
            raise ValueError(
                f"variance_fraction must be in (0, 1], got {variance_fraction}"
            )
        self.variance_fraction = variance_fraction

    def _data_matrix(self, level: int, images: list) -> np.ndarray:
        if len(images) < 2:
            raise ValueError(
                f"At least 2 training images are required for PCA. "
                f"Level {level} has {len(images)}."
            )
        reference = images[0]
        reference_size = tuple(itk.size(reference))
        reference_spacing = np.array(list(itk.spacing(reference)))
        reference_origin = np.array(list(itk.origin(reference)))
        reference_direction = itk.array_from_matrix(reference.GetDirection())
        rows = []
        for i, image in enumerate(images):
            if (
                tuple(itk.size(image)) != reference_size
                or not np.allclose(list(itk.spacing(image)), reference_spacing)
                or not np.allclose(list(itk.origin(image)), reference_origin)
                or not np.allclose(
                    itk.array_from_matrix(image.GetDirection()), reference_direction
                )
            ):
                raise ValueError(
                    f"Training image {i} of level {level} is not on the grid of "
                    "the first training image"
                )
            rows.append(itk.array_view_from_image(image).ravel().astype(np.float64))
        return np.array(rows)

    def _number_of_components(self, level: int, pca: PCA) -> int:
        n_comp = len(pca.explained_variance_ratio_)
        if self.variance_fraction is None:
            return n_comp
        cumulative = np.cumsum(pca.explained_variance_ratio_)
        reduced = int(np.searchsorted(cumulative, self.variance_fraction - 1e-12) + 1)
        reduced = min(reduced, n_comp)
        self.log_info(
            "Level %d: keeping %d of %d components for %.1f%% of the variance",
            level,
            reduced,
            n_comp,
            100.0 * self.variance_fraction,
        )
        return reduced

    def create_model(self, level: int) -> StatisticalModel:
        """Fit the PCA model of one level."""
        images = self.training_images[level]
        data_matrix = self._data_matrix(level, images)

        n_comp = min(self.pca_number_of_components, data_matrix.shape[0] - 1)
        if n_comp < self.pca_number_of_components:
            self.log_warning(
                "Reducing PCA components from %d to %d (n_samples=%d)",
                self.pca_number_of_components,
                n_comp,
                data_matrix.shape[0],
            )
        pca = PCA(n_components=n_comp)
        pca.fit(data_matrix)
        self.pca_fitted[level] = pca

        k = self._number_of_components(level, pca)
        self.log_info(
            "Level %d PCA complete: %d components, variance explained %.4f",
            level,
            k,
            pca.explained_variance_ratio_[:k].sum(),
        )
        return StatisticalModel(
            mean=pca.mean_,
            basis=pca.components_[:k].T,
            variance=pca.explained_variance_[:k],
            reference_image=images[0],
        )

    def run_workflow(self) -> ModelCollection:
        """Fit every level and return the resulting ModelCollection."""
        self.log_section("STARTING CREATE APPEARANCE MODELS WORKFLOW", width=70)
        models = {}
        for level in sorted(self.training_images):
            self.log_info(
                "Level %d: %d training images", level, len(self.training_images[level])
            )
            models[level] = self.create_model(level)
        self.log_section("CREATE APPEARANCE MODELS WORKFLOW COMPLETE", width=70)
        return ModelCollection(models)
