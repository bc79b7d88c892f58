"""Selection of the statistical model active at a resolution level."""

import logging
from dataclasses import replace
from typing import Optional

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.metric_exceptions import ConfigurationError
from appearancereg.statistical_model import LevelModel, ModelCollection


class ModelSelector(AppearanceRegBase):
    """Looks up the LevelModel of a level and truncates its basis.

    The returned record never has more basis columns than the number of
    principal components requested for the level.

    Args:
        model_collection: Populated ModelCollection
        log_level: Logging level. Default: logging.INFO
    """

    def __init__(
        self,
        model_collection: ModelCollection,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name="ModelSelector", log_level=log_level)
        self.model_collection = model_collection

    def select(
        self, level: int, number_of_components: Optional[int] = None
    ) -> LevelModel:
        """Return the model record for ``level``.

        Args:
            level: Resolution level index
            number_of_components: Requested number of principal components.
                None keeps every available column.

        Returns:
            LevelModel whose basis has ``min(requested, available)`` columns

        Raises:
            ConfigurationError: If the collection has no model for ``level``
        """
        if self.model_collection is None:
            raise ConfigurationError("No model collection has been set")
        if level not in self.model_collection:
            self.log_error("No statistical model for level %d", level)
        record = self.model_collection[level]

        if number_of_components is None:
            return record
        if number_of_components < 0:
            raise ConfigurationError(
                f"Number of principal components for level {level} must be >= 0, "
                f"got {number_of_components}"
            )

        available = record.number_of_components
        k = min(int(number_of_components), available)
        if k < number_of_components:
            self.log_debug(
                "Level %d requests %d components, model provides %d",
                level,
                number_of_components,
                available,
            )
        if k == available:
            return record
        return replace(record, basis=record.basis[:, :k], number_of_components=k)
