"""Multi-resolution registration driven by the appearance model metric.

RegisterImagesActiveModel runs the coarse-to-fine schedule around an
ActiveRegistrationModelMetric: for every level of the metric's model
collection, in ascending order, it selects the level on the metric and
minimizes the measure with scipy.optimize.minimize, starting from the
parameters found at the previous level.

Example:
    >>> metric = ActiveRegistrationModelMetric()
    >>> ...  # set images, transform, interpolator, sampler and models
    >>> registrar = RegisterImagesActiveModel(metric)
    >>> result = registrar.register(
    ...     initial_parameters=np.zeros(3), max_iterations=[100, 50]
    ... )
    >>> print(result["parameters"], result["value"])
"""

import logging
from collections.abc import Sequence
from typing import Any, Optional

import numpy as np
from scipy.optimize import minimize

from appearancereg.active_registration_model_metric import ActiveRegistrationModelMetric
from appearancereg.appearancereg_base import AppearanceRegBase


class RegisterImagesActiveModel(AppearanceRegBase):
    """Coarse-to-fine optimization of transform parameters against the metric.

    Attributes:
        metric (ActiveRegistrationModelMetric): Configured metric
        final_parameters (np.ndarray): Parameters after the last level
        final_value (float): Measure after the last level
        level_results (list[dict]): Per-level optimization summaries
    """

    def __init__(
        self,
        metric: ActiveRegistrationModelMetric,
        log_level: int | str = logging.INFO,
    ):
        """Initialize the registration driver.

        Args:
            metric: Appearance model metric with all collaborators set
            log_level: Logging level. Default: logging.INFO
        """
        super().__init__(class_name="RegisterImagesActiveModel", log_level=log_level)
        self.metric = metric

        self.final_parameters: Optional[np.ndarray] = None
        self.final_value: float = 0.0
        self.level_results: list[dict[str, Any]] = []

    @staticmethod
    def _per_level(value, levels: list[int], name: str) -> dict[int, Any]:
        if isinstance(value, Sequence) and not isinstance(value, str):
            if len(value) != len(levels):
                raise ValueError(
                    f"{name} has {len(value)} entries for {len(levels)} levels"
                )
            return dict(zip(levels, value))
        return {level: value for level in levels}

    def optimize_level(
        self,
        level: int,
        initial_parameters: np.ndarray,
        method: str = 'L-BFGS-B',
        max_iterations: int = 100,
    ) -> dict[str, Any]:
        """Minimize the metric at one resolution level.

        Args:
            level: Resolution level to activate on the metric
            initial_parameters: Starting transform parameters
            method: Gradient-based scipy.optimize.minimize method.
                Default: 'L-BFGS-B'
            max_iterations: Maximum optimizer iterations. Default: 100

        Returns:
            dict with keys 'level', 'parameters', 'value', 'iterations',
            'success' and 'message'
        """
        self.log_section("Level %d optimization", level, width=60)
        self.metric.set_level(level)

        initial_parameters = np.asarray(initial_parameters, dtype=np.float64)
        self.log_info("Initial parameters: %s", initial_parameters)
        self.log_info("Optimization method: %s", method)
        self.log_info("Max iterations: %d", max_iterations)

        result = minimize(
            self.metric.get_value_and_derivative,
            initial_parameters,
            jac=True,
            method=method,
            options={'maxiter': max_iterations},
        )
        self.log_info("Optimization result: %s -> %f", result.x, result.fun)
        if not result.success:
            self.log_warning("Level %d optimizer stopped: %s", level, result.message)

        return {
            "level": level,
            "parameters": np.asarray(result.x, dtype=np.float64),
            "value": float(result.fun),
            "iterations": int(getattr(result, "nit", 0)),
            "success": bool(result.success),
            "message": str(result.message),
        }

    def register(
        self,
        initial_parameters: Optional[np.ndarray] = None,
        method: str = 'L-BFGS-B',
        max_iterations: int | Sequence[int] = 100,
        levels: Optional[Sequence[int]] = None,
    ) -> dict[str, Any]:
        """Run the full coarse-to-fine registration.

        Args:
            initial_parameters: Starting parameters. Default: the transform's
                identity parameters
            method: scipy.optimize.minimize method. Default: 'L-BFGS-B'
            max_iterations: One value for all levels or one per level
            levels: Levels to run, ascending. Default: every level of the
                metric's model collection

        Returns:
            dict with keys:
                - 'parameters': final transform parameters
                - 'value': final measure
                - 'level_results': list of per-level result dicts
        """
        # Each run starts at the coarsest level again
        self.metric.initialize()

        if levels is None:
            levels = self.metric.model_collection.levels
        levels = sorted(int(level) for level in levels)
        iterations_per_level = self._per_level(max_iterations, levels, "max_iterations")

        if initial_parameters is None:
            initial_parameters = self.metric.transform.get_identity_parameters()
        parameters = np.array(initial_parameters, dtype=np.float64, copy=True)

        self.log_section("Starting registration over levels %s", levels, width=70)
        self.level_results = []
        for i, level in enumerate(levels):
            self.log_progress(i + 1, len(levels), prefix="Level")
            level_result = self.optimize_level(
                level,
                parameters,
                method=method,
                max_iterations=iterations_per_level[level],
            )
            self.level_results.append(level_result)
            parameters = level_result["parameters"]

        self.final_parameters = parameters
        self.final_value = self.level_results[-1]["value"] if self.level_results else 0.0
        self.log_section("Registration complete", width=70)
        self.log_info("Final parameters: %s", self.final_parameters)
        self.log_info("Final value: %f", self.final_value)

        return {
            "parameters": self.final_parameters,
            "value": self.final_value,
            "level_results": self.level_results,
        }
