"""Statistical appearance model similarity metric for image registration.

The ActiveRegistrationModelMetric measures how well the moving image, seen
through the current transform, is explained by the principal-component
appearance model of the current resolution level. Lower is better: the
measure is the mean squared residual between the sampled moving intensities
and their projection onto the model.

The metric is queried by an external optimizer through three operations:

    - get_value(parameters)
    - get_derivative(parameters)
    - get_value_and_derivative(parameters)

Each call samples the fixed domain, maps the samples into the moving image,
projects them onto the selected model and, on request, differentiates the
measure with respect to the transform parameters (analytically when the
transform and interpolator support it, by finite differences otherwise).

Example:
    >>> metric = ActiveRegistrationModelMetric()
    >>> metric.set_fixed_image(fixed_image)
    >>> metric.set_transform(TranslationTransform(dimension=3))
    >>> metric.set_interpolator(LinearImageInterpolator(moving_image))
    >>> metric.set_image_sampler(ImageGridSampler(sample_grid_spacing=2))
    >>> metric.set_model_collection(ModelCollection({0: coarse_model, 1: fine_model}))
    >>> metric.set_number_of_principal_components([5, 10])
    >>> metric.initialize()
    >>> value, derivative = metric.get_value_and_derivative(np.zeros(3))
"""

import logging
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Optional

import itk
import numpy as np

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.correspondence_mapper import CorrespondenceMapper
from appearancereg.derivative_estimator import (
    DERIVATIVE_METHODS,
    FINITE_DIFFERENCE,
    FINITE_DIFFERENCE_SCHEMES,
    AnalyticDerivative,
    select_derivative_strategy,
)
from appearancereg.image_samplers import image_number_of_voxels
from appearancereg.metric_exceptions import ConfigurationError, InsufficientSamplesError
from appearancereg.metric_interfaces import (
    DiagnosticImageWriterBase,
    ImageSamplerBase,
    MetricInterpolatorBase,
    MetricTransformBase,
)
from appearancereg.model_selector import ModelSelector
from appearancereg.reconstruction_scorer import ReconstructionScorer
from appearancereg.sample_collector import SampleCollector, SampleSet
from appearancereg.statistical_model import LevelModel, ModelCollection

# Measure returned when too few samples map inside the moving image
DEGRADED_MEASURE = 0.0


class MetricState(Enum):
    """Life cycle of the metric."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    EVALUATING = "evaluating"


class ActiveRegistrationModelMetric(AppearanceRegBase):
    """Appearance-model reconstruction metric queried by a registration optimizer.

    The metric borrows its collaborators (fixed image, transform, interpolator,
    sampler, model collection); it never copies or modifies them, and it
    never keeps per-call sample buffers between calls.

    Attributes:
        fixed_image (itk.Image): Default sampling domain for models without
            their own reference image
        transform (MetricTransformBase): Transform evaluated per call
        interpolator (MetricInterpolatorBase): Moving image interpolator
        image_sampler (ImageSamplerBase): Fixed image sampler
        model_collection (ModelCollection): Per-level appearance models
        level (int): Active resolution level
        number_of_principal_components (dict[int, int]): Requested component
            count per level; levels without an entry use every component
        write_reconstructed_image_each_iteration (bool): Write the
            reconstructed image after every evaluation
        finite_difference_step (float): Parameter perturbation for finite differences
        finite_difference_scheme (str): 'central' or 'forward'
        derivative_method (str): 'finite_difference' or 'analytic'
        state (MetricState): Current life-cycle state
    """

    def __init__(self, log_level: int | str = logging.INFO):
        """Initialize the metric with default settings.

        Args:
            log_level: Logging level (logging.DEBUG, logging.INFO, logging.WARNING).
                Default: logging.INFO
        """
        super().__init__(class_name="ActiveRegistrationModelMetric", log_level=log_level)

        self.fixed_image = None
        self.transform: Optional[MetricTransformBase] = None
        self.interpolator: Optional[MetricInterpolatorBase] = None
        self.image_sampler: Optional[ImageSamplerBase] = None
        self.model_collection: Optional[ModelCollection] = None
        self.reconstructed_image_writer: Optional[DiagnosticImageWriterBase] = None

        self.level = 0
        self.number_of_principal_components: dict[int, int] = {}
        self.write_reconstructed_image_each_iteration = False
        self.finite_difference_step = 0.01
        self.finite_difference_scheme = "central"
        self.derivative_method = FINITE_DIFFERENCE

        self.state = MetricState.UNINITIALIZED
        self.number_of_evaluations = 0
        self._highest_evaluated_level: Optional[int] = None

        self._sample_collector = SampleCollector(log_level=log_level)
        self._correspondence_mapper = CorrespondenceMapper(log_level=log_level)
        self._reconstruction_scorer = ReconstructionScorer(log_level=log_level)
        self._model_selector: Optional[ModelSelector] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _require_not_evaluating(self, what: str) -> None:
        if self.state == MetricState.EVALUATING:
            raise RuntimeError(f"Cannot change {what} while the metric is evaluating")

    def _invalidate(self) -> None:
        if self.state == MetricState.INITIALIZED:
            self.state = MetricState.UNINITIALIZED

    def set_fixed_image(self, fixed_image) -> None:
        """Set the fixed image used as sampling domain when a model has no reference image."""
        self._require_not_evaluating("the fixed image")
        self.fixed_image = fixed_image
        self._invalidate()

    def set_transform(self, transform: MetricTransformBase) -> None:
        self._require_not_evaluating("the transform")
        self.transform = transform
        self._invalidate()

    def set_interpolator(self, interpolator: MetricInterpolatorBase) -> None:
        self._require_not_evaluating("the interpolator")
        self.interpolator = interpolator
        self._invalidate()

    def set_image_sampler(self, image_sampler: ImageSamplerBase) -> None:
        self._require_not_evaluating("the image sampler")
        self.image_sampler = image_sampler
        self._invalidate()

    def set_model_collection(self, model_collection: ModelCollection) -> None:
        """Set the per-level statistical models.

        Args:
            model_collection: Populated ModelCollection; read-only from here on
        """
        self._require_not_evaluating("the model collection")
        self.model_collection = model_collection
        self._invalidate()

    def set_reconstructed_image_writer(self, writer: DiagnosticImageWriterBase) -> None:
        self.reconstructed_image_writer = writer

    def set_level(self, level: int) -> None:
        """Select the resolution level whose model is used for evaluation.

        Levels only advance during a registration run. ``initialize()``
        starts a new run.

        Args:
            level: Resolution level index

        Raises:
            RuntimeError: If called during an evaluation
            ConfigurationError: If the level is below a level already
                evaluated in this run, or has no model once initialized
        """
        self._require_not_evaluating("the level")
        level = int(level)
        if (
            self._highest_evaluated_level is not None
            and level < self._highest_evaluated_level
        ):
            raise ConfigurationError(
                f"Resolution level cannot decrease from "
                f"{self._highest_evaluated_level} to {level} within a registration run"
            )
        if (
            self.state == MetricState.INITIALIZED
            and self.model_collection is not None
            and level not in self.model_collection
        ):
            self.log_error("No statistical model for level %d", level)
            raise ConfigurationError(f"No statistical model for level {level}")
        if level != self.level:
            self.log_info("Switching to level %d", level)
        self.level = level

    def get_level(self) -> int:
        return self.level

    def set_number_of_principal_components(
        self, number_of_principal_components: Sequence[int] | Mapping[int, int]
    ) -> None:
        """Set the number of principal components used at each level.

        Args:
            number_of_principal_components: Sequence indexed by level or a
                mapping from level to component count
        """
        self._require_not_evaluating("the number of principal components")
        if isinstance(number_of_principal_components, Mapping):
            items = number_of_principal_components.items()
        else:
            items = enumerate(number_of_principal_components)
        components = {}
        for level, count in items:
            if int(count) < 0:
                raise ValueError(
                    f"Number of principal components for level {level} must be >= 0"
                )
            components[int(level)] = int(count)
        self.number_of_principal_components = components

    def get_number_of_principal_components(self, level: Optional[int] = None) -> Optional[int]:
        """Requested component count of ``level`` (default: current level), or None."""
        if level is None:
            level = self.level
        return self.number_of_principal_components.get(level)

    def set_write_reconstructed_image_each_iteration(
        self, write: bool, writer: Optional[DiagnosticImageWriterBase] = None
    ) -> None:
        self.write_reconstructed_image_each_iteration = bool(write)
        if writer is not None:
            self.reconstructed_image_writer = writer

    def set_finite_difference_step(self, step: float) -> None:
        if step <= 0:
            raise ValueError(f"Finite difference step must be positive, got {step}")
        self.finite_difference_step = float(step)

    def set_finite_difference_scheme(self, scheme: str) -> None:
        if scheme not in FINITE_DIFFERENCE_SCHEMES:
            raise ValueError(
                f"Invalid finite difference scheme '{scheme}'. "
                f"Valid options: {FINITE_DIFFERENCE_SCHEMES}"
            )
        self.finite_difference_scheme = scheme

    def set_derivative_method(self, method: str) -> None:
        if method not in DERIVATIVE_METHODS:
            raise ValueError(
                f"Invalid derivative method '{method}'. Valid options: {DERIVATIVE_METHODS}"
            )
        self.derivative_method = method

    def set_required_ratio_of_valid_samples(self, ratio: float) -> None:
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"Required ratio of valid samples must be in [0, 1], got {ratio}")
        self._correspondence_mapper.required_ratio_of_valid_samples = float(ratio)

    def set_minimum_number_of_samples(self, number_of_samples: int) -> None:
        if number_of_samples < 1:
            raise ValueError("Minimum number of samples must be at least 1")
        self._correspondence_mapper.minimum_number_of_samples = int(number_of_samples)

    def set_number_of_threads(self, number_of_threads: int) -> None:
        """Worker threads used per evaluation; results do not depend on it."""
        if number_of_threads < 1:
            raise ValueError("Number of threads must be at least 1")
        self._correspondence_mapper.number_of_threads = int(number_of_threads)

    @staticmethod
    def get_default_parameters() -> dict[str, Any]:
        """Recognized options of ``set_parameters`` and their defaults."""
        return {
            "level": 0,
            "number_of_principal_components": {},
            "write_reconstructed_image_each_iteration": False,
            "finite_difference_step": 0.01,
            "finite_difference_scheme": "central",
            "derivative_method": FINITE_DIFFERENCE,
            "required_ratio_of_valid_samples": 0.25,
            "minimum_number_of_samples": 1,
            "number_of_threads": 1,
        }

    def set_parameters(self, parameters: Mapping[str, Any]) -> None:
        """Apply a dictionary of options; unknown keys are logged and ignored."""
        setters = {
            "level": self.set_level,
            "number_of_principal_components": self.set_number_of_principal_components,
            "write_reconstructed_image_each_iteration": (
                self.set_write_reconstructed_image_each_iteration
            ),
            "finite_difference_step": self.set_finite_difference_step,
            "finite_difference_scheme": self.set_finite_difference_scheme,
            "derivative_method": self.set_derivative_method,
            "required_ratio_of_valid_samples": self.set_required_ratio_of_valid_samples,
            "minimum_number_of_samples": self.set_minimum_number_of_samples,
            "number_of_threads": self.set_number_of_threads,
        }
        for key, value in parameters.items():
            if key in setters:
                setters[key](value)
            else:
                self.log_warning("Parameter '%s' unknown. Ignored.", key)

    def get_number_of_parameters(self) -> int:
        if self.transform is None:
            raise ConfigurationError("A transform must be set")
        return self.transform.get_number_of_parameters()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _sampling_domain(self, level_model: LevelModel):
        if level_model.reference_image is not None:
            return level_model.reference_image
        return self.fixed_image

    def initialize(self) -> None:
        """Check that all collaborators are present and consistent.

        Starts a new registration run: the level may be set freely again.

        Raises:
            ConfigurationError: If a collaborator is missing, level 0 has no
                model, or a model's representer count differs from the voxel
                count of its sampling domain
        """
        self._require_not_evaluating("the configuration")
        missing = [
            name
            for name, value in (
                ("transform", self.transform),
                ("interpolator", self.interpolator),
                ("image sampler", self.image_sampler),
                ("model collection", self.model_collection),
            )
            if value is None
        ]
        if missing:
            self.log_error("Missing components: %s", ", ".join(missing))
            raise ConfigurationError(f"Metric is missing: {', '.join(missing)}")

        if 0 not in self.model_collection:
            self.log_error("Model collection has no level 0")
            raise ConfigurationError("The model collection must provide level 0")

        for level_model in self.model_collection:
            domain = self._sampling_domain(level_model)
            if domain is None:
                raise ConfigurationError(
                    f"Level {level_model.level} model has no reference image and "
                    "no fixed image is set"
                )
            n_voxels = image_number_of_voxels(domain)
            if n_voxels != level_model.model.number_of_representers:
                self.log_error(
                    "Level %d model has %d representers, sampling domain has %d voxels",
                    level_model.level,
                    level_model.model.number_of_representers,
                    n_voxels,
                )
                raise ConfigurationError(
                    f"Level {level_model.level} model has "
                    f"{level_model.model.number_of_representers} representers but its "
                    f"sampling domain has {n_voxels} voxels"
                )

        self._model_selector = ModelSelector(
            self.model_collection, log_level=self.log_level
        )
        self.level = 0 if self.level not in self.model_collection else self.level
        self._highest_evaluated_level = None
        self.number_of_evaluations = 0
        self.state = MetricState.INITIALIZED
        self.log_info(
            "Initialized with levels %s, %d transform parameters",
            self.model_collection.levels,
            self.transform.get_number_of_parameters(),
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _begin_evaluation(self, parameters) -> np.ndarray:
        if self.state == MetricState.UNINITIALIZED:
            raise ConfigurationError("initialize() must be called before evaluating")
        if self.state == MetricState.EVALUATING:
            raise RuntimeError("The metric is already evaluating")

        parameters = np.array(parameters, dtype=np.float64, copy=True).ravel()
        n_params = self.transform.get_number_of_parameters()
        if len(parameters) != n_params:
            raise ValueError(
                f"Expected {n_params} transform parameters, got {len(parameters)}"
            )
        self.state = MetricState.EVALUATING
        if (
            self._highest_evaluated_level is None
            or self.level > self._highest_evaluated_level
        ):
            self._highest_evaluated_level = self.level
        return parameters

    def _select_model(self) -> LevelModel:
        return self._model_selector.select(
            self.level, self.get_number_of_principal_components()
        )

    def _score(
        self,
        sample_set: SampleSet,
        level_model: LevelModel,
        parameters: np.ndarray,
        compute_derivatives: bool = False,
    ):
        mapped = self._correspondence_mapper.map_samples(
            sample_set,
            self.transform,
            self.interpolator,
            parameters,
            compute_derivatives=compute_derivatives,
        )
        return mapped, self._reconstruction_scorer.score(mapped, level_model)

    def _evaluate(self, parameters, compute_derivative: bool):
        parameters = self._begin_evaluation(parameters)
        n_params = len(parameters)
        try:
            level_model = self._select_model()
            sample_set = self._sample_collector.collect(
                self._sampling_domain(level_model), self.image_sampler
            )

            strategy = None
            if compute_derivative:
                strategy = select_derivative_strategy(
                    self.derivative_method,
                    self.transform,
                    self.interpolator,
                    finite_difference_step=self.finite_difference_step,
                    finite_difference_scheme=self.finite_difference_scheme,
                    logger=self,
                )
            analytic = isinstance(strategy, AnalyticDerivative)

            try:
                mapped, result = self._score(
                    sample_set, level_model, parameters, compute_derivatives=analytic
                )
            except InsufficientSamplesError as err:
                self.log_warning(
                    "%s; returning degraded measure %s", err, DEGRADED_MEASURE
                )
                return DEGRADED_MEASURE, np.zeros(n_params)

            derivative = None
            if analytic:
                derivative = strategy.compute(mapped, result, n_params)
            elif strategy is not None:

                def perturbed_value(perturbed_parameters):
                    try:
                        return self._score(sample_set, level_model, perturbed_parameters)[
                            1
                        ].measure
                    except InsufficientSamplesError:
                        return np.nan

                derivative = strategy.compute(
                    perturbed_value, parameters, base_value=result.measure
                )
                if not np.all(np.isfinite(derivative)):
                    self.log_warning(
                        "Perturbed evaluations left the moving image; zeroing %d "
                        "derivative components",
                        int(np.count_nonzero(~np.isfinite(derivative))),
                    )
                    derivative = np.where(np.isfinite(derivative), derivative, 0.0)

            if self.write_reconstructed_image_each_iteration:
                self._write_reconstructed_image(result.coefficients, level_model)

            self.number_of_evaluations += 1
            if self.log_level <= logging.DEBUG or self.number_of_evaluations % 100 == 0:
                self.log_info(
                    "   Metric %d (level %d, %d samples): %f",
                    self.number_of_evaluations,
                    self.level,
                    result.number_of_samples,
                    result.measure,
                )
            return result.measure, derivative
        finally:
            self.state = MetricState.INITIALIZED

    def _write_reconstructed_image(
        self, coefficients: np.ndarray, level_model: LevelModel
    ) -> None:
        if self.reconstructed_image_writer is None:
            self.log_warning(
                "Writing reconstructed images is enabled but no writer is set"
            )
            return

        iteration_tag = f"R{self.level}It{self.number_of_evaluations:05d}"
        # Diagnostic output never changes the measure
        try:
            domain = self._sampling_domain(level_model)
            reconstruction = self._reconstruction_scorer.reconstruct(
                coefficients, level_model
            )
            arr_shape = itk.array_view_from_image(domain).shape
            image = itk.image_from_array(
                reconstruction.reshape(arr_shape).astype(np.float32)
            )
            image.CopyInformation(domain)
            self.reconstructed_image_writer.write(image, iteration_tag)
        except Exception as err:
            self.log_warning("Could not write reconstructed image %s: %s", iteration_tag, err)

    def get_value(self, parameters) -> float:
        """Measure at ``parameters``.

        Returns:
            Mean squared reconstruction residual, or 0.0 when too few samples
            map inside the moving image
        """
        value, _ = self._evaluate(parameters, compute_derivative=False)
        return value

    def get_derivative(self, parameters) -> np.ndarray:
        """Derivative of the measure with respect to the transform parameters."""
        _, derivative = self._evaluate(parameters, compute_derivative=True)
        return derivative

    def get_value_and_derivative(self, parameters) -> tuple[float, np.ndarray]:
        """Measure and derivative from one shared sample set."""
        return self._evaluate(parameters, compute_derivative=True)
