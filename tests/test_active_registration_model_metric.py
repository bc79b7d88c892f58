#!/usr/bin/env python
"""
Tests for ActiveRegistrationModelMetric.

With the shared fixtures, a translation t = (tx, ty) shifts every sampled
moving intensity by c = 2 tx + 0.5 ty. At level 1 (full sampling, fine model
with basis B and the fixed ramp as mean) the measure is therefore

    c^2 * ||P 1||^2 / 100,   P = I - B B^T

which is quadratic in t, so analytic and central finite-difference
derivatives agree.
"""

import itk
import numpy as np
import pytest

from appearancereg.active_registration_model_metric import (
    DEGRADED_MEASURE,
    ActiveRegistrationModelMetric,
    MetricState,
)
from appearancereg.image_interpolators import BinaryImageMask, LinearImageInterpolator
from appearancereg.image_samplers import (
    ImageFullSampler,
    ImageGridSampler,
    ImageRandomSampler,
)
from appearancereg.metric_exceptions import ConfigurationError
from appearancereg.metric_interfaces import DiagnosticImageWriterBase
from appearancereg.metric_transforms import TranslationTransform
from appearancereg.reconstructed_image_writer import ReconstructedImageWriter
from appearancereg.statistical_model import ModelCollection, StatisticalModel


def expected_level_one_measure(model_collection, parameters):
    basis = model_collection[1].basis
    ones = np.ones(100)
    projected = ones - basis @ (basis.T @ ones)
    c = 2.0 * parameters[0] + 0.5 * parameters[1]
    return c * c * (projected @ projected) / 100


class FailingWriter(DiagnosticImageWriterBase):
    def write(self, image, iteration_tag):
        raise OSError("disk full")


class BadPathWriter(DiagnosticImageWriterBase):
    def write(self, image, iteration_tag):
        raise ValueError("bad path")


class LevelChangingTransform(TranslationTransform):
    """Tries to reconfigure the metric from inside an evaluation."""

    def __init__(self, metric):
        super().__init__(dimension=2)
        self.metric = metric
        self.errors = []

    def transform_points(self, points, parameters):
        try:
            self.metric.set_level(1)
        except RuntimeError as err:
            self.errors.append(err)
        return super().transform_points(points, parameters)


class TestMetricConfiguration:
    """Test suite for setup, initialization and options."""

    def test_initialize(self, metric):
        """Test the state after a successful initialization."""
        assert metric.state == MetricState.UNINITIALIZED
        metric.initialize()
        assert metric.state == MetricState.INITIALIZED
        assert metric.get_level() == 0
        assert metric.get_number_of_parameters() == 2
        print("\n✓ Metric initialized")

    def test_initialize_missing_components(self):
        metric = ActiveRegistrationModelMetric()
        metric.set_transform(TranslationTransform(dimension=2))
        with pytest.raises(ConfigurationError, match="interpolator"):
            metric.initialize()
        print("✓ Missing components raise ConfigurationError")

    def test_initialize_without_level_zero(self, metric, fine_model):
        metric.set_model_collection(ModelCollection({1: fine_model}))
        with pytest.raises(ConfigurationError, match="level 0"):
            metric.initialize()
        print("✓ Collection without level 0 rejected")

    def test_initialize_representer_mismatch(self, metric, basis_factory):
        """Test that a model must match the voxel count of its sampling domain."""
        small_model = StatisticalModel(
            mean=np.zeros(50), basis=basis_factory(50, 2), variance=np.ones(2)
        )
        metric.set_model_collection(ModelCollection({0: small_model}))
        with pytest.raises(ConfigurationError, match="representers"):
            metric.initialize()
        print("✓ Representer mismatch rejected")

    def test_evaluate_before_initialize(self, metric):
        with pytest.raises(ConfigurationError):
            metric.get_value(np.zeros(2))
        print("✓ Evaluation requires initialize()")

    def test_setter_invalidates_initialization(self, initialized_metric):
        initialized_metric.set_image_sampler(ImageGridSampler())
        assert initialized_metric.state == MetricState.UNINITIALIZED
        with pytest.raises(ConfigurationError):
            initialized_metric.get_value(np.zeros(2))
        print("✓ Changing a collaborator requires re-initialization")

    def test_wrong_parameter_length(self, initialized_metric):
        with pytest.raises(ValueError):
            initialized_metric.get_value(np.zeros(3))
        assert initialized_metric.state == MetricState.INITIALIZED
        print("✓ Parameter length checked")

    def test_set_parameters(self, metric, log_records):
        """Test the options dictionary and unknown-key warnings."""
        defaults = ActiveRegistrationModelMetric.get_default_parameters()
        assert defaults["required_ratio_of_valid_samples"] == 0.25
        assert defaults["derivative_method"] == "finite_difference"

        metric.set_parameters(
            {
                "number_of_principal_components": [2, 3],
                "finite_difference_step": 0.05,
                "derivative_method": "analytic",
                "number_of_threads": 2,
                "maximum_step_length": 1.0,
            }
        )
        assert metric.get_number_of_principal_components(0) == 2
        assert metric.get_number_of_principal_components(1) == 3
        assert metric.finite_difference_step == 0.05
        assert metric.derivative_method == "analytic"
        messages = [record.getMessage() for record in log_records]
        assert any("maximum_step_length" in message for message in messages)
        print("✓ Options applied, unknown key reported")

    def test_invalid_options(self, metric):
        with pytest.raises(ValueError):
            metric.set_derivative_method("symbolic")
        with pytest.raises(ValueError):
            metric.set_finite_difference_step(-1.0)
        with pytest.raises(ValueError):
            metric.set_number_of_principal_components([3, -1])
        with pytest.raises(ValueError):
            metric.set_required_ratio_of_valid_samples(1.5)
        print("✓ Invalid options rejected")


class TestMetricLevels:
    """Test suite for resolution level handling."""

    def test_level_cannot_decrease_within_run(self, initialized_metric):
        metric = initialized_metric
        metric.set_level(1)
        metric.get_value(np.zeros(2))
        with pytest.raises(ConfigurationError, match="cannot decrease"):
            metric.set_level(0)

        metric.initialize()
        metric.set_level(0)
        assert metric.get_level() == 0
        print("\n✓ Level is monotone within a run and reset by initialize()")

    def test_level_without_model(self, initialized_metric):
        with pytest.raises(ConfigurationError):
            initialized_metric.set_level(5)
        print("✓ Level without model rejected")

    def test_levels_use_their_models(self, initialized_metric, model_collection):
        """Test that each level samples the domain of its own model."""
        metric = initialized_metric
        parameters = np.array([0.3, -0.2])

        value_level_zero = metric.get_value(parameters)
        basis = model_collection[0].basis
        projected = np.ones(25) - basis @ (basis.T @ np.ones(25))
        assert value_level_zero == pytest.approx(0.25 * (projected @ projected) / 25)

        metric.set_level(1)
        value_level_one = metric.get_value(parameters)
        assert value_level_one == pytest.approx(
            expected_level_one_measure(model_collection, parameters)
        )
        print(f"✓ Level 0 -> {value_level_zero:.5f}, level 1 -> {value_level_one:.5f}")

    def test_setter_rejected_during_evaluation(self, metric):
        """Test that configuration cannot change while evaluating."""
        transform = LevelChangingTransform(metric)
        metric.set_transform(transform)
        metric.initialize()
        metric.get_value(np.zeros(2))

        assert len(transform.errors) == 1
        assert metric.get_level() == 0
        assert metric.state == MetricState.INITIALIZED
        print("✓ set_level during evaluation raises RuntimeError")


class TestMetricEvaluation:
    """Test suite for measures and derivatives."""

    def test_perfect_alignment(self, initialized_metric):
        """Test a zero measure when the moving image matches the model mean."""
        metric = initialized_metric
        assert metric.get_value(np.zeros(2)) == pytest.approx(0.0, abs=1e-10)
        metric.set_level(1)
        assert metric.get_value(np.zeros(2)) == pytest.approx(0.0, abs=1e-10)
        print("\n✓ Zero measure at identity")

    def test_closed_form_measure(self, initialized_metric, model_collection):
        initialized_metric.set_level(1)
        parameters = np.array([0.7, 0.4])
        value = initialized_metric.get_value(parameters)
        assert value == pytest.approx(
            expected_level_one_measure(model_collection, parameters)
        )
        assert np.array_equal(parameters, [0.7, 0.4]), "Parameters modified"
        print(f"✓ Measure {value:.5f} matches closed form")

    def test_zero_principal_components(self, initialized_metric):
        """Test that without components the measure is c^2."""
        metric = initialized_metric
        metric.set_number_of_principal_components({1: 0})
        metric.set_level(1)
        assert metric.get_value(np.array([0.3, -0.2])) == pytest.approx(0.25)
        print("✓ k=0 measure equals squared intensity offset")

    def test_fewer_components_never_decrease_measure(self, initialized_metric):
        metric = initialized_metric
        metric.set_level(1)
        parameters = np.array([0.5, 0.5])
        measures = []
        for k in range(5):
            metric.set_number_of_principal_components({1: k})
            measures.append(metric.get_value(parameters))
        assert all(
            later <= earlier + 1e-12 for earlier, later in zip(measures, measures[1:])
        ), f"Measure increased with components: {measures}"
        print("✓ Measure non-increasing in components")

    def test_analytic_derivative_matches_finite_differences(self, initialized_metric):
        """Test agreement of both derivative strategies."""
        metric = initialized_metric
        metric.set_level(1)
        parameters = np.array([0.3, -0.2])

        metric.set_derivative_method("finite_difference")
        fd_value, fd_derivative = metric.get_value_and_derivative(parameters)
        metric.set_derivative_method("analytic")
        analytic_value, analytic_derivative = metric.get_value_and_derivative(parameters)

        assert analytic_value == pytest.approx(fd_value)
        assert np.allclose(analytic_derivative, fd_derivative, rtol=1e-4, atol=1e-8)
        assert np.linalg.norm(analytic_derivative) > 0
        print(f"✓ Analytic {analytic_derivative} matches FD {fd_derivative}")

    def test_value_and_derivative_consistent(self, initialized_metric):
        metric = initialized_metric
        parameters = np.array([0.2, 0.1])
        value, derivative = metric.get_value_and_derivative(parameters)
        assert value == pytest.approx(metric.get_value(parameters))
        assert np.allclose(derivative, metric.get_derivative(parameters))
        assert derivative.shape == (2,)
        print("✓ Combined call consistent with separate calls")

    def test_insufficient_samples_degrade(self, initialized_metric, log_records):
        """Test the degraded result when the image is moved out of view."""
        metric = initialized_metric
        value, derivative = metric.get_value_and_derivative(np.array([100.0, 100.0]))

        assert value == DEGRADED_MEASURE
        assert np.array_equal(derivative, np.zeros(2))
        assert metric.state == MetricState.INITIALIZED
        messages = [record.getMessage() for record in log_records]
        assert any("Too many samples map outside" in message for message in messages)
        print("✓ Degraded measure returned with a warning")

    def test_partial_overlap_still_evaluates(self, initialized_metric):
        metric = initialized_metric
        metric.set_level(1)
        value = metric.get_value(np.array([10.0, 0.0]))
        assert np.isfinite(value) and value > 0
        print("✓ Half overlap evaluates normally")

    def test_deterministic_with_threads(self, initialized_metric):
        """Test that repeated and multi-threaded calls agree."""
        metric = initialized_metric
        metric.set_level(1)
        metric.set_derivative_method("analytic")
        parameters = np.array([1.3, -0.6])

        first = metric.get_value_and_derivative(parameters)
        second = metric.get_value_and_derivative(parameters)
        metric.set_number_of_threads(4)
        threaded = metric.get_value_and_derivative(parameters)

        assert first[0] == second[0] == threaded[0]
        assert np.array_equal(first[1], threaded[1])
        print("✓ Evaluation is deterministic")

    def test_stochastic_sampler(self, metric):
        """Test evaluation with a random sampler on partial samples."""
        metric.set_image_sampler(ImageRandomSampler(number_of_samples=40, seed=1))
        metric.initialize()
        metric.set_level(1)
        value, derivative = metric.get_value_and_derivative(np.array([0.3, -0.2]))
        assert np.isfinite(value) and value >= 0
        assert np.all(np.isfinite(derivative))
        print("✓ Random sampler evaluation finite")


class TestReconstructedImageOutput:
    """Test suite for per-iteration reconstructed image output."""

    def test_writes_reconstructed_images(self, initialized_metric, tmp_path):
        metric = initialized_metric
        writer = ReconstructedImageWriter(tmp_path)
        metric.set_write_reconstructed_image_each_iteration(True, writer)

        metric.get_value(np.zeros(2))
        metric.get_value(np.zeros(2))

        expected = [
            tmp_path / "reconstructed_R0It00000.mha",
            tmp_path / "reconstructed_R0It00001.mha",
        ]
        assert writer.written_files == expected
        assert all(path.exists() for path in expected)

        image = itk.imread(str(expected[0]))
        assert tuple(itk.size(image)) == (5, 5)
        assert np.allclose(list(itk.spacing(image)), [2.0, 2.0])
        print("\n✓ Reconstructed images written on the level 0 grid")

    def test_writer_failure_is_not_fatal(self, initialized_metric, log_records):
        metric = initialized_metric
        metric.set_write_reconstructed_image_each_iteration(True, FailingWriter())
        value = metric.get_value(np.zeros(2))
        assert value == pytest.approx(0.0, abs=1e-10)
        messages = [record.getMessage() for record in log_records]
        assert any("disk full" in message for message in messages)
        print("✓ Writer failure logged, evaluation continues")

    def test_writer_error_of_any_type_is_not_fatal(self, initialized_metric, log_records):
        """Test that a writer raising ValueError leaves the measure intact."""
        metric = initialized_metric
        metric.set_write_reconstructed_image_each_iteration(True, BadPathWriter())
        value, derivative = metric.get_value_and_derivative(np.zeros(2))
        assert value == pytest.approx(0.0, abs=1e-10)
        assert np.allclose(derivative, 0.0, atol=1e-8)
        assert metric.state == MetricState.INITIALIZED
        messages = [record.getMessage() for record in log_records]
        assert any("bad path" in message for message in messages)
        print("✓ ValueError from the writer logged, evaluation continues")


class TestMetricMasks:
    """Test suite for fixed and moving masks through the metric."""

    def test_small_fixed_mask(self, metric, image_factory):
        """Test that a mask covering 20% of the fixed image is not degraded."""
        mask_array = np.zeros((10, 10))
        mask_array[:2, :] = 1
        mask = BinaryImageMask(image_factory(mask_array))
        metric.set_image_sampler(ImageFullSampler(image_mask=mask))
        metric.initialize()
        metric.set_level(1)

        assert metric.get_value(np.zeros(2)) == pytest.approx(0.0, abs=1e-10)
        value = metric.get_value(np.array([0.3, -0.2]))
        # c = 0.5, so the measure lies between 0 and c^2
        assert value != DEGRADED_MEASURE, "Masked evaluation should not degrade"
        assert 0.0 < value <= 0.25 + 1e-12
        print(f"\n✓ Fixed mask of 20 voxels gives measure {value:.4f}")

    def test_random_sampler_with_fixed_mask(self, metric, image_factory):
        mask_array = np.zeros((10, 10))
        mask_array[:, :3] = 1
        mask = BinaryImageMask(image_factory(mask_array))
        metric.set_image_sampler(
            ImageRandomSampler(number_of_samples=20, seed=5, image_mask=mask)
        )
        metric.initialize()
        metric.set_level(1)

        value, derivative = metric.get_value_and_derivative(np.array([0.3, -0.2]))
        assert 0.0 < value <= 0.25 + 1e-12
        assert np.linalg.norm(derivative) > 0
        print("✓ Masked random sampling evaluates normally")

    def test_empty_fixed_mask(self, metric, image_factory):
        """Test that an all-zero fixed mask is a configuration error."""
        mask = BinaryImageMask(image_factory(np.zeros((10, 10))))
        metric.set_image_sampler(ImageFullSampler(image_mask=mask))
        metric.initialize()
        with pytest.raises(ConfigurationError):
            metric.get_value(np.zeros(2))
        assert metric.state == MetricState.INITIALIZED
        print("✓ Empty fixed mask raises ConfigurationError")

    def test_empty_moving_mask(self, metric, moving_image, image_factory, log_records):
        """Test that an all-zero moving mask leaves too few samples."""
        mask = BinaryImageMask(image_factory(np.zeros((20, 20)), origin=(-5.0, -5.0)))
        metric.set_interpolator(LinearImageInterpolator(moving_image, image_mask=mask))
        metric.initialize()
        metric.set_level(1)

        value, derivative = metric.get_value_and_derivative(np.array([0.3, -0.2]))
        assert value == DEGRADED_MEASURE
        assert np.array_equal(derivative, np.zeros(2))
        messages = [record.getMessage() for record in log_records]
        assert any("Too many samples map outside" in message for message in messages)
        print("✓ Empty moving mask gives the degraded measure")
