#!/usr/bin/env python
"""
Shared pytest fixtures for AppearanceReg tests.

All fixtures build small synthetic 2D images in memory. The moving image is
the intensity ramp I(x, y) = 2x + 0.5y + 3 on a 20x20 grid with origin
(-5, -5), so that the 10x10 fixed grid at the origin stays inside it for
moderate translations. Linear interpolation reproduces the ramp exactly and
its gradient is (2, 0.5) everywhere.
"""

import logging

import itk
import numpy as np
import pytest

from appearancereg.active_registration_model_metric import ActiveRegistrationModelMetric
from appearancereg.appearancereg_base import LOGGER_NAME, AppearanceRegBase
from appearancereg.image_interpolators import LinearImageInterpolator
from appearancereg.image_samplers import ImageFullSampler
from appearancereg.metric_transforms import TranslationTransform
from appearancereg.statistical_model import ModelCollection, StatisticalModel

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests that run full registrations (deselect with -m \"not slow\")",
    )


def ramp_value(x, y):
    """Intensity of the synthetic ramp at physical (x, y)."""
    return 2.0 * x + 0.5 * y + 3.0


def make_image(array, origin=(0.0, 0.0), spacing=(1.0, 1.0)):
    """2D float ITK image from an array indexed [y, x]."""
    image = itk.image_from_array(np.ascontiguousarray(array, dtype=np.float32))
    image.SetOrigin([float(o) for o in origin])
    image.SetSpacing([float(s) for s in spacing])
    return image


def make_ramp_image(size, origin=(0.0, 0.0), spacing=(1.0, 1.0)):
    """Ramp image with ``size`` = (nx, ny) voxels."""
    xs = origin[0] + spacing[0] * np.arange(size[0])
    ys = origin[1] + spacing[1] * np.arange(size[1])
    xx, yy = np.meshgrid(xs, ys)
    return make_image(ramp_value(xx, yy), origin=origin, spacing=spacing)


def orthonormal_basis(number_of_rows, number_of_columns, seed=0):
    rng = np.random.default_rng(seed)
    q, _ = np.linalg.qr(rng.standard_normal((number_of_rows, number_of_columns)))
    return q


def image_values(image):
    """Image intensities in representer (ITK buffer) order."""
    return itk.array_from_image(image).ravel().astype(np.float64)


# ============================================================================
# Image fixtures
# ============================================================================


@pytest.fixture
def image_factory():
    """Builds 2D float images from arrays indexed [y, x]."""
    return make_image


@pytest.fixture
def ramp_image_factory():
    """Builds ramp images of a given size, origin and spacing."""
    return make_ramp_image


@pytest.fixture
def basis_factory():
    return orthonormal_basis


@pytest.fixture
def fixed_image():
    """10x10 ramp image with origin (0, 0) and unit spacing."""
    return make_ramp_image((10, 10))


@pytest.fixture
def coarse_image():
    """5x5 ramp image covering the fixed image at half resolution."""
    return make_ramp_image((5, 5), origin=(0.5, 0.5), spacing=(2.0, 2.0))


@pytest.fixture
def moving_image():
    """20x20 ramp image with origin (-5, -5)."""
    return make_ramp_image((20, 20), origin=(-5.0, -5.0))


# ============================================================================
# Model fixtures
# ============================================================================


@pytest.fixture
def fine_model(fixed_image):
    """Level 1 model on the fixed image grid (no reference image)."""
    return StatisticalModel(
        mean=image_values(fixed_image),
        basis=orthonormal_basis(100, 4, seed=2),
        variance=np.array([4.0, 3.0, 2.0, 1.0]),
    )


@pytest.fixture
def coarse_model(coarse_image):
    """Level 0 model sampled on its own coarse reference image."""
    return StatisticalModel(
        mean=image_values(coarse_image),
        basis=orthonormal_basis(25, 3, seed=1),
        variance=np.array([3.0, 2.0, 1.0]),
        reference_image=coarse_image,
    )


@pytest.fixture
def model_collection(coarse_model, fine_model):
    """Two-level collection: level 0 coarse, level 1 fine."""
    return ModelCollection({0: coarse_model, 1: fine_model})


# ============================================================================
# Metric fixtures
# ============================================================================


@pytest.fixture
def metric(fixed_image, moving_image, model_collection):
    """Fully configured, not yet initialized metric with a 2D translation."""
    metric = ActiveRegistrationModelMetric()
    metric.set_fixed_image(fixed_image)
    metric.set_transform(TranslationTransform(dimension=2))
    metric.set_interpolator(LinearImageInterpolator(moving_image))
    metric.set_image_sampler(ImageFullSampler())
    metric.set_model_collection(model_collection)
    return metric


@pytest.fixture
def initialized_metric(metric):
    metric.initialize()
    return metric


# ============================================================================
# Logging fixtures
# ============================================================================


class _RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def log_records():
    """Records emitted by the shared AppearanceReg logger during a test."""
    # The shared logger clears its handlers when first set up
    AppearanceRegBase(class_name="TestLogCapture")
    handler = _RecordingHandler()
    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(handler)
    yield handler.records
    logger.removeHandler(handler)
