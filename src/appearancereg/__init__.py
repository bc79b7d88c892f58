"""
AppearanceReg - Statistical appearance model similarity metric for
    multi-resolution image registration.

The metric scores how well the moving image, resampled through the current
transform, is reconstructed by a principal-component appearance model trained
for the current resolution level.

Main Components:
    - ActiveRegistrationModelMetric: The appearance model metric
    - ModelCollection / StatisticalModel: Per-level PCA appearance models
    - WorkflowCreateAppearanceModels: Builds a ModelCollection from training images
    - RegisterImagesActiveModel: Coarse-to-fine optimizer driver
    - Samplers, interpolators and transforms usable by the metric
    - AppearanceRegBase: Base class with standardized logging
"""

__version__ = "2026.10.0"

from .active_registration_model_metric import (
    DEGRADED_MEASURE,
    ActiveRegistrationModelMetric,
    MetricState,
)

# Base classes
from .appearancereg_base import AppearanceRegBase

# Metric stages
from .correspondence_mapper import CorrespondenceMapper
from .derivative_estimator import (
    AnalyticDerivative,
    FiniteDifferenceDerivative,
    select_derivative_strategy,
)

# Interpolators, samplers and transforms
from .image_interpolators import BinaryImageMask, LinearImageInterpolator
from .image_samplers import ImageFullSampler, ImageGridSampler, ImageRandomSampler
from .metric_exceptions import ConfigurationError, InsufficientSamplesError
from .metric_interfaces import (
    DiagnosticImageWriterBase,
    ImageMaskBase,
    ImageSamplerBase,
    MetricInterpolatorBase,
    MetricTransformBase,
)
from .metric_transforms import AffineTransform, ITKTransformAdapter, TranslationTransform
from .model_selector import ModelSelector
from .reconstructed_image_writer import ReconstructedImageWriter
from .reconstruction_scorer import ReconstructionResult, ReconstructionScorer

# Workflow classes
from .register_images_active_model import RegisterImagesActiveModel
from .sample_collector import Sample, SampleCollector, SampleSet
from .statistical_model import LevelModel, ModelCollection, StatisticalModel
from .workflow_create_appearance_models import WorkflowCreateAppearanceModels

__all__ = [
    # Metric
    "ActiveRegistrationModelMetric",
    "MetricState",
    "DEGRADED_MEASURE",
    # Workflow classes
    "WorkflowCreateAppearanceModels",
    "RegisterImagesActiveModel",
    # Models
    "StatisticalModel",
    "LevelModel",
    "ModelCollection",
    "ModelSelector",
    # Metric stages
    "Sample",
    "SampleSet",
    "SampleCollector",
    "CorrespondenceMapper",
    "ReconstructionResult",
    "ReconstructionScorer",
    "FiniteDifferenceDerivative",
    "AnalyticDerivative",
    "select_derivative_strategy",
    # Collaborators
    "ImageFullSampler",
    "ImageGridSampler",
    "ImageRandomSampler",
    "BinaryImageMask",
    "LinearImageInterpolator",
    "TranslationTransform",
    "AffineTransform",
    "ITKTransformAdapter",
    "ReconstructedImageWriter",
    # Interfaces
    "ImageMaskBase",
    "ImageSamplerBase",
    "MetricInterpolatorBase",
    "MetricTransformBase",
    "DiagnosticImageWriterBase",
    # Errors
    "ConfigurationError",
    "InsufficientSamplesError",
    # Base classes
    "AppearanceRegBase",
]
