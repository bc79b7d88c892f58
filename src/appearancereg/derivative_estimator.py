"""Derivative strategies for the appearance model metric.

Finite differences work with any transform and interpolator but cost one
(forward) or two (central) full value evaluations per transform parameter,
which dominates the run time for transforms with many parameters.

The analytic strategy needs transform Jacobians and moving image gradients.
With residual e = v - r and the projector P onto the orthogonal complement of
the model subspace, f = ||P (v - mu)||^2 / n and e = P (v - mu), so

    df/dp = 2/n * sum_i e_i * grad I(T(x_i))^T J_T(x_i)
"""

import logging
from collections.abc import Callable
from typing import Optional

import numpy as np

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.metric_interfaces import MetricInterpolatorBase, MetricTransformBase
from appearancereg.reconstruction_scorer import ReconstructionResult
from appearancereg.sample_collector import SampleSet

FINITE_DIFFERENCE = "finite_difference"
ANALYTIC = "analytic"
DERIVATIVE_METHODS = (FINITE_DIFFERENCE, ANALYTIC)

FINITE_DIFFERENCE_SCHEMES = ("central", "forward")


class FiniteDifferenceDerivative:
    """Finite-difference gradient of a scalar function of the parameters.

    Args:
        step: Perturbation applied to one parameter at a time. Default: 0.01
        scheme: 'central' ((f(p+h) - f(p-h)) / 2h, O(h^2) error) or
            'forward' ((f(p+h) - f(p)) / h, one evaluation per parameter).
            Default: 'central'
    """

    method = FINITE_DIFFERENCE

    def __init__(self, step: float = 0.01, scheme: str = "central"):
        if step <= 0:
            raise ValueError(f"Finite difference step must be positive, got {step}")
        if scheme not in FINITE_DIFFERENCE_SCHEMES:
            raise ValueError(
                f"Invalid finite difference scheme '{scheme}'. "
                f"Valid options: {FINITE_DIFFERENCE_SCHEMES}"
            )
        self.step = step
        self.scheme = scheme

    def compute(
        self,
        value_function: Callable[[np.ndarray], float],
        parameters: np.ndarray,
        base_value: Optional[float] = None,
    ) -> np.ndarray:
        """Estimate the gradient of ``value_function`` at ``parameters``.

        Args:
            value_function: Maps a parameter vector to a scalar
            parameters: Point of evaluation (not modified)
            base_value: ``value_function(parameters)`` if already known;
                only used by the forward scheme

        Returns:
            Gradient vector, same length as ``parameters``
        """
        parameters = np.asarray(parameters, dtype=np.float64)
        derivative = np.zeros(len(parameters))

        if self.scheme == "forward" and base_value is None:
            base_value = value_function(parameters)

        for i in range(len(parameters)):
            plus = parameters.copy()
            plus[i] += self.step
            if self.scheme == "central":
                minus = parameters.copy()
                minus[i] -= self.step
                derivative[i] = (value_function(plus) - value_function(minus)) / (
                    2.0 * self.step
                )
            else:
                derivative[i] = (value_function(plus) - base_value) / self.step
        return derivative


class AnalyticDerivative:
    """Chain-rule gradient from image gradients and transform Jacobians."""

    method = ANALYTIC

    def compute(
        self,
        sample_set: SampleSet,
        result: ReconstructionResult,
        number_of_parameters: int,
    ) -> np.ndarray:
        """Gradient of the mean squared residual.

        Args:
            sample_set: Mapped samples with ``moving_gradients`` and ``jacobians``
            result: Projection of the same samples
            number_of_parameters: Length of the transform parameter vector

        Returns:
            Gradient vector of length ``number_of_parameters``
        """
        if sample_set.moving_gradients is None or sample_set.jacobians is None:
            raise ValueError(
                "Analytic derivatives need moving image gradients and transform Jacobians"
            )
        n = len(sample_set)
        if n == 0:
            return np.zeros(number_of_parameters)

        # (n, P): derivative of each sampled moving intensity
        intensity_derivatives = np.einsum(
            "nd,ndp->np", sample_set.moving_gradients, sample_set.jacobians
        )
        return 2.0 / n * (result.residual @ intensity_derivatives)


def select_derivative_strategy(
    method: str,
    transform: MetricTransformBase,
    interpolator: MetricInterpolatorBase,
    finite_difference_step: float = 0.01,
    finite_difference_scheme: str = "central",
    logger: Optional[AppearanceRegBase] = None,
):
    """Pick the derivative strategy for the requested method and capabilities.

    An analytic request falls back to finite differences when the transform
    has no Jacobian or the interpolator has no gradient.

    Args:
        method: 'finite_difference' or 'analytic'
        transform: Transform whose ``has_jacobian()`` is checked
        interpolator: Interpolator whose ``has_gradient()`` is checked
        finite_difference_step: Step of the finite-difference strategy
        finite_difference_scheme: 'central' or 'forward'
        logger: Optional AppearanceRegBase instance that reports the fallback

    Returns:
        FiniteDifferenceDerivative or AnalyticDerivative
    """
    if method not in DERIVATIVE_METHODS:
        raise ValueError(
            f"Invalid derivative method '{method}'. Valid options: {DERIVATIVE_METHODS}"
        )

    if method == ANALYTIC:
        if transform.has_jacobian() and interpolator.has_gradient():
            return AnalyticDerivative()
        if logger is not None:
            logger.log_warning(
                "Analytic derivative unavailable (transform Jacobian: %s, image "
                "gradient: %s); using finite differences",
                transform.has_jacobian(),
                interpolator.has_gradient(),
            )

    return FiniteDifferenceDerivative(
        step=finite_difference_step, scheme=finite_difference_scheme
    )
