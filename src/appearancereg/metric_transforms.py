"""Transforms usable by the appearance model metric.

TranslationTransform and AffineTransform are vectorized over points and
provide analytic parameter Jacobians. ITKTransformAdapter wraps any ITK
transform and evaluates it point by point through a working copy, so the
caller's transform and parameter vector are never modified.
"""

from typing import Optional

import itk
import numpy as np

from appearancereg.metric_interfaces import MetricTransformBase


class TranslationTransform(MetricTransformBase):
    """``T(x) = x + t``; parameters are the d offsets."""

    def __init__(self, dimension: int = 3):
        self.dimension = dimension

    def get_number_of_parameters(self) -> int:
        return self.dimension

    def get_identity_parameters(self) -> np.ndarray:
        return np.zeros(self.dimension)

    def transform_point(self, point, parameters) -> np.ndarray:
        return np.asarray(point, dtype=np.float64) + np.asarray(parameters, dtype=np.float64)

    def transform_points(self, points: np.ndarray, parameters) -> np.ndarray:
        return np.asarray(points, dtype=np.float64) + np.asarray(parameters, dtype=np.float64)

    def has_jacobian(self) -> bool:
        return True

    def jacobian(self, point, parameters) -> np.ndarray:
        return np.eye(self.dimension)

    def jacobians(self, points: np.ndarray, parameters) -> np.ndarray:
        return np.broadcast_to(
            np.eye(self.dimension), (len(points), self.dimension, self.dimension)
        ).copy()


class AffineTransform(MetricTransformBase):
    """``T(x) = A (x - c) + t + c`` with a fixed center of rotation c.

    Parameters follow the ITK convention: the d*d matrix entries in row-major
    order followed by the d translation components.

    Args:
        dimension: Spatial dimension. Default: 3
        center: Center of rotation. Default: origin
    """

    def __init__(self, dimension: int = 3, center: Optional[np.ndarray] = None):
        self.dimension = dimension
        if center is None:
            center = np.zeros(dimension)
        self.center = np.asarray(center, dtype=np.float64)

    def get_number_of_parameters(self) -> int:
        return self.dimension * self.dimension + self.dimension

    def get_identity_parameters(self) -> np.ndarray:
        return np.concatenate([np.eye(self.dimension).ravel(), np.zeros(self.dimension)])

    def _split(self, parameters):
        parameters = np.asarray(parameters, dtype=np.float64)
        d = self.dimension
        return parameters[: d * d].reshape(d, d), parameters[d * d :]

    def transform_point(self, point, parameters) -> np.ndarray:
        return self.transform_points(np.atleast_2d(point), parameters)[0]

    def transform_points(self, points: np.ndarray, parameters) -> np.ndarray:
        matrix, translation = self._split(parameters)
        centered = np.asarray(points, dtype=np.float64) - self.center
        return centered @ matrix.T + translation + self.center

    def has_jacobian(self) -> bool:
        return True

    def jacobian(self, point, parameters) -> np.ndarray:
        return self.jacobians(np.atleast_2d(point), parameters)[0]

    def jacobians(self, points: np.ndarray, parameters) -> np.ndarray:
        d = self.dimension
        centered = np.asarray(points, dtype=np.float64) - self.center
        jac = np.zeros((len(centered), d, d * d + d))
        for row in range(d):
            # d y_row / d A[row, col] = (x - c)[col]
            jac[:, row, row * d : (row + 1) * d] = centered
            jac[:, row, d * d + row] = 1.0
        return jac


class ITKTransformAdapter(MetricTransformBase):
    """Adapts an ITK transform to the metric's transform interface.

    A working transform of the same type is created once and receives the
    fixed parameters of the wrapped transform; per-call parameters are set on
    the working copy only.

    Args:
        itk_transform: Any ITK transform with double precision parameters
        use_jacobian: Report the ITK parameter Jacobian as available.
            Default: True
    """

    def __init__(self, itk_transform, use_jacobian: bool = True):
        self.itk_transform = itk_transform
        self.use_jacobian = use_jacobian
        self.dimension = itk_transform.GetInputSpaceDimension()

        self._working_transform = type(itk_transform).New()
        self._working_transform.SetFixedParameters(itk_transform.GetFixedParameters())
        self._working_transform.SetParameters(itk_transform.GetParameters())

    def get_number_of_parameters(self) -> int:
        return int(self.itk_transform.GetNumberOfParameters())

    def get_identity_parameters(self) -> np.ndarray:
        identity = type(self.itk_transform).New()
        identity.SetFixedParameters(self.itk_transform.GetFixedParameters())
        identity.SetIdentity()
        itk_params = identity.GetParameters()
        return np.array([itk_params[i] for i in range(len(itk_params))])

    def _set_parameters(self, parameters) -> None:
        n_params = self.get_number_of_parameters()
        itk_params = itk.OptimizerParameters[itk.D](n_params)
        for i in range(n_params):
            itk_params[i] = float(parameters[i])
        self._working_transform.SetParameters(itk_params)

    def _itk_point(self, point):
        itk_point = itk.Point[itk.D, self.dimension]()
        for i in range(self.dimension):
            itk_point[i] = float(point[i])
        return itk_point

    def transform_point(self, point, parameters) -> np.ndarray:
        self._set_parameters(parameters)
        mapped = self._working_transform.TransformPoint(self._itk_point(point))
        return np.array([mapped[i] for i in range(self.dimension)])

    def transform_points(self, points: np.ndarray, parameters) -> np.ndarray:
        self._set_parameters(parameters)
        mapped_points = np.zeros((len(points), self.dimension))
        for n, point in enumerate(points):
            mapped = self._working_transform.TransformPoint(self._itk_point(point))
            for i in range(self.dimension):
                mapped_points[n, i] = mapped[i]
        return mapped_points

    def has_jacobian(self) -> bool:
        return self.use_jacobian

    def _jacobian_at(self, point) -> np.ndarray:
        jacobian = itk.Array2D[itk.D]()
        self._working_transform.ComputeJacobianWithRespectToParameters(
            self._itk_point(point), jacobian
        )
        return np.array(
            [
                [jacobian.get(r, c) for c in range(jacobian.cols())]
                for r in range(jacobian.rows())
            ]
        )

    def jacobian(self, point, parameters) -> np.ndarray:
        self._set_parameters(parameters)
        return self._jacobian_at(point)

    def jacobians(self, points: np.ndarray, parameters) -> np.ndarray:
        self._set_parameters(parameters)
        return np.array([self._jacobian_at(p) for p in points])
