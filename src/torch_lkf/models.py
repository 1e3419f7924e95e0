"""Builders for constant-derivative motion models.

The state of each spatial dimension is a value and its derivatives up to ``order``:

- constant position (order = 0),
- constant velocity (order = 1),
- constant acceleration (order = 2), etc.

The ``order``-th derivative is assumed constant over a time step, with an additive Gaussian noise.
As the filter observes the whole state, the measurement noise covers every component
(values and derivatives).

States are grouped by dimension: ``x, x', ..., y, y', ...``.
"""

from __future__ import annotations

import math

import torch

from .kalman_filter import KalmanFilter


def constant_process_matrix(order: int, dt=1.0) -> torch.Tensor:
    r"""Create the transition matrix ``F`` of a single dimension.

    It follows the Taylor expansion, assuming null derivatives above ``order``:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Example:
        Constant acceleration with ``dt = 0.5``::

            [
                [1, 0.5, 0.125],
                [0, 1.0, 0.5],
                [0, 0.0, 1.0],
            ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0

    Returns:
        torch.Tensor: Transition matrix ``F``.
            Shape: ``(order + 1, order + 1)``
    """
    process_matrix = torch.zeros(order + 1, order + 1, dtype=torch.float64)
    for k in range(order + 1):
        coefficient = dt**k / math.factorial(k)
        process_matrix += torch.diag(torch.full((order + 1 - k,), coefficient, dtype=torch.float64), k)
    return process_matrix


def constant_process_noise(process_std: float, order: int, dt=1.0) -> torch.Tensor:
    """Create the process noise covariance ``Q`` of a single dimension.

    The noise w ~ N(0, process_std**2) on the ``order``-th derivative propagates to the lower derivatives
    through the same Taylor coefficients as the transition: Q = process_std**2 g gᵀ,
    with g = (dt^order / order!, ..., dt, 1).

    Args:
        process_std (float): Standard deviation of the variations of the ``order``-th derivative
            during a time step.
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0

    Returns:
        torch.Tensor: Process noise covariance ``Q``.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = torch.tensor([dt**k / math.factorial(k) for k in range(order, -1, -1)], dtype=torch.float64)
    return process_std**2 * coefficients[:, None] @ coefficients[None]


def constant_kalman_filter(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=1,
    order=0,
    dt=1.0,
    dtype: torch.dtype = torch.float64,
) -> KalmanFilter:
    """Create a constant-derivative Kalman filter.

    The full state dimension is ``(order + 1) * dim``.

    Example:
        A 1d constant position model, with Q = 0.01 and R = 0.1::

            kf = constant_kalman_filter(0.1**0.5, 0.1)

    Args:
        measurement_std (float | torch.Tensor): Measurement noise standard deviation of each state component.
            Shape: broadcastable to ``((order + 1) * dim,)``
        process_std (float | torch.Tensor): Process noise standard deviation on the ``order``-th derivative
            of each dimension.
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent dimensions (1d, 2d, 3d, ...).
            Default: 1
        order (int): Highest derivative order included in the state.
            Default: 0 (constant position)
        dt (float): Time step duration.
            Default: 1.0
        dtype (torch.dtype): Dtype of the filter.
            Default: torch.float64

    Returns:
        KalmanFilter: Filter configured for the constant-derivative model.
    """
    state_dim = (order + 1) * dim
    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std, dtype=torch.float64), (state_dim,))
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.float64), (dim,))

    process_matrix = torch.block_diag(*(constant_process_matrix(order, dt) for _ in range(dim)))
    process_noise = torch.block_diag(*(constant_process_noise(std.item(), order, dt) for std in process_std))
    measurement_noise = torch.diag(measurement_std**2)

    return KalmanFilter(process_matrix, process_noise, measurement_noise, dtype=dtype)
