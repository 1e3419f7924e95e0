"""Torch-LKF: linear Kalman filtering of fully observed states in PyTorch.

torch-lkf implements the classic discrete-time linear Kalman filter when the sensor
observes the whole state (identity observation model). The filter holds a fixed model
(transition ``F``, process noise ``Q``, measurement noise ``R``) and exposes two pure
operations that the caller alternates, one cycle per measure:

- :meth:`~torch_lkf.KalmanFilter.predict`: ``x = F x`` and ``P = F P Fᵀ + Q``
- :meth:`~torch_lkf.KalmanFilter.update`: ``K = P (P + R)^{-1}``, ``x = x + K (z - x)`` and ``P = K P``

The estimate ``(x, P)`` is owned by the caller and never stored by the filter, so a single
filter can be shared between threads.

Getting started
---------------
```python
import torch
import torch_lkf

kf = torch_lkf.KalmanFilter(torch.eye(1), torch.eye(1) * 0.01, torch.eye(1) * 0.1)
x, P = torch.zeros(1, 1), torch.eye(1)

for z in measures:
    x, P = kf.predict(x, P)
    x, P = kf.update(x, P, z)
```

Errors
------
- :class:`~torch_lkf.DimensionMismatch` when a shape does not match the state dimension.
- :class:`~torch_lkf.SingularInnovationCovariance` when ``P + R`` cannot be inverted.

Notes on shapes
---------------
torch-lkf uses column vectors. State and measurement vectors must have shape
``(..., dim, 1)``. Leading dimensions ``...`` are treated as batch dimensions
and may be broadcastable across operations.
"""

from .errors import DimensionMismatch, KalmanFilterError, SingularInnovationCovariance
from .kalman_filter import GaussianState, KalmanFilter

__all__ = [
    "DimensionMismatch",
    "GaussianState",
    "KalmanFilter",
    "KalmanFilterError",
    "SingularInnovationCovariance",
]
__version__ = "0.1.0"
