from __future__ import annotations

import dataclasses
import logging
import math
from typing import Iterator, overload

import torch
import torch.linalg

from .errors import DimensionMismatch, SingularInnovationCovariance

# Note on runtime:
# The innovation covariance is inverted explicitly with `inv_ex` rather than solved with a cholesky decomposition.
# In real cases, the state dimension is small and the inverse can be re-used to gate measures (mahalanobis
# distance or likelihood of the projection) before the update.

logger = logging.getLogger(__name__)

printoptions = torch._tensor_str.printoptions  # noqa: SLF001


@dataclasses.dataclass
class GaussianState:
    """Gaussian belief over the state: x ~ N(mean, covariance).

    The pair is owned by the caller and flows predict -> update -> predict -> ... The filter never keeps it.
    A GaussianState unpacks as ``(mean, covariance)``, so it can be used wherever an estimate pair is expected:

    ```python
        x, P = kf.predict(x, P)
        x, P = kf.update(x, P, z)
    ```

    Conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Leading dimensions ``...`` are batch dimensions (many estimates sharing the same model).

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional inverse of the covariance. It is set on projections, where it is required
            by the update anyway.
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def __iter__(self) -> Iterator[torch.Tensor]:
        yield self.mean
        yield self.covariance

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def __getitem__(self, idx) -> GaussianState:
        """Index the batch dimensions of the state."""
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    def __setitem__(self, idx, value: GaussianState) -> None:
        """Assign another state into the batch dimensions."""
        if not isinstance(value, GaussianState):
            raise NotImplementedError("Only GaussianState assignment is supported.")

        self.mean[idx] = value.mean
        self.covariance[idx] = value.covariance
        if self.precision is not None and value.precision is not None:
            self.precision[idx] = value.precision

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert the state to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Dtype or device to send the state to.

        Returns:
            GaussianState: The converted state
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Squared Mahalanobis distance of a measure: (z - μ)ᵀ Σ^{-1} (z - μ).

        On a projection (see `KalmanFilter.project`) this is the normalized innovation squared,
        the usual quantity to gate a measure before updating.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate, broadcastable with the state.
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared distances.
                Shape: ``(...)``
        """
        diff = measure - self.mean
        precision = self.precision if self.precision is not None else torch.linalg.inv(self.covariance)
        return (diff.mT @ precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Mahalanobis distance of a measure (square root of `mahalanobis_squared`)."""
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Log density of the measure: -1/2 (dim log(2π) + log|Σ| + MAHA²).

        Args:
            measure (torch.Tensor): Measure(s) to evaluate, broadcastable with the state.
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihoods.
                Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        _, log_det = torch.linalg.slogdet(self.covariance)
        dim = self.covariance.shape[-1]
        return -0.5 * (dim * math.log(2 * math.pi) + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Density of the measure (exponential of `log_likelihood`)."""
        return self.log_likelihood(measure).exp()


class KalmanFilter:
    """Linear Kalman filter with an identity observation model, in PyTorch.

    It estimates the latent state of the linear system:

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = x_k       + v_k,   v_k ~ N(0, R)

    The whole state is observed (H = I), so the measure and the state share the same dimension ``n``.

    The filter only holds the fixed model ``F, Q, R`` (copied at construction and never modified).
    Estimates are passed by the caller at each call and new tensors are returned: the same filter can be
    shared between threads, each one running its own predict/update loop.

    Shape conventions:
    - Model matrices have shape ``(n, n)``.
    - Vectors are **column vectors** with shape ``(..., n, 1)``, covariances ``(..., n, n)``.
    - Leading ``...`` batch dimensions may be broadcastable. Trailing dimensions must match ``n``,
      otherwise `DimensionMismatch` is raised.

    Numerical notes:
    - Computations run in float64 by default.
    - The covariance update is ``P' = K P`` and the innovation covariance is inverted explicitly.
      No other stabilisation (Joseph form, regularisation) is attempted.

    Args:
        process_matrix: Transition matrix ``F``.
            Shape: ``(n, n)``
        process_noise: Process noise covariance ``Q``.
            Shape: ``(n, n)``
        measurement_noise: Measurement noise covariance ``R``.
            Shape: ``(n, n)``
        dtype (torch.dtype): Floating type used for the model and every computation.
            Default: torch.float64
        device (torch.device | str | None): Device of the model. If None, it is inferred from ``process_matrix``.
            Default: None
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        process_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        *,
        dtype: torch.dtype = torch.float64,
        device: torch.device | str | None = None,
    ) -> None:
        process_matrix = torch.as_tensor(process_matrix, dtype=dtype, device=device)
        device = process_matrix.device
        process_noise = torch.as_tensor(process_noise, dtype=dtype, device=device)
        measurement_noise = torch.as_tensor(measurement_noise, dtype=dtype, device=device)

        dim = process_matrix.shape[-1] if process_matrix.ndim else 1
        for name, matrix in (
            ("process_matrix", process_matrix),
            ("process_noise", process_noise),
            ("measurement_noise", measurement_noise),
        ):
            if matrix.shape != (dim, dim):
                raise DimensionMismatch(name, (dim, dim), tuple(matrix.shape))

        # Copies: the caller may keep modifying its own tensors
        self._process_matrix = process_matrix.clone()
        self._process_noise = process_noise.clone()
        self._measurement_noise = measurement_noise.clone()

        logger.debug("Created a Kalman filter with state dimension %d (%s, %s)", dim, dtype, device)

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable (the whole state is observed)."""
        return self.state_dim

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self._process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self._process_matrix.dtype

    @property
    def process_matrix(self) -> torch.Tensor:
        """Copy of the transition matrix ``F``."""
        return self._process_matrix.clone()

    @property
    def process_noise(self) -> torch.Tensor:
        """Copy of the process noise covariance ``Q``."""
        return self._process_noise.clone()

    @property
    def measurement_noise(self) -> torch.Tensor:
        """Copy of the measurement noise covariance ``R``."""
        return self._measurement_noise.clone()

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert the Kalman filter to a specific device or dtype.

        The filter itself is immutable: a new filter is returned.

        Args:
            fmt (torch.dtype | torch.device | str): Dtype or device to send the filter to.

        Returns:
            KalmanFilter: The filter with the right format
        """
        if isinstance(fmt, torch.dtype):
            dtype, device = fmt, self.device
        else:
            dtype, device = self.dtype, torch.device(fmt)

        return KalmanFilter(
            self._process_matrix, self._process_noise, self._measurement_noise, dtype=dtype, device=device
        )

    def predict(self, mean: torch.Tensor | GaussianState, covariance: torch.Tensor | None = None) -> GaussianState:
        """Compute the predicted (prior) state on the next time step.

        From x_{k-1} ~ N(mu_{k-1}, P_{k-1}), the process model gives x_k ~ N(mu_k, P_k) with:

            mu_k = F mu_{k-1}
            P_k = F P_{k-1} Fᵀ + Q

        Example:
        ```python
            kf = KalmanFilter(torch.eye(2), 0.01 * torch.eye(2), 0.1 * torch.eye(2))
            x, P = kf.predict(torch.zeros(2, 1), torch.eye(2))

            # Batch of 50 estimates
            predicted = kf.predict(torch.randn(50, 2, 1), torch.eye(2).expand(50, 2, 2))
            predicted.mean  # Shape: (50, 2, 1)
        ```

        Args:
            mean (torch.Tensor | GaussianState): State estimate ``x`` at time k-1, or the whole GaussianState.
                Shape: ``(..., n, 1)``
            covariance (torch.Tensor | None): Covariance ``P`` at time k-1. Must be omitted with a GaussianState.
                Shape: ``(..., n, n)``

        Returns:
            GaussianState: Predicted state ``(x_pred, P_pred)``.
                Shape (mean): ``(..., n, 1)``
                Shape (covariance): ``(..., n, n)``

        Raises:
            DimensionMismatch: If the shapes do not match the state dimension.
        """
        mean, covariance = self._as_state(mean, covariance)

        mean = self._process_matrix @ mean
        covariance = self._process_matrix @ covariance @ self._process_matrix.mT + self._process_noise

        return GaussianState(mean, covariance)

    def project(self, mean: torch.Tensor | GaussianState, covariance: torch.Tensor | None = None) -> GaussianState:
        """Project a state into the measurement space (usually the predicted state).

        As the whole state is observed, the expected measure is z_k ~ N(mu_k, S_k) with:

            S_k = P_k + R

        The precision ``S_k^{-1}`` is computed and stored on the returned state. It can be given back to `update`
        (``projection=...``) after gating measures with `GaussianState.mahalanobis` for instance.

        Args:
            mean (torch.Tensor | GaussianState): State estimate ``x``, or the whole GaussianState.
                Shape: ``(..., n, 1)``
            covariance (torch.Tensor | None): Covariance ``P``. Must be omitted with a GaussianState.
                Shape: ``(..., n, n)``

        Returns:
            GaussianState: Projected state, with its precision.
                Shape (mean): ``(..., n, 1)``
                Shape (covariance/precision): ``(..., n, n)``

        Raises:
            DimensionMismatch: If the shapes do not match the state dimension.
            SingularInnovationCovariance: If ``S_k`` cannot be inverted, or contains nan or inf.
        """
        mean, covariance = self._as_state(mean, covariance)

        innovation_covariance = covariance + self._measurement_noise

        return GaussianState(mean, innovation_covariance, self._invert(innovation_covariance))

    def update(
        self,
        mean: torch.Tensor | GaussianState,
        covariance: torch.Tensor | None = None,
        measure: torch.Tensor | None = None,
        *,
        projection: GaussianState | None = None,
    ) -> GaussianState:
        """Update a state estimate using a new measure.

        Given the predicted state x_k ~ N(mu_k, P_k) and the observation z_k, it computes the posterior
        x_k | z_k ~ N(mu'_k, P'_k):

            y_k = z_k - mu_k         (innovation)
            S_k = P_k + R            (innovation covariance)
            K = P_k S_k^{-1}         (kalman gain)
            mu'_k = mu_k + K y_k
            P'_k = K P_k

        It can be called either with ``update(x_pred, P_pred, z)`` or ``update(state, z)``.

        Args:
            mean (torch.Tensor | GaussianState): Predicted state ``x_pred``, or the whole GaussianState.
                Shape: ``(..., n, 1)``
            covariance (torch.Tensor | None): Predicted covariance ``P_pred``, or the measure when ``mean``
                is a GaussianState.
                Shape: ``(..., n, n)``
            measure (torch.Tensor | None): Measure ``z`` (column vector).
                Shape: ``(..., n, 1)``
            projection (GaussianState | None): Optional precomputed projection from `project`.
                Its precision is used as ``S_k^{-1}`` instead of inverting again.

        Returns:
            GaussianState: Updated posterior state ``(x_new, P_new)``.
                Shape (mean): ``(..., n, 1)``
                Shape (covariance): ``(..., n, n)``

        Raises:
            DimensionMismatch: If the shapes do not match the state dimension.
            SingularInnovationCovariance: If ``S_k`` cannot be inverted, or contains nan or inf.
        """
        if isinstance(mean, GaussianState):
            if covariance is not None and measure is not None:
                raise TypeError("update(state, measure) takes a single measure after a GaussianState")
            measure = covariance if measure is None else measure
            mean, covariance = mean.mean, mean.covariance

        if measure is None:
            raise TypeError("update requires a measure")

        mean, covariance = self._as_state(mean, covariance)
        measure = self._as_vector("measure", measure)
        batch = self._check_batch(mean, covariance, measure)

        if projection is None or projection.precision is None:
            precision = self.project(mean, covariance).precision
        else:
            precision = self._as_precision(projection.precision, batch)

        residual = measure - mean
        kalman_gain = covariance @ precision

        mean = mean + kalman_gain @ residual
        covariance = kalman_gain @ covariance

        return GaussianState(mean, covariance)

    def filter(
        self,
        state: GaussianState,
        measures: torch.Tensor,
        *,
        update_first=True,
        return_all=False,
    ) -> GaussianState:
        """Run the predict/update loop over a sequence of measures.

        This is a convenience for the common case of a fixed model with measures aligned with the states.
        Measures containing NaNs are skipped: if any component of a measure is NaN, the corresponding
        state is not updated at that timestep (it is still predicted).

        Args:
            state (GaussianState): Initial prior on the state at t=0, before seeing any of the measures.
                Shape (mean): ``(..., n, 1)``
                Shape (covariance): ``(..., n, n)``
            measures (torch.Tensor): Sequence of measures over time.
                Shape: ``(T, ..., n, 1)``
            update_first (bool): If True, skip the prediction step on the first timestep, such that the initial state
                corresponds to the prior at t=0.
                Default: True
            return_all (bool): If True, return the posterior state at every timestep, stacked on a leading time
                dimension. Otherwise, only the last posterior state is returned.
                Default: False

        Returns:
            GaussianState: Either the last posterior state, or all the posterior states.
                Shape (mean): ``([T, ]..., n, 1)``
                Shape (covariance): ``([T, ]..., n, n)``

        Raises:
            DimensionMismatch: If the shapes do not match the state dimension.
            SingularInnovationCovariance: If an innovation covariance cannot be inverted.
        """
        mean, covariance = self._as_state(state)
        measures = self._as_vector("measures", measures)
        if measures.ndim < 3 or measures.shape[0] == 0:  # noqa: PLR2004
            raise ValueError(f"measures should have a leading non-empty time dimension, got {tuple(measures.shape)}")

        # Expand the batch once so that masked states keep their shape along the loop
        batch = self._check_batch(mean, covariance, measures[0])
        state = GaussianState(
            mean.expand(*batch, self.state_dim, 1),
            covariance.expand(*batch, self.state_dim, self.state_dim),
        )

        states: list[GaussianState] = []

        for t, measure in enumerate(measures):
            if t or not update_first:  # Do not predict on the first t
                state = self.predict(state)

            # Nan measures are replaced by the current mean (null innovation) and the update is discarded
            invalid = torch.isnan(measure).any(dim=-2, keepdim=True)
            updated = self.update(state, torch.where(invalid, state.mean, measure))
            state = GaussianState(
                torch.where(invalid, state.mean, updated.mean),
                torch.where(invalid, state.covariance, updated.covariance),
            )

            if return_all:
                states.append(state)

        if return_all:
            return GaussianState(
                torch.stack([state.mean for state in states]),
                torch.stack([state.covariance for state in states]),
            )

        return state

    def _as_state(
        self, mean: torch.Tensor | GaussianState, covariance: torch.Tensor | None = None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        if isinstance(mean, GaussianState):
            if covariance is not None:
                raise TypeError("The covariance cannot be given along with a GaussianState")
            mean, covariance = mean.mean, mean.covariance
        elif covariance is None:
            raise TypeError("A covariance is required along with the mean")

        mean = self._as_vector("mean", mean)
        covariance = torch.as_tensor(covariance, dtype=self.dtype, device=self.device)
        if covariance.ndim < 2 or covariance.shape[-2:] != (self.state_dim, self.state_dim):  # noqa: PLR2004
            raise DimensionMismatch("covariance", (self.state_dim, self.state_dim), tuple(covariance.shape))

        self._check_batch(mean, covariance)
        return mean, covariance

    def _as_vector(self, name: str, vector: torch.Tensor) -> torch.Tensor:
        vector = torch.as_tensor(vector, dtype=self.dtype, device=self.device)
        if vector.ndim < 2 or vector.shape[-2:] != (self.state_dim, 1):  # noqa: PLR2004
            raise DimensionMismatch(name, (self.state_dim, 1), tuple(vector.shape))
        return vector

    @staticmethod
    def _check_batch(*tensors: torch.Tensor) -> torch.Size:
        try:
            return torch.broadcast_shapes(*(tensor.shape[:-2] for tensor in tensors))
        except RuntimeError as exc:
            raise DimensionMismatch(
                "batch", (), tuple(dim for tensor in tensors for dim in tensor.shape[:-2])
            ) from exc

    def _as_precision(self, precision: torch.Tensor, batch: torch.Size) -> torch.Tensor:
        # A precomputed precision must not change the batch of the estimate
        precision = torch.as_tensor(precision, dtype=self.dtype, device=self.device)
        expected = (*batch, self.state_dim, self.state_dim)
        if precision.ndim < 2 or precision.shape[-2:] != (self.state_dim, self.state_dim):  # noqa: PLR2004
            raise DimensionMismatch("projection", expected, tuple(precision.shape))
        try:
            broadcast = torch.broadcast_shapes(batch, precision.shape[:-2])
        except RuntimeError as exc:
            raise DimensionMismatch("projection", expected, tuple(precision.shape)) from exc
        if broadcast != batch:
            raise DimensionMismatch("projection", expected, tuple(precision.shape))
        return precision

    def _invert(self, innovation_covariance: torch.Tensor) -> torch.Tensor:
        if not torch.isfinite(innovation_covariance).all():
            logger.debug("Non-finite innovation covariance:\n%s", innovation_covariance)
            raise SingularInnovationCovariance(
                "The innovation covariance S = P + R is not finite (nan or inf in the covariance or the noise), "
                "it cannot be inverted."
            )

        precision, info = torch.linalg.inv_ex(innovation_covariance)
        if (info != 0).any() or not torch.isfinite(precision).all():
            logger.debug("Singular innovation covariance:\n%s", innovation_covariance)
            raise SingularInnovationCovariance(
                "The innovation covariance S = P + R is not invertible. "
                "Consider inflating the covariance or skipping this update."
            )
        return precision

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = f"Kalman Filter (State dimension: {self.state_dim}, Identity measurement)"

        with printoptions(profile="short", sci_mode=False, linewidth=80):
            matrix_repr = str(self._process_matrix).split("\n")
            noise_repr = str(self._process_noise).split("\n")
            measurement_repr = str(self._measurement_noise).split("\n")

        max_char_matrix = max(len(line) for line in matrix_repr)
        max_char_noise = max(len(line) for line in noise_repr)
        if max_char_matrix + max_char_noise <= self._REPR_SPLIT_LENGTH and len(matrix_repr) == len(noise_repr):
            process = "\n".join(
                ("Process: F = " if i == 0 else " " * 13)
                + matrix_line.ljust(max_char_matrix)
                + ("  &  Q = " if i == 0 else " " * 9)
                + noise_line
                for i, (matrix_line, noise_line) in enumerate(zip(matrix_repr, noise_repr))
            )
        else:
            process = "\n".join(
                [("Process: F = " if i == 0 else " " * 13) + line for i, line in enumerate(matrix_repr)]
                + [""]
                + [("         Q = " if i == 0 else " " * 13) + line for i, line in enumerate(noise_repr)]
            )

        measurement = "\n".join(
            ("Measurement: R = " if i == 0 else " " * 17) + line for i, line in enumerate(measurement_repr)
        )

        n_char = max(len(line) for line in (process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement])
