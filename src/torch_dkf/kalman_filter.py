from __future__ import annotations

import contextlib
import dataclasses
import logging
from typing import overload

import torch
import torch.linalg

from .errors import DimensionMismatch, InvariantViolation, SingularInnovationCovariance

logger = logging.getLogger(__name__)

# Note on the deferred posterior:
# An update does not compute the posterior covariance (I - KC) P. It only stores the factor (I - KC)
# (and subtracts K'C' for each following update). The product with the prior covariance is done once,
# at the next predict. This is valid because the prior is never modified between updates.

SINGULAR_POLICIES = ("skip", "raise")


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


def symmetrize(matrix: torch.Tensor) -> torch.Tensor:
    """Return ``(M + Mᵀ) / 2``."""
    return (matrix + matrix.mT) / 2


def _as_column(vector: torch.Tensor) -> torch.Tensor:
    if vector.ndim == 1:
        return vector[:, None]
    return vector


def _check_shape(name: str, tensor: torch.Tensor, expected: tuple[int, ...]) -> None:
    if tuple(tensor.shape) != expected:
        raise DimensionMismatch(name, expected, tuple(tensor.shape))


@dataclasses.dataclass
class GaussianState:
    """Gaussian state ``x ~ N(mean, covariance)``.

    Vectors are **column vectors**: ``mean`` has shape ``(dim, 1)`` and ``covariance`` has shape ``(dim, dim)``.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(self.mean.clone(), self.covariance.clone())

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(self.mean.to(fmt), self.covariance.to(fmt))


@dataclasses.dataclass(frozen=True)
class PendingPosterior:
    """Posterior accumulated by the updates since the last predict.

    Attributes:
        mean: Posterior mean.
            Shape: ``(dim_x, 1)``
        correction: Deferred covariance factor ``I - sum_i K_i C_i``. The posterior covariance is
            ``correction @ prior.covariance`` (symmetrized), computed at the next predict.
            Shape: ``(dim_x, dim_x)``
    """

    mean: torch.Tensor
    correction: torch.Tensor

    def __post_init__(self) -> None:
        if self.mean is None or self.correction is None:
            raise InvariantViolation(
                f"Malformed posterior: mean is {'absent' if self.mean is None else 'present'}, "
                f"correction is {'absent' if self.correction is None else 'present'}"
            )

    def clone(self) -> PendingPosterior:
        return PendingPosterior(self.mean.clone(), self.correction.clone())

    def to(self, fmt) -> PendingPosterior:
        return PendingPosterior(self.mean.to(fmt), self.correction.to(fmt))


@dataclasses.dataclass
class StateEstimate:
    """Running estimate of a filter: a prior and an optional pending posterior.

    The posterior is defined if and only if at least one update was applied since the last predict
    (or since construction).

    Attributes:
        prior: Prior (before measurements) state. Always defined.
        pending: Posterior accumulated by the updates since the last predict, or None.
    """

    prior: GaussianState
    pending: PendingPosterior | None = None

    @property
    def has_posterior(self) -> bool:
        return self.pending is not None

    @property
    def posterior(self) -> GaussianState | None:
        """Finalized view of the posterior (None if no update since the last predict).

        The covariance is computed on the fly from the deferred correction, the estimate is not modified.
        """
        if self.pending is None:
            return None
        return GaussianState(self.pending.mean, symmetrize(self.pending.correction @ self.prior.covariance))

    @property
    def mean(self) -> torch.Tensor:
        """Posterior mean if defined, prior mean otherwise."""
        if self.pending is None:
            return self.prior.mean
        return self.pending.mean

    def clone(self) -> StateEstimate:
        return StateEstimate(self.prior.clone(), self.pending.clone() if self.pending is not None else None)

    def to(self, fmt) -> StateEstimate:
        return StateEstimate(self.prior.to(fmt), self.pending.to(fmt) if self.pending is not None else None)


class ProcessModel:
    """Linear process model ``x_k = A x_{k-1} + B u_k + w_k, w_k ~ N(0, Q)``.

    The state dimension is fixed by ``process_matrix`` at construction. The control dimension is fixed by the
    first control matrix given (at construction or through the setter). Every write is checked against them.

    Attributes:
        process_matrix (torch.Tensor): Transition matrix ``A``.
            Shape: ``(dim_x, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``.
            Shape: ``(dim_x, dim_x)``
        control_matrix (torch.Tensor | None): Control-input matrix ``B``. None means no control coupling.
            Shape: ``(dim_x, dim_u)``
    """

    def __init__(
        self,
        process_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        control_matrix: torch.Tensor | None = None,
    ) -> None:
        dim = process_matrix.shape[-1] if process_matrix.ndim else 0
        _check_shape("process_matrix", process_matrix, (dim, dim))

        self._state_dim = process_matrix.shape[0]
        self._control_dim: int | None = None
        self._process_matrix = process_matrix

        _check_shape("process_noise", process_noise, (self._state_dim, self._state_dim))
        self._process_noise = process_noise

        self._control_matrix: torch.Tensor | None = None
        self.control_matrix = control_matrix

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._state_dim

    @property
    def control_dim(self) -> int:
        """Dimension of the control input (0 if it was never declared)."""
        return self._control_dim or 0

    @property
    def process_matrix(self) -> torch.Tensor:
        return self._process_matrix

    @process_matrix.setter
    def process_matrix(self, process_matrix: torch.Tensor) -> None:
        _check_shape("process_matrix", process_matrix, (self._state_dim, self._state_dim))
        self._process_matrix = process_matrix

    @property
    def process_noise(self) -> torch.Tensor:
        return self._process_noise

    @process_noise.setter
    def process_noise(self, process_noise: torch.Tensor) -> None:
        _check_shape("process_noise", process_noise, (self._state_dim, self._state_dim))
        self._process_noise = process_noise

    @property
    def control_matrix(self) -> torch.Tensor | None:
        return self._control_matrix

    @control_matrix.setter
    def control_matrix(self, control_matrix: torch.Tensor | None) -> None:
        if control_matrix is not None:
            control_dim = self._control_dim
            if control_dim is None:  # First control matrix: declares dim_u
                control_dim = control_matrix.shape[-1] if control_matrix.ndim else 0
            _check_shape("control_matrix", control_matrix, (self._state_dim, control_dim))
            self._control_dim = control_dim

        self._control_matrix = control_matrix

    def control_effect(self, control: torch.Tensor) -> torch.Tensor | None:
        """Compute ``B u``, the contribution of a control input to the state.

        Args:
            control (torch.Tensor): Control input ``u`` (column vector or 1d vector).
                Shape: ``(dim_u, 1)``

        Returns:
            torch.Tensor | None: ``B u`` or None when there is no control matrix (zero coupling).
                Shape: ``(dim_x, 1)``
        """
        control = _as_column(control)
        if self._control_dim is not None:
            _check_shape("control", control, (self._control_dim, 1))
        else:
            _check_shape("control", control, (control.shape[0] if control.ndim else 0, 1))

        if self._control_matrix is None:
            return None
        return self._control_matrix @ control

    @overload
    def to(self, dtype: torch.dtype) -> ProcessModel: ...

    @overload
    def to(self, device: torch.device) -> ProcessModel: ...

    def to(self, fmt):
        """Convert a process model to a specific device or dtype."""
        model = ProcessModel(
            self._process_matrix.to(fmt),
            self._process_noise.to(fmt),
            self._control_matrix.to(fmt) if self._control_matrix is not None else None,
        )
        model._control_dim = self._control_dim  # noqa: SLF001
        return model


class KalmanFilter:
    """Linear Kalman filter with deferred posterior finalization.

    This class estimates the latent state of a linear dynamical system under Gaussian noise:

        x_k = A x_{k-1} + B u_k + w_k,   w_k ~ N(0, Q)
        z_k = C x_k               + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (dimension ``dim_x``),
    - ``u_k`` is a known control input (dimension ``dim_u``),
    - ``z_k`` is the measure (dimension ``dim_z``, which may change from one measure to the other),
    - ``A`` is the transition (process) matrix,
    - ``B`` is the control-input matrix (optional),
    - ``Q`` is the process noise covariance,
    - ``C`` is the measurement/projection matrix,
    - ``R`` is the measurement noise covariance.

    Contrary to the usual predict/update alternation, the filter accepts any number of updates between two
    predictions (asynchronous and multi-rate sensor fusion). Each update fuses a measure into a pending
    posterior, using the prior of the current time step. The posterior covariance is finalized once, by the
    next predict, which then propagates the posterior and clears it.

    The filter owns its estimate. Model matrices are referenced, never modified in place, so they may be shared
    between filters as long as nobody mutates them.

    Numerical notes:
    - Covariances are symmetrized after every predict.
    - The innovation covariance is inverted with ``torch.linalg.inv_ex``, which reports singular matrices
    instead of raising. The ``on_singular`` policy decides what to do with them.
    - As in pytorch, computations run in the dtype of the given tensors (float32 by default). Use ``to``
    to switch to float64 when precision matters.

    Attributes:
        model (ProcessModel): Process model (``A``, ``B``, ``Q``).
        estimate (StateEstimate): Current prior and pending posterior.
        on_singular (str): Policy when the innovation covariance is singular.
            "skip": the update is ignored (estimate unchanged) and ``update`` returns False.
            "raise": ``update`` raises ``SingularInnovationCovariance`` (estimate unchanged).
            Default: "skip"
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        process_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        initial_state: GaussianState,
        control_matrix: torch.Tensor | None = None,
        *,
        on_singular="skip",
    ) -> None:
        self.on_singular = on_singular  # Validated first: nothing is built on failure
        self.model = ProcessModel(process_matrix, process_noise, control_matrix)
        self.estimate = StateEstimate(self._check_initial_state(initial_state))
        self._applied_control: torch.Tensor | None = None

    @classmethod
    def from_model(cls, model: ProcessModel, initial_state: GaussianState, *, on_singular="skip") -> KalmanFilter:
        """Build a filter on an existing process model (referenced, not copied)."""
        kf = cls(
            model.process_matrix, model.process_noise, initial_state, model.control_matrix, on_singular=on_singular
        )
        kf.model = model  # Keep the caller's model (and its declared control dimension)
        return kf

    def _check_initial_state(self, initial_state: GaussianState) -> GaussianState:
        mean = _as_column(initial_state.mean)
        _check_shape("initial mean", mean, (self.state_dim, 1))
        _check_shape("initial covariance", initial_state.covariance, (self.state_dim, self.state_dim))
        return GaussianState(mean, initial_state.covariance)

    @property
    def on_singular(self) -> str:
        return self._on_singular

    @on_singular.setter
    def on_singular(self, on_singular: str) -> None:
        if on_singular not in SINGULAR_POLICIES:
            raise ValueError(f"Unknown singular policy {on_singular!r}. Expected one of {SINGULAR_POLICIES}")
        self._on_singular = on_singular

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.model.state_dim

    @property
    def control_dim(self) -> int:
        """Dimension of the control input."""
        return self.model.control_dim

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self.model.process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self.model.process_matrix.dtype

    @property
    def process_matrix(self) -> torch.Tensor:
        """Transition matrix ``A``. Setting it does not modify the current estimate."""
        return self.model.process_matrix

    @process_matrix.setter
    def process_matrix(self, process_matrix: torch.Tensor) -> None:
        self.model.process_matrix = process_matrix

    @property
    def control_matrix(self) -> torch.Tensor | None:
        """Control-input matrix ``B`` (None: no control coupling). Setting it does not modify the estimate."""
        return self.model.control_matrix

    @control_matrix.setter
    def control_matrix(self, control_matrix: torch.Tensor | None) -> None:
        self.model.control_matrix = control_matrix

    @property
    def process_noise(self) -> torch.Tensor:
        """Process noise covariance ``Q``."""
        return self.model.process_noise

    @process_noise.setter
    def process_noise(self, process_noise: torch.Tensor) -> None:
        self.model.process_noise = process_noise

    @property
    def has_posterior(self) -> bool:
        """True iff at least one update was applied since the last predict."""
        return self.estimate.has_posterior

    def get_state(self) -> torch.Tensor:
        """Current state estimate: the posterior mean if defined, the prior mean otherwise.

        Returns:
            torch.Tensor: State mean.
                Shape: ``(dim_x, 1)``
        """
        return self.estimate.mean

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter (model and estimate) to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter: The filter with the right format
        """
        kf = KalmanFilter.from_model(self.model.to(fmt), self.estimate.prior.to(fmt), on_singular=self.on_singular)
        kf.estimate = self.estimate.to(fmt)
        kf._applied_control = self._applied_control.to(fmt) if self._applied_control is not None else None
        return kf

    def predict(self, control: torch.Tensor | None = None) -> None:
        """Advance the estimate by one time step.

        Without control, it is equivalent to ``predict_with_input`` with a zero input.

        Args:
            control (torch.Tensor | None): Optional control input ``u``.
                Shape: ``(dim_u, 1)``
        """
        if control is None:
            self._propagate(None)
        else:
            self.predict_with_input(control)

    def predict_with_input(self, control: torch.Tensor) -> None:
        """Advance the estimate by one time step with a control input.

        If no update occurred since the last predict:

            x <- A x + B u
            P <- A P Aᵀ + Q

        Otherwise, the pending posterior is first finalized (its covariance is the correction factor times the
        current prior covariance, symmetrized) and then propagated in the same way. The posterior is cleared.

        Args:
            control (torch.Tensor): Control input ``u``. Ignored (zero coupling) when there is no control matrix.
                Shape: ``(dim_u, 1)``
        """
        self._propagate(self.model.control_effect(control))

    def _propagate(self, control_effect: torch.Tensor | None) -> None:
        process_matrix = self.model.process_matrix
        prior = self.estimate.prior
        pending = self.estimate.pending

        if pending is None:
            mean = process_matrix @ prior.mean
            covariance = process_matrix @ prior.covariance @ process_matrix.mT + self.model.process_noise
        else:
            # Finish the posterior covariance with the (unchanged) prior covariance
            posterior_covariance = symmetrize(pending.correction @ prior.covariance)
            logger.debug("Finalizing posterior before prediction")

            mean = process_matrix @ pending.mean
            covariance = process_matrix @ posterior_covariance @ process_matrix.mT + self.model.process_noise

        if control_effect is not None:
            mean = mean + control_effect

        self.estimate.prior = GaussianState(mean, symmetrize(covariance))
        self.estimate.pending = None

    def control_input(self, control: torch.Tensor | None) -> None:
        """Apply a control input on the current prior, replacing the previously applied one.

        The contribution ``B u`` of the last applied input is removed from the prior mean and the new one is
        added. The new contribution is remembered so that the next call removes it. The remembered input is
        kept across predictions: calling it with the same input before every predict keeps a constant input.

        With a pending posterior, its mean is shifted by ``correction @ delta`` (``delta`` being the change of
        contribution), which is the posterior the updates would have given on the shifted prior.

        Args:
            control (torch.Tensor | None): Control input ``u``. None removes the last contribution.
                Shape: ``(dim_u, 1)``
        """
        effect = self.model.control_effect(control) if control is not None else None

        delta = torch.zeros_like(self.estimate.prior.mean)
        if self._applied_control is not None:
            delta = delta - self._applied_control
        if effect is not None:
            delta = delta + effect

        if self._applied_control is not None or effect is not None:
            logger.debug("Control input re-applied on the prior")

        self.estimate.prior = GaussianState(self.estimate.prior.mean + delta, self.estimate.prior.covariance)

        pending = self.estimate.pending
        if pending is not None:
            self.estimate.pending = PendingPosterior(pending.mean + pending.correction @ delta, pending.correction)

        self._applied_control = effect

    def update(
        self, measurement_matrix: torch.Tensor, measurement_noise: torch.Tensor, measure: torch.Tensor
    ) -> bool:
        """Fuse a measure into the running estimate.

        Using the current prior x ~ N(mu, P):
        1. Innovation: y = z - C mu, with covariance S = C P Cᵀ + R
        2. Kalman gain: K = P Cᵀ S^{-1}
        3. Posterior: the first update since the last predict sets mu' = mu + K y and the correction I - K C.
           Following updates accumulate: mu' <- mu' + K y and correction <- correction - K C.

        The posterior covariance (correction @ P) is only finalized by the next predict.
        ``C``, ``R`` and ``z`` are converted to the dtype and device of the filter.

        Args:
            measurement_matrix (torch.Tensor): Projection/Measurement matrix ``C``.
                Shape: ``(dim_z, dim_x)``
            measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
                Shape: ``(dim_z, dim_z)``
            measure (torch.Tensor): Measure ``z`` (column vector or 1d vector).
                Shape: ``(dim_z, 1)``

        Returns:
            bool: True if the measure was fused, False if it was skipped because ``S`` is singular.

        Raises:
            DimensionMismatch: If the shapes are not consistent with the state dimension.
            SingularInnovationCovariance: If ``S`` is singular and ``on_singular == "raise"``.
        """
        # Measurement models are often built once (in float32 by default): follow the filter format
        measurement_matrix = measurement_matrix.to(dtype=self.dtype, device=self.device)
        measurement_noise = measurement_noise.to(dtype=self.dtype, device=self.device)
        measure = measure.to(dtype=self.dtype, device=self.device)

        if measurement_matrix.ndim == 1:  # Single row
            measurement_matrix = measurement_matrix[None]
        measure = _as_column(measure)

        dim_z = measurement_matrix.shape[0] if measurement_matrix.ndim else 0
        _check_shape("measurement_matrix", measurement_matrix, (dim_z, self.state_dim))
        _check_shape("measurement_noise", measurement_noise, (dim_z, dim_z))
        _check_shape("measure", measure, (dim_z, 1))

        prior = self.estimate.prior
        residual = measure - measurement_matrix @ prior.mean
        innovation_covariance = measurement_matrix @ prior.covariance @ measurement_matrix.mT + measurement_noise

        precision, info = torch.linalg.inv_ex(innovation_covariance)
        if info.item() != 0:
            if self.on_singular == "raise":
                raise SingularInnovationCovariance(
                    f"Innovation covariance is singular (info={info.item()}), the measure cannot be fused"
                )
            logger.warning("Singular innovation covariance, skipping the update")
            return False

        kalman_gain = prior.covariance @ measurement_matrix.mT @ precision

        pending = self.estimate.pending
        if pending is None:
            identity = torch.eye(self.state_dim, dtype=prior.covariance.dtype, device=prior.covariance.device)
            pending = PendingPosterior(
                prior.mean + kalman_gain @ residual,
                identity - kalman_gain @ measurement_matrix,
            )
        else:
            pending = PendingPosterior(
                pending.mean + kalman_gain @ residual,
                pending.correction - kalman_gain @ measurement_matrix,
            )

        self.estimate.pending = pending
        return True

    def _format_block(self, title: str, matrices: list[tuple[str, torch.Tensor | None]], linewidth: int) -> str:
        with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
            reprs = [(name, str(matrix).split("\n")) for name, matrix in matrices]

        widths = [max(len(line) for line in lines) for _, lines in reprs]
        rows: list[str] = []

        if sum(widths) <= self._REPR_SPLIT_LENGTH:  # Single line
            height = max(len(lines) for _, lines in reprs)
            columns: list[list[str]] = []
            for k, ((name, lines), width) in enumerate(zip(reprs, widths)):
                prefix = f"{title}: {name} = " if k == 0 else f"  &  {name} = "
                padded = [line + " " * (width - len(line)) for line in lines]
                columns.append([prefix] + [" " * len(prefix)] * (height - 1))
                columns.append(padded + [" " * width] * (height - len(lines)))
            rows = ["".join(parts).rstrip() for parts in zip(*columns)]
        else:  # One block per matrix
            for k, (name, lines) in enumerate(reprs):
                prefix = f"{title}: {name} = " if k == 0 else " " * (len(title) + 2) + f"{name} = "
                heads = [prefix] + [" " * len(prefix)] * (len(lines) - 1)
                if k:
                    rows.append("")
                rows.extend(head + line for head, line in zip(heads, lines))

        return "\n".join(rows)

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = f"Kalman Filter (State dimension: {self.state_dim}, Control dimension: {self.control_dim})"
        process = self._format_block(
            "Process", [("A", self.model.process_matrix), ("Q", self.model.process_noise)], linewidth=80
        )
        control = self._format_block("Control", [("B", self.model.control_matrix)], linewidth=100)

        n_char = max(len(line) for line in (process + "\n" + control).split("\n"))
        return ("\n" + "-" * max(n_char, len(header)) + "\n").join([header, process, control])
