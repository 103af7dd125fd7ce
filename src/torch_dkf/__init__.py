"""Torch-DKF: Linear Kalman filtering with deferred updates in PyTorch.

torch-dkf provides a single-filter implementation of the classic (linear, Gaussian) Kalman filter, designed
for sensor fusion loops where measurements arrive asynchronously and at different rates. Any number of
measures (each with its own measurement model and dimension) can be fused between two predictions.

Key features
------------
- **Deferred finalization**: updates accumulate into a pending posterior. Its covariance is finalized once,
  by the next predict.
- **Control inputs**: either given to the predict step, or applied retroactively on the current prior.
- **Recoverable failures**: a singular innovation covariance skips the update (or raises, on demand).
- **Any float dtype / device**: the filter runs in the dtype and on the device of its tensors.

Getting started
---------------
The core API consists of:
- :class:`~torch_dkf.GaussianState` to represent Gaussian means/covariances.
- :class:`~torch_dkf.ProcessModel` holding ``A``, ``B`` and ``Q``.
- :class:`~torch_dkf.KalmanFilter` with :meth:`~torch_dkf.KalmanFilter.predict`,
  :meth:`~torch_dkf.KalmanFilter.predict_with_input`, :meth:`~torch_dkf.KalmanFilter.control_input`,
  :meth:`~torch_dkf.KalmanFilter.update` and :meth:`~torch_dkf.KalmanFilter.get_state`.

The :mod:`torch_dkf.ckf` module builds ready-to-use constant velocity/acceleration models.

Notes on shapes
---------------
torch-dkf uses column vectors. State, control and measurement vectors have shape ``(dim, 1)``
(1d vectors are accepted and reshaped).
"""

from .errors import DimensionMismatch, InvariantViolation, KalmanFilterError, SingularInnovationCovariance
from .kalman_filter import GaussianState, KalmanFilter, PendingPosterior, ProcessModel, StateEstimate

__all__ = [
    "DimensionMismatch",
    "GaussianState",
    "InvariantViolation",
    "KalmanFilter",
    "KalmanFilterError",
    "PendingPosterior",
    "ProcessModel",
    "SingularInnovationCovariance",
    "StateEstimate",
]
__version__ = "0.1.0"
