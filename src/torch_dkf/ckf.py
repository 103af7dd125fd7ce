"""Helpers for building constant-derivative Kalman filters.

The state of each axis is a value and its derivatives up to a given order:

- constant position (order = 0),
- constant velocity (order = 1),
- constant acceleration (order = 2), ...

Between two steps, the dynamics follow the Taylor expansion of the value. The (order+1)-th derivative is
either an unknown zero-mean white noise (process noise) or a known input (control), like gravity for a
falling body.

Axes are independent and the state is grouped by axis (e.g. ``x, x', y, y'``).
"""

from __future__ import annotations

import math

import torch

from .kalman_filter import GaussianState, KalmanFilter


def _taylor_coefficients(order: int, dt: float, dtype: torch.dtype | None) -> torch.Tensor:
    # dt^k / k! for k = 0..order
    return torch.tensor([dt**k / math.factorial(k) for k in range(order + 1)], dtype=dtype)


def create_ckf_process_matrix(order: int, dt=1.0, *, dtype: torch.dtype | None = None) -> torch.Tensor:
    r"""Create the transition matrix ``A`` of a constant-derivative model.

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Examples:
        - Constant velocity (``order = 1``)::

            [
                [1.0, dt],
                [0.0, 1.0],
            ]

        - Constant acceleration (``order = 2``)::

            [
                [1.0, dt, dt^2 / 2],
                [0.0, 1.0, dt],
                [0.0, 0.0, 1.0],
            ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        dtype (torch.dtype | None): Dtype of the matrix. Default: pytorch default dtype.

    Returns:
        torch.Tensor: Process matrix ``A``
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order, dt, dtype)
    process_matrix = torch.zeros(order + 1, order + 1, dtype=coefficients.dtype)
    for k, coefficient in enumerate(coefficients):
        process_matrix += torch.diag(coefficient.expand(order + 1 - k), k)
    return process_matrix


def create_ckf_control_matrix(order: int, dt=1.0, *, dtype: torch.dtype | None = None) -> torch.Tensor:
    r"""Create the control matrix ``B`` of a known (order+1)-th derivative.

    A constant input ``u`` on the (order+1)-th derivative during ``dt`` adds
    \frac{dt^{order + 1 - i}}{(order + 1 - i)!} u to the i-th derivative.

    For instance, with ``order = 1`` and a gravity input ``g``, ``B u = [dt^2 / 2 * g, dt * g]ᵀ``.

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        dtype (torch.dtype | None): Dtype of the matrix. Default: pytorch default dtype.

    Returns:
        torch.Tensor: Control matrix ``B``
            Shape: ``(order + 1, 1)``
    """
    return _taylor_coefficients(order + 1, dt, dtype)[1:].flip(0)[:, None]


def create_ckf_process_noise(
    process_std: float, order: int, dt=1.0, *, dtype: torch.dtype | None = None
) -> torch.Tensor:
    """Create the process noise covariance ``Q``.

    The (order+1)-th derivative is a zero-mean white noise of std ``process_std`` over each time step,
    it enters the state as a control input would: ``Q = process_std^2 B Bᵀ``.

    Args:
        process_std (float): Std of the (order+1)-th derivative.
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        dtype (torch.dtype | None): Dtype of the matrix. Default: pytorch default dtype.

    Returns:
        torch.Tensor: Process noise covariance ``Q``
            Shape: ``(order + 1, order + 1)``
    """
    control_matrix = create_ckf_control_matrix(order, dt, dtype=dtype)
    return process_std**2 * control_matrix @ control_matrix.mT


def create_ckf_measurement_matrix(
    order: int, *, dim=1, derivative=0, dtype: torch.dtype | None = None
) -> torch.Tensor:
    """Create the measurement matrix ``C`` that observes one derivative on every axis.

    Args:
        order (int): Highest derivative order included in the state.
        dim (int): Number of independent axes.
            Default: 1
        derivative (int): Observed derivative (0: value, 1: velocity, ...).
            Default: 0
        dtype (torch.dtype | None): Dtype of the matrix. Default: pytorch default dtype.

    Returns:
        torch.Tensor: Measurement matrix ``C``
            Shape: ``(dim, dim * (order + 1))``
    """
    if not 0 <= derivative <= order:
        raise ValueError(f"Cannot observe derivative {derivative} with a state of order {order}")

    row = torch.zeros(1, order + 1, dtype=dtype)
    row[0, derivative] = 1.0
    return torch.block_diag(*(row for _ in range(dim)))


def constant_kalman_filter(
    process_std: float | torch.Tensor,
    initial_state: GaussianState,
    *,
    order=1,
    dt=1.0,
    dim=1,
    control=False,
    on_singular="skip",
) -> KalmanFilter:
    """Create a constant-derivative Kalman filter over ``dim`` independent axes.

    Args:
        process_std (float | torch.Tensor): Std of the (order+1)-th derivative noise.
            Shape: broadcastable to ``(dim,)``
        initial_state (GaussianState): Initial prior. Its dtype is used for every model matrix.
            Shape (mean): ``(dim * (order + 1), 1)``
            Shape (covariance): ``(dim * (order + 1), dim * (order + 1))``
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity)
        dt (float): Time step duration.
            Default: 1.0
        dim (int): Number of independent axes.
            Default: 1
        control (bool): If True, the filter has a control matrix taking the known (order+1)-th derivative
            of each axis as input (``dim_u = dim``).
            Default: False
        on_singular (str): Singular innovation policy, see `KalmanFilter`.
            Default: "skip"

    Returns:
        KalmanFilter: Filter with a block-diagonal constant-derivative model.
    """
    process_std = torch.broadcast_to(torch.as_tensor(process_std), (dim,))
    dtype = initial_state.mean.dtype

    process_matrix = torch.block_diag(*(create_ckf_process_matrix(order, dt, dtype=dtype) for _ in range(dim)))
    process_noise = torch.block_diag(
        *(create_ckf_process_noise(std.item(), order, dt, dtype=dtype) for std in process_std)
    )
    control_matrix = None
    if control:
        control_matrix = torch.block_diag(*(create_ckf_control_matrix(order, dt, dtype=dtype) for _ in range(dim)))

    return KalmanFilter(process_matrix, process_noise, initial_state, control_matrix, on_singular=on_singular)
