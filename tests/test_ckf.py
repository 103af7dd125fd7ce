import pytest
import torch

from torch_dkf import GaussianState
from torch_dkf.ckf import (
    constant_kalman_filter,
    create_ckf_control_matrix,
    create_ckf_measurement_matrix,
    create_ckf_process_matrix,
    create_ckf_process_noise,
)


def test_create_ckf_process_matrix_order1():
    process_matrix = create_ckf_process_matrix(order=1, dt=0.01)
    expected = torch.tensor([[1.0, 0.01], [0.0, 1.0]])
    assert torch.allclose(process_matrix, expected)


def test_create_ckf_process_matrix_order2_dt05():
    process_matrix = create_ckf_process_matrix(order=2, dt=0.5)
    expected = torch.tensor(
        [
            [1.0, 0.5, 0.125],
            [0.0, 1.0, 0.5],
            [0.0, 0.0, 1.0],
        ]
    )
    assert torch.allclose(process_matrix, expected)


def test_create_ckf_process_matrix_dtype():
    assert create_ckf_process_matrix(order=2, dt=0.1, dtype=torch.float64).dtype == torch.float64
    assert create_ckf_process_matrix(order=0).shape == (1, 1)


def test_create_ckf_control_matrix_gravity():
    dt = 0.1
    control_matrix = create_ckf_control_matrix(order=1, dt=dt, dtype=torch.float64)

    assert control_matrix.shape == (2, 1)
    assert torch.allclose(control_matrix, torch.tensor([[0.5 * dt**2], [dt]], dtype=torch.float64))


def test_create_ckf_control_matrix_order2():
    control_matrix = create_ckf_control_matrix(order=2, dt=0.5)
    expected = torch.tensor([[0.5**3 / 6], [0.125], [0.5]])
    assert torch.allclose(control_matrix, expected)


def test_create_ckf_process_noise_shapes_and_symmetry():
    process_noise = create_ckf_process_noise(process_std=2.0, order=2, dt=1.0)
    assert process_noise.shape == (3, 3)
    assert torch.allclose(process_noise, process_noise.mT)

    # Eigenvalues should be >= small negative tolerance
    eig = torch.linalg.eigvalsh(process_noise)
    tol = 1e-6
    assert torch.all(eig > -tol)


def test_create_ckf_process_noise_order1():
    process_noise = create_ckf_process_noise(process_std=2.0, order=1, dt=1.0)
    expected = 4.0 * torch.tensor([[0.25, 0.5], [0.5, 1.0]])
    assert torch.allclose(process_noise, expected)


def test_create_ckf_measurement_matrix():
    measurement_matrix = create_ckf_measurement_matrix(order=2, dim=2, derivative=1)
    expected = torch.tensor(
        [
            # x, dx, ddx, y, dy, ddy
            [0, 1, 0, 0, 0, 0],
            [0, 0, 0, 0, 1, 0],
        ],
        dtype=torch.float32,
    )
    assert torch.equal(measurement_matrix, expected)

    with pytest.raises(ValueError, match="derivative"):
        create_ckf_measurement_matrix(order=1, derivative=2)


def test_constant_kalman_filter_shapes():
    initial_state = GaussianState(torch.zeros(6, 1, dtype=torch.float64), torch.eye(6, dtype=torch.float64))
    kf = constant_kalman_filter([1.0, 2.0], initial_state, order=2, dt=0.5, dim=2, control=True)

    assert kf.state_dim == 6
    assert kf.control_dim == 2
    assert kf.dtype == torch.float64
    assert kf.process_matrix.shape == (6, 6)
    assert kf.control_matrix is not None
    assert kf.control_matrix.shape == (6, 2)
    assert kf.process_noise.dtype == torch.float64

    # Block diagonal: axes are independent
    assert (kf.process_matrix[:3, 3:] == 0).all()
    assert torch.allclose(kf.process_noise[3:, 3:], create_ckf_process_noise(2.0, 2, 0.5, dtype=torch.float64))


def test_constant_kalman_filter_without_control():
    initial_state = GaussianState(torch.zeros(2, 1), torch.eye(2))
    kf = constant_kalman_filter(1.0, initial_state)

    assert kf.control_matrix is None
    assert kf.control_dim == 0
    assert kf.dtype == torch.float32


def test_constant_velocity_tracks_position_measures():
    # Constant velocity target, measured in position only: the velocity is recovered
    initial_state = GaussianState(torch.zeros(2, 1, dtype=torch.float64), 10 * torch.eye(2, dtype=torch.float64))
    kf = constant_kalman_filter(0.01, initial_state, order=1, dt=0.1)
    measurement_matrix = create_ckf_measurement_matrix(order=1, dtype=torch.float64)
    measurement_noise = torch.eye(1, dtype=torch.float64) * 0.01

    for k in range(200):
        kf.update(measurement_matrix, measurement_noise, torch.tensor([[2.0 * k * 0.1]], dtype=torch.float64))
        kf.predict()

    assert kf.get_state()[1, 0].item() == pytest.approx(2.0, abs=1e-2)
