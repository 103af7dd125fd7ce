import importlib

import torch

import torch_dkf.kalman_filter


def test_repr_is_fine_with_old_pytorch():
    # Mock printoptions
    old_printoptions = None
    if hasattr(torch._tensor_str, "printoptions"):
        old_printoptions = torch._tensor_str.printoptions
        delattr(torch._tensor_str, "printoptions")

    importlib.reload(torch_dkf.kalman_filter)

    process_matrix = torch.tensor([[1.0, 1.0], [0.0, 1.0]])
    process_noise = torch.eye(2) * 0.01
    initial_state = torch_dkf.kalman_filter.GaussianState(torch.zeros(2, 1), torch.eye(2))
    kf = torch_dkf.kalman_filter.KalmanFilter(process_matrix, process_noise, initial_state)

    kf_repr = str(kf)

    if old_printoptions is not None:  # RESET just in case other test depend on it.
        torch._tensor_str.printoptions = old_printoptions
    importlib.reload(torch_dkf.kalman_filter)

    assert len(kf_repr.split("\n")) == 3 + 2 + 1
    assert kf_repr.split("\n", maxsplit=1)[0] == "Kalman Filter (State dimension: 2, Control dimension: 0)"
    assert "Process: A = tensor([[1., 1.],   &  Q = tensor([[0.01, 0.00]," in kf_repr
    assert "Control: B = None" in kf_repr
