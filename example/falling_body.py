"""Example tracking a falling body with asynchronous position and velocity sensors"""

import argparse

import matplotlib.pyplot as plt
import torch

import torch_dkf
import torch_dkf.ckf

G = 9.82


def simulate(
    hz: int, seconds: float, noise: float, position_every: int, velocity_every: int
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Filter a noisy falling body with a constant acceleration (gravity) input

    Args:
        hz (int): Prediction frequency
        seconds (float): Duration of the simulation
        noise (float): Std of the sensors noise
        position_every (int): A position is measured every `position_every` predictions
        velocity_every (int): A velocity is measured every `velocity_every` predictions

    Returns:
        torch.Tensor: Time of each step
            Shape: (T,)
        torch.Tensor: True position/velocity at each step
            Shape: (T, 2)
        torch.Tensor: Estimated position/velocity at each step (after fusing the available measures)
            Shape: (T, 2)
    """
    dt = 1.0 / hz
    initial_state = torch_dkf.GaussianState(torch.zeros(2, 1, dtype=torch.float64), torch.eye(2, dtype=torch.float64))
    kf = torch_dkf.ckf.constant_kalman_filter(0.1, initial_state, order=1, dt=dt, control=True)

    position_matrix = torch_dkf.ckf.create_ckf_measurement_matrix(1, derivative=0, dtype=torch.float64)
    velocity_matrix = torch_dkf.ckf.create_ckf_measurement_matrix(1, derivative=1, dtype=torch.float64)
    measurement_noise = torch.eye(1, dtype=torch.float64) * noise**2
    gravity = torch.tensor([[G]], dtype=torch.float64)

    steps = int(hz * seconds)
    time = torch.arange(steps, dtype=torch.float64) * dt
    truth = torch.stack((0.5 * G * time**2, G * time), dim=-1)
    estimate = torch.empty_like(truth)

    for i in range(steps):
        if i % position_every == 0:
            kf.update(position_matrix, measurement_noise, truth[i, :1, None] + noise * torch.randn(1, 1))

        if i % velocity_every == 0:
            kf.update(velocity_matrix, measurement_noise, truth[i, 1:, None] + noise * torch.randn(1, 1))

        estimate[i] = kf.get_state()[:, 0]
        kf.predict_with_input(gravity)

    return time, truth, estimate


def main(hz: int, seconds: float, noise: float, position_every: int, velocity_every: int):
    print(f"Falling body at {hz}Hz for {seconds}s")
    print(f"Position measured every {position_every} steps, velocity every {velocity_every} steps")

    time, truth, estimate = simulate(hz, seconds, noise, position_every, velocity_every)
    error = (estimate - truth).abs().mean(dim=0)
    print(f"Mean absolute error: position={error[0].item():.3f}, velocity={error[1].item():.3f}")

    _, axes = plt.subplots(2, 1, sharex=True)
    for k, name in enumerate(("Position", "Velocity")):
        axes[k].plot(time, truth[:, k], label="truth")
        axes[k].plot(time, estimate[:, k], label="estimate")
        axes[k].set_ylabel(name)
        axes[k].legend()
    axes[-1].set_xlabel("Time (s)")
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Falling body tracking with asynchronous sensors")
    parser.add_argument("--hz", type=int, default=100, help="Prediction frequency")
    parser.add_argument("--seconds", type=float, default=5.0, help="Duration of the simulation")
    parser.add_argument("--noise", type=float, default=0.5, help="Std of the sensors noise")
    parser.add_argument("--position-every", type=int, default=20, help="Steps between two position measures")
    parser.add_argument("--velocity-every", type=int, default=5, help="Steps between two velocity measures")

    args = parser.parse_args()
    main(args.hz, args.seconds, args.noise, args.position_every, args.velocity_every)
