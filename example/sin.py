"""Example filtering sinusoidal data, measured by a position sensor and a (noisier) speed sensor"""

import argparse
import logging

import matplotlib.pyplot as plt
import torch

import torch_lkf
from torch_lkf.models import constant_kalman_filter


def generate_data(n: int, w0: float, noise: float, amplitude: float) -> tuple[torch.Tensor, torch.Tensor]:
    """Generate sinusoidal data:

    x(t) = (A sin(w0t), A w0 cos(w0t))
    z(t) = x(t) + (noise, 3 w0 noise) * N(0, 1)

    Args:
        n (int): Size of the sequence to generate
        w0 (float): Angular frequency
        noise (float): Gaussian noise standard deviation on the position
        amplitude (float): Amplitude A of the sinus

    Returns:
        torch.Tensor: x(t) state of the system
            Shape: (T, 2, 1)
        torch.Tensor: z(t) measure for each state
            Shape: (T, 2, 1)
    """
    t = torch.arange(n, dtype=torch.float64)
    x = torch.stack([amplitude * torch.sin(w0 * t), amplitude * w0 * torch.cos(w0 * t)], dim=-1)[..., None]
    std = torch.tensor([noise, 3 * w0 * noise], dtype=torch.float64)[:, None]
    return x, x + std * torch.randn_like(x)


def main(n: int, measurement_std: float, amplitude: float, nans: bool):
    # Let's do 2 full periods of sinus
    w0 = 4 * torch.pi / n

    # With a constant velocity model, the velocity varies at most by A w0^2 between two frames
    process_std = amplitude * w0**2

    print("Parameters")
    print(f"Measurement noise: {measurement_std} (position) {3 * w0 * measurement_std} (velocity)")
    print(f"Process noise: {process_std}")
    print(f"Using w0={w0} for {n} points")

    kf = constant_kalman_filter(torch.tensor([measurement_std, 3 * w0 * measurement_std]), process_std, order=1)
    print(kf)

    x, z = generate_data(n, w0, measurement_std, amplitude)
    if nans:
        z[n // 2 : n // 2 + n // 20] = torch.nan  # Create nan measures in the middle

    # Unknown initial state: estimation at 0, with a std of 3 amplitudes
    initial_state = torch_lkf.GaussianState(
        torch.zeros(kf.state_dim, 1),
        torch.diag(torch.tensor([3 * amplitude, 3 * amplitude * w0]) ** 2),
    )

    try:
        states = kf.filter(initial_state, z, update_first=True, return_all=True)
    except torch_lkf.SingularInnovationCovariance:
        logging.exception("Filtering failed, try a larger measurement noise")
        raise

    print(f"Filtering MSE: {(states.mean[:, :1] - x[:, :1]).pow(2).mean()}")
    print(f"Measurement MSE: {(z[:, :1] - x[:, :1]).pow(2).nanmean()}")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(x[:, 0, 0], color="k", label="True trajectory - x = A sin(w0 t)")
    plt.plot(states.mean[:, 0, 0], color="y", label="Filtered trajectory")
    plt.plot(z[:, 0, 0], "o", color="r", markersize=2.0, label="Observed trajectory - z = x + noise * N(0, 1)")

    mini = states.mean[:, 0, 0] - 3 * states.covariance[:, 0, 0].sqrt()
    maxi = states.mean[:, 0, 0] + 3 * states.covariance[:, 0, 0].sqrt()
    plt.fill_between(torch.arange(len(mini)), mini, maxi, color="y", alpha=0.5)

    plt.ylim(-amplitude * 1.4, amplitude * 1.4)

    plt.xlabel("t")
    plt.ylabel("x")

    plt.legend(loc="upper right")
    plt.show()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Kalman filter example, filtering a noisy sinus data")
    parser.add_argument("--noise", default=2.0, type=float, help="Observation noise")
    parser.add_argument("--amplitude", default=20, type=int, help="Amplitude of the signal")
    parser.add_argument("--n", default=500, type=int, help="Number of points")
    parser.add_argument("--nans", action="store_true", help="Some state will not be measured")

    args = parser.parse_args()

    main(args.n, args.noise, args.amplitude, args.nans)
