from pathlib import Path
import sys

import numpy as np

from pgreen.greens.ewald import EwaldGreen
from pgreen.types.calculation import Calculation
from pgreen.utils.logging import logger, set_level

# sweep of the splitting parameter; the Green's function must not depend on it
if __name__ == "__main__":
    set_level("notice")

    input_file = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("inputs/square_lattice.toml")
    calculation = Calculation.from_file(str(input_file))

    reciprocal = calculation.lattice.reciprocal(
        calculation.parameters.wavenumber, calculation.observation_points[0]
    )
    etas = np.linspace(0.25, 3.0, 12) * reciprocal.optimal_splitting

    values = np.zeros((etas.shape[0], calculation.observation_points.shape[0], 8), dtype=np.complex128)
    for ii, eta in enumerate(etas):
        green = EwaldGreen(
            calculation.lattice,
            eta,
            calculation.parameters.exclude_inner_cells,
            calculation.convergence,
        )
        for jj, point in enumerate(calculation.observation_points):
            values[ii, jj] = green(
                point,
                calculation.parameters.wavenumber,
                calculation.parameters.bloch_vector,
            )

    reference = values[np.argmin(np.abs(etas - reciprocal.optimal_splitting))]
    deviation = np.max(np.abs(values - reference), axis=(1, 2)) / np.max(np.abs(reference))
    for eta, error in zip(etas, deviation):
        logger.info(f"E = {eta:.4f}: maximum relative deviation {error:.2e}")

    import matplotlib.pyplot as plt

    labels = ["G", "Gx", "Gy", "Gz", "Gxy", "Gxz", "Gyz", "Gxyz"]

    fig, axes = plt.subplots(figsize=(12, 6), ncols=2)
    for slot in range(8):
        axes[0].plot(etas, np.real(values[:, 0, slot]), label=labels[slot])
        axes[1].plot(etas, np.imag(values[:, 0, slot]), label=labels[slot])

    for ax in axes:
        ax.axvline(reciprocal.optimal_splitting, color="k", linestyle="--")
        ax.set_xlabel("Splitting parameter E")
    axes[0].set_ylabel("Re G")
    axes[1].set_ylabel("Im G")
    axes[1].legend()

    Path("results").mkdir(exist_ok=True)
    plt.savefig(f"results/{input_file.stem}_independence.png")
