# shell-by-shell lattice summation shared by the spatial and spectral sums
from dataclasses import dataclass, field
from itertools import product
from typing import Callable
from typing import Tuple

import numpy as np
import numpy.typing as npt

from pgreen.utils.logging import logger

# G, dG/dx, dG/dy, dG/dz, d2G/dxdy, d2G/dxdz, d2G/dydz, d3G/dxdydz
NSUM = 8


@dataclass(frozen=True)
class Convergence:
    absolute_tolerance: float = 0.0
    relative_tolerance: float = 1.0e-8
    first_round: int = 1
    max_shells: int = 10000
    converged_rounds: int = 3
    # slots below this fraction of the largest slot are left out of the relative test
    slot_floor: float = 1.0e-10


@dataclass
class LatticeSum:
    values: npt.NDArray[np.complex128]
    cell_count: int
    shell_count: int
    converged: bool
    singular: bool = False


@dataclass
class ConvergenceState:
    values: npt.NDArray[np.complex128] = field(
        default_factory=lambda: np.zeros(NSUM, dtype=np.complex128)
    )
    last_values: npt.NDArray[np.complex128] = field(
        default_factory=lambda: np.zeros(NSUM, dtype=np.complex128)
    )
    converged_rounds: int = 0
    cell_count: int = 0
    shell_count: int = 0
    max_relative_delta: float = np.inf

    def add(self, contribution: npt.NDArray[np.complex128], cells: int):
        self.values += contribution
        self.cell_count += cells

    def snapshot(self):
        self.last_values = self.values.copy()

    def update(self, convergence: Convergence):
        """
        Compares the running sums to the previous shell and advances the
        counter of consecutive converged shells.
        """
        delta = np.abs(self.values - self.last_values)
        magnitude = np.abs(self.values)

        max_absolute_delta = delta.max()
        significant = magnitude > convergence.slot_floor * magnitude.max()
        if np.any(significant):
            max_relative_delta = np.max(delta[significant] / magnitude[significant])
        else:
            max_relative_delta = 0.0

        if (
            max_absolute_delta < convergence.absolute_tolerance
            or max_relative_delta < convergence.relative_tolerance
        ):
            self.converged_rounds += 1
        else:
            self.converged_rounds = 0

        self.max_relative_delta = float(max_relative_delta)
        self.shell_count += 1
        self.snapshot()

    def converged(self, convergence: Convergence) -> bool:
        return self.converged_rounds >= convergence.converged_rounds


def first_round_indices(dimension: int, first_round: int) -> npt.NDArray[np.int64]:
    """Cell indices (n1, n2) of the block |n1|, |n2| <= first_round."""
    span = range(-first_round, first_round + 1)
    if dimension == 1:
        return np.array([(n1, 0) for n1 in span], dtype=np.int64)
    return np.array(list(product(span, span)), dtype=np.int64)


def shell_indices(dimension: int, nn: int) -> npt.NDArray[np.int64]:
    """
    Cell indices on the perimeter of the (2nn+1)x(2nn+1) block, or the pair
    of cells +-nn for a 1D lattice.
    """
    if dimension == 1:
        return np.array([(nn, 0), (-nn, 0)], dtype=np.int64)

    n = np.arange(-nn, nn)
    fixed = np.full_like(n, nn)
    return np.concatenate([
        np.stack([n, fixed], axis=-1),
        np.stack([fixed, -n], axis=-1),
        np.stack([-n, -fixed], axis=-1),
        np.stack([-fixed, n], axis=-1),
    ])


def accumulate(
    shell_sum: Callable[[npt.NDArray[np.int64]], Tuple[npt.NDArray[np.complex128], bool]],
    dimension: int,
    convergence: Convergence,
    description: str,
    exclude_inner_cells: bool = False,
) -> LatticeSum:
    """
    Sums a lattice series shell by shell until it converges.

    shell_sum maps an (n, 2) array of cell indices to the summed contribution
    of those cells and a flag marking a singular term. A singular term aborts
    the sum immediately. Hitting the shell cap is reported as a warning and
    the current estimate is returned.
    """
    state = ConvergenceState()

    indices = first_round_indices(dimension, convergence.first_round)
    if exclude_inner_cells:
        indices = indices[np.max(np.abs(indices), axis=-1) > 1]

    if indices.size:
        contribution, singular = shell_sum(indices)
        if singular:
            return LatticeSum(state.values, state.cell_count, 0, False, singular=True)
        state.add(contribution, len(indices))
    state.snapshot()

    nn = convergence.first_round + 1
    while not state.converged(convergence) and nn <= convergence.max_shells:
        indices = shell_indices(dimension, nn)
        contribution, singular = shell_sum(indices)
        if singular:
            return LatticeSum(
                state.values, state.cell_count, state.shell_count, False, singular=True
            )
        state.add(contribution, len(indices))
        state.update(convergence)
        nn += 1

    converged = state.converged(convergence)
    if not converged:
        logger.warning(
            f"{description} not converged after {state.shell_count} shells "
            f"({state.cell_count} cells), relative change {state.max_relative_delta:.1e}"
        )

    return LatticeSum(state.values, state.cell_count, state.shell_count, converged)
