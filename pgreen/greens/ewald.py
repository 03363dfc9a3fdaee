# evaluate the Ewald summation of the periodic Helmholtz Green's function
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import numpy.typing as npt

from pgreen.greens.convergence import NSUM, Convergence, LatticeSum, first_round_indices
from pgreen.greens.spatial import Spatial
from pgreen.greens.spectral import Spectral
from pgreen.types.lattice import Lattice, LatticeConfigurationError, validate_basis
from pgreen.utils.logging import logger

# pass as the splitting parameter to use the lattice heuristic
AUTO_SPLITTING = -1.0
# shift of the Bloch vector, relative to |k|, after a singular distant sum
SINGULAR_SHIFT = 1.0e-2


@dataclass
class EwaldResult:
    values: npt.NDArray[np.complex128]
    nearby: LatticeSum
    distant: LatticeSum
    inner_correction: npt.NDArray[np.complex128]
    splitting_parameter: float
    bloch_vector: npt.NDArray[np.float64]
    retried: bool = False


def _empty_sum() -> LatticeSum:
    return LatticeSum(np.zeros(NSUM, dtype=np.complex128), 0, 0, True)


@dataclass
class EwaldGreen:
    """
    The periodic Green's function of the Helmholtz equation for a 1D or 2D
    lattice of point sources, with the Bloch phase exp(i P.L).

    The lattice sum is split into a nearby part, summed over the direct
    lattice, and a distant part, summed over the reciprocal lattice. The
    splitting parameter E only moves weight between the two: E = 0 disables
    the distant sum, AUTO_SPLITTING chooses E from the lattice geometry.

    With exclude_inner_cells the cells |n1|, |n2| <= 1 are left out of the
    sum, leaving the contribution of the rest of the lattice.
    """
    lattice: Lattice
    splitting_parameter: float = AUTO_SPLITTING
    exclude_inner_cells: bool = False
    convergence: Convergence = field(default_factory=Convergence)

    def __post_init__(self):
        if self.splitting_parameter < 0.0 and self.splitting_parameter != AUTO_SPLITTING:
            raise LatticeConfigurationError(
                f"splitting parameter must be non-negative or {AUTO_SPLITTING}, "
                f"received {self.splitting_parameter}"
            )

    def _validate_point(self, observation_point) -> npt.NDArray[np.float64]:
        point = np.asarray(observation_point, dtype=np.float64).reshape(-1)
        if point.shape != (3,):
            raise LatticeConfigurationError(
                f"expected a 3D observation point, received shape {point.shape}"
            )
        return point

    def _validate_bloch_vector(self, bloch_vector) -> npt.NDArray[np.float64]:
        bloch_vector = np.asarray(bloch_vector, dtype=np.float64).reshape(-1)
        if bloch_vector.shape == (1,) and self.lattice.dimension == 1:
            return np.array([bloch_vector[0], 0.0])
        if bloch_vector.shape != (2,):
            raise LatticeConfigurationError(
                f"expected an in-plane Bloch vector, received shape {bloch_vector.shape}"
            )
        return bloch_vector.copy()

    def _sums(
        self,
        point: npt.NDArray[np.float64],
        wavenumber: complex,
        bloch_vector: npt.NDArray[np.float64],
        eta: float,
        reciprocal,
    ):
        spatial = Spatial(point, wavenumber, bloch_vector, self.lattice.basis_vectors, eta)
        nearby = spatial.construct(self.convergence, self.exclude_inner_cells)
        distant = Spectral.for_lattice(
            self.lattice.dimension, point, wavenumber, bloch_vector, reciprocal, eta
        ).construct(self.convergence)
        return spatial, nearby, distant

    def evaluate(
        self,
        observation_point: npt.NDArray[np.float64],
        wavenumber: complex,
        bloch_vector: npt.NDArray[np.float64],
    ) -> EwaldResult:
        point = self._validate_point(observation_point)
        bloch_vector = self._validate_bloch_vector(bloch_vector)
        wavenumber = complex(wavenumber)

        if wavenumber == 0.0:
            zeros = np.zeros(NSUM, dtype=np.complex128)
            return EwaldResult(
                zeros, _empty_sum(), _empty_sum(), zeros.copy(),
                self.splitting_parameter, bloch_vector,
            )

        reciprocal = self.lattice.reciprocal(wavenumber, point)

        if self.splitting_parameter == AUTO_SPLITTING:
            eta = reciprocal.optimal_splitting
        else:
            eta = float(self.splitting_parameter)
        logger.debug(f"splitting parameter E={eta:.6e} for k={wavenumber}")

        spatial, nearby, distant = self._sums(point, wavenumber, bloch_vector, eta, reciprocal)

        retried = False
        if distant.singular:
            shift = SINGULAR_SHIFT * np.abs(wavenumber)
            logger.notice(
                f"singular distant sum at R={point}, k={wavenumber}, P={bloch_vector}, "
                f"retrying with P[0] shifted by {shift:.3e}"
            )
            bloch_vector = bloch_vector.copy()
            bloch_vector[0] += shift
            retried = True

            spatial, nearby, distant = self._sums(
                point, wavenumber, bloch_vector, eta, reciprocal
            )
            if distant.singular:
                logger.warning(
                    f"distant sum still singular at R={point}, k={wavenumber}, "
                    f"P={bloch_vector}; the result is a partial sum"
                )

        values = nearby.values + distant.values

        inner_correction = np.zeros(NSUM, dtype=np.complex128)
        if self.exclude_inner_cells:
            # the distant sum still holds the long-range part of the inner cells
            inner_correction = spatial.long_range(
                first_round_indices(self.lattice.dimension, 1)
            )
            values = values - inner_correction

        return EwaldResult(
            values, nearby, distant, inner_correction, eta, bloch_vector, retried
        )

    def __call__(
        self,
        observation_point: npt.NDArray[np.float64],
        wavenumber: complex,
        bloch_vector: npt.NDArray[np.float64],
    ) -> npt.NDArray[np.complex128]:
        return self.evaluate(observation_point, wavenumber, bloch_vector).values


def evaluate_periodic_green(
    observation_point: npt.NDArray[np.float64],
    wavenumber: complex,
    bloch_vector: npt.NDArray[np.float64],
    lattice_basis: npt.NDArray[np.float64],
    lattice_dim: Optional[int] = None,
    splitting_parameter: float = AUTO_SPLITTING,
    exclude_inner_cells: bool = False,
    convergence: Optional[Convergence] = None,
) -> npt.NDArray[np.complex128]:
    """
    Returns [G, dG/dx, dG/dy, dG/dz, d2G/dxdy, d2G/dxdz, d2G/dydz, d3G/dxdydz]
    of the periodic Green's function at the observation point.

    lattice_basis holds the lattice vectors as rows; with lattice_dim given
    only the first lattice_dim rows are used.
    """
    lattice = Lattice.from_basis(validate_basis(lattice_basis, lattice_dim))
    green = EwaldGreen(
        lattice,
        splitting_parameter,
        exclude_inner_cells,
        Convergence() if convergence is None else convergence,
    )
    return green(observation_point, wavenumber, bloch_vector)
