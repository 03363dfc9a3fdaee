import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List
from typing import Optional

import toml
import numpy as np
import numpy.typing as npt
from aenum import Enum


class LatticeConfigurationError(ValueError):
    """Raised for lattices the Ewald sums cannot be evaluated on."""


class Symmetry(Enum):
    Linear = 0
    Rectangular = 1
    Hexagonal = 2
    Oblique = 3


def validate_basis(
    basis_vectors: npt.NDArray[np.float64], dimension: Optional[int] = None
) -> npt.NDArray[np.float64]:
    """
    Returns the lattice basis as a (dimension, 2) array of in-plane vectors.

    Basis vectors given with three components must have no z component, as the
    lattice always lies in the xy plane.
    """
    basis_vectors = np.atleast_2d(np.asarray(basis_vectors, dtype=np.float64))

    if dimension is None:
        dimension = basis_vectors.shape[0]
    if dimension not in (1, 2):
        raise LatticeConfigurationError(
            f"only 1D or 2D periodicity is supported, received dimension {dimension}"
        )
    if basis_vectors.shape[0] < dimension or basis_vectors.shape[1] not in (2, 3):
        raise LatticeConfigurationError(
            f"expected {dimension} lattice vectors with 2 components, "
            f"received an array of shape {basis_vectors.shape}"
        )
    if basis_vectors.shape[1] == 3:
        if np.any(basis_vectors[:dimension, 2] != 0.0):
            raise LatticeConfigurationError("lattice vectors must lie in the xy plane")
        basis_vectors = basis_vectors[:, :2]

    return np.array(basis_vectors[:dimension])


@dataclass
class ReciprocalBasis:
    """
    The reciprocal lattice of a 1D or 2D direct lattice.

    gamma holds the 2pi-normalised dual vectors as rows (the second row is
    zero for a 1D lattice). zone_measure is the length (1D) or area (2D) of
    the Brillouin zone. rho is, in 1D, the distance from the observation point
    to the lattice line; it is zero for 2D lattices.
    """
    gamma: npt.NDArray[np.float64]
    zone_measure: float
    rho: float
    optimal_splitting: float

    @classmethod
    def construct(
        cls,
        basis_vectors: npt.NDArray[np.float64],
        wavenumber: complex,
        evaluation_point: npt.NDArray[np.float64],
    ) -> "ReciprocalBasis":
        """
        Computes the reciprocal basis and a near-optimal Ewald splitting
        parameter for the wavenumber k.

        The 1D heuristic follows Valerio et al, IEEE TAP 55, 1630 (2007) with
        H = 10; the 2D heuristic balances the reciprocal-lattice length scale
        against the wavenumber.
        """
        dimension = basis_vectors.shape[0]
        gamma = np.zeros((2, 2))

        if dimension == 1:
            a = basis_vectors[0]
            length2 = np.dot(a, a)
            if length2 == 0.0:
                raise LatticeConfigurationError("lattice has empty unit cell")
            if a[1] != 0.0:
                raise LatticeConfigurationError(
                    "1D lattice vectors must point in the x direction"
                )
            gamma[0] = 2.0 * np.pi / length2 * a

            # perpendicular distance from R to the lattice line
            factor = np.dot(evaluation_point[:2], a) / length2
            rho2d = evaluation_point[:2] - factor * a
            rho2 = np.dot(rho2d, rho2d) + evaluation_point[2] ** 2
            rho = np.sqrt(rho2)

            eta = np.sqrt(np.pi / length2)
            eta_minimum = np.abs(wavenumber) / 20.0
            eta_maximum = 1.0e100 if rho2 == 0.0 else 1.2 / rho
            if eta < eta_minimum:
                eta = eta_minimum
            elif eta > eta_maximum:
                eta = eta_maximum

            return cls(gamma, float(np.linalg.norm(gamma[0])), float(rho), float(eta))

        a1, a2 = basis_vectors
        area = a1[0] * a2[1] - a1[1] * a2[0]
        if area == 0.0:
            raise LatticeConfigurationError("lattice has empty unit cell")

        gamma[0] = 2.0 * np.pi * np.array([a2[1], -a2[0]]) / area
        gamma[1] = 2.0 * np.pi * np.array([-a1[1], a1[0]]) / area

        eta_area = np.sqrt(np.pi / np.abs(area))
        eta_wavenumber = np.sqrt(
            np.abs(wavenumber) ** 2 + np.dot(gamma[0], gamma[0]) + np.dot(gamma[1], gamma[1])
        ) / 10.0

        zone_measure = np.abs(gamma[0, 0] * gamma[1, 1] - gamma[0, 1] * gamma[1, 0])

        return cls(gamma, float(zone_measure), 0.0, float(max(eta_area, eta_wavenumber)))


@dataclass
class Lattice:
    symmetry: Symmetry
    lengths: List[float] = field(default_factory=list)
    # Only read for oblique lattices, otherwise generated from the lengths
    basis_vectors: Optional[npt.NDArray[np.float64]] = None

    def __post_init__(self):
        match self.symmetry:
            case Symmetry.Oblique:
                if self.basis_vectors is None:
                    raise LatticeConfigurationError(
                        "an oblique lattice is characterised by explicit basis vectors"
                    )
            case Symmetry.Linear:
                if len(self.lengths) != 1:
                    raise LatticeConfigurationError(
                        "a linear lattice is characterised by a single length"
                    )
                self.basis_vectors = np.array([[self.lengths[0], 0.0]])
            case Symmetry.Rectangular:
                if len(self.lengths) != 2:
                    raise LatticeConfigurationError(
                        "a rectangular lattice is characterised by two lengths"
                    )
                self.basis_vectors = np.array([
                    [self.lengths[0], 0.0],
                    [0.0, self.lengths[1]],
                ])
            case Symmetry.Hexagonal:
                if len(self.lengths) != 1:
                    raise LatticeConfigurationError(
                        "a hexagonal lattice is characterised by a single length"
                    )
                a = self.lengths[0]
                self.basis_vectors = a * np.array([
                    [1.0, 0.0],
                    [0.5, np.sqrt(3.0) / 2.0],
                ])

        self.basis_vectors = validate_basis(self.basis_vectors)

    @classmethod
    def from_basis(cls, basis_vectors: npt.NDArray[np.float64]) -> "Lattice":
        return cls(Symmetry.Oblique, basis_vectors=np.asarray(basis_vectors, dtype=np.float64))

    @classmethod
    def from_file(cls, path_to_configuration_file: str) -> "Lattice":
        extension = os.path.splitext(path_to_configuration_file)[-1].lower()
        if extension != ".toml":
            raise ValueError(f"expected a `.toml` file, received a `{extension}` file")

        path_to_configuration_file = Path(".").joinpath(path_to_configuration_file)
        if not os.path.exists(path_to_configuration_file):
            raise ValueError(f"file {path_to_configuration_file} not found")

        parsed_configuration = toml.load(path_to_configuration_file)["Lattice"]
        symmetry = parsed_configuration.get("symmetry")

        if (basis_vectors := parsed_configuration.get("basis_vectors")) is not None:
            return cls.from_basis(np.asarray(basis_vectors, dtype=np.float64))

        if symmetry is None:
            raise ValueError("the [Lattice] table needs either `basis_vectors` or `symmetry`")

        return cls(
            Symmetry[symmetry],
            [float(length) for length in parsed_configuration["lengths"]],
        )

    @property
    def dimension(self) -> int:
        return self.basis_vectors.shape[0]

    def unit_cell_measure(self) -> float:
        """Length (1D) or area (2D) of the direct-lattice unit cell."""
        if self.dimension == 1:
            return float(np.linalg.norm(self.basis_vectors[0]))
        a1, a2 = self.basis_vectors
        return float(np.abs(a1[0] * a2[1] - a1[1] * a2[0]))

    def reciprocal(
        self, wavenumber: complex, evaluation_point: npt.NDArray[np.float64]
    ) -> ReciprocalBasis:
        return ReciprocalBasis.construct(
            self.basis_vectors, wavenumber, np.asarray(evaluation_point, dtype=np.float64)
        )
