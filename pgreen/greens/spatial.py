# Spatial (real-space, short range) component of the Ewald sum
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import numpy.typing as npt
import scipy.special as sp

from pgreen.greens.convergence import Convergence, LatticeSum, accumulate
from pgreen.greens.direct import free_space_terms
from pgreen.greens.special import erfc_s, finite_or_zero
from pgreen.utils.logging import logger

PI32 = np.pi**1.5
M_2_SQRTPI = 2.0 / np.sqrt(np.pi)


@dataclass
class Spatial:
    evaluation_point: npt.NDArray[np.float64]
    wavenumber: complex
    bloch_vector: npt.NDArray[np.float64]
    basis_vectors: npt.NDArray[np.float64]
    eta: float

    @property
    def dimension(self) -> int:
        return self.basis_vectors.shape[0]

    def lattice_points(self, indices: npt.NDArray[np.int64]) -> npt.NDArray[np.float64]:
        """L = n1 * L1 (+ n2 * L2) for each row of cell indices."""
        return indices[:, : self.dimension] @ self.basis_vectors

    def displacements(self, lattice_points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        # R - L, the lattice lies in the z = 0 plane
        out = np.empty((lattice_points.shape[0], 3))
        out[:, :2] = self.evaluation_point[:2] - lattice_points
        out[:, 2] = self.evaluation_point[2]
        return out

    def phases(self, lattice_points: npt.NDArray[np.float64]) -> npt.NDArray[np.complex128]:
        return np.exp(1j * (lattice_points @ self.bloch_vector))

    @staticmethod
    def short_range_terms(
        displacements: npt.NDArray[np.float64],
        phases: npt.NDArray[np.complex128],
        wavenumber: complex,
        eta: float,
    ) -> npt.NDArray[np.complex128]:
        """
        Per-cell contributions of the short-range kernel

            exp(i P.L) / (8 pi r) * (g2p g3p + g2m g3m)

        with g2(+-) = exp(+-ikr) and g3(+-) = erfc(E r +- ik / 2E). Writing
        ggPgg = g2p g3p + g2m g3m and ggMgg = g2p g3p - g2m g3m, the radial
        derivatives follow from

            d/dr ggPgg = ik ggMgg + g4,    d/dr ggMgg = ik ggPgg,

        where g4 = -(4E / sqrt(pi)) exp(-E^2 r^2 + k^2 / 4E^2). Cells closer
        than 1e-6 to the evaluation point are left zero.
        """
        k = np.complex128(wavenumber)
        r2 = np.sum(displacements**2, axis=-1)
        r = np.sqrt(r2)
        mask = r >= 1.0e-6
        r = np.where(mask, r, 1.0)
        r2 = r * r

        e2 = eta * eta
        e4 = e2 * e2

        plus = erfc_s(1j * k * r, eta * r + 1j * k / (2.0 * eta))
        minus = erfc_s(-1j * k * r, eta * r - 1j * k / (2.0 * eta))
        ggpgg = plus + minus
        ggmgg = plus - minus

        with np.errstate(over="ignore", invalid="ignore"):
            g4 = -2.0 * M_2_SQRTPI * eta * np.exp(-e2 * r2 + k * k / (4.0 * e2))
            dg = g4 + 1j * k * ggmgg

            first = -ggpgg / r**3 + dg / r2
            second = (
                3.0 * ggpgg / r**5 - 3.0 * dg / r**4
                - k * k * ggpgg / r**3 - 2.0 * e2 * g4 / r2
            )
            third = (
                -15.0 * ggpgg / r**7 + 15.0 * dg / r**6
                + 6.0 * k * k * ggpgg / r**5 + 10.0 * e2 * g4 / r**4
                - k * k * dg / r**4 + 4.0 * e4 * g4 / r2
            )

            x, y, z = displacements.T
            phase = phases / (8.0 * np.pi)
            terms = phase[:, np.newaxis] * np.stack([
                ggpgg / r,
                x * first,
                y * first,
                z * first,
                x * y * second,
                x * z * second,
                y * z * second,
                x * y * z * third,
            ], axis=-1)

        terms = finite_or_zero(terms)
        terms[~mask] = 0.0
        return terms

    @staticmethod
    def small_r_terms(
        displacements: npt.NDArray[np.float64],
        phases: npt.NDArray[np.complex128],
        wavenumber: complex,
        eta: float,
    ) -> npt.NDArray[np.complex128]:
        """
        Power series GLong = C0 + C2 r^2 + C4 r^4 of the long-range kernel
        about r = 0. The third mixed partial vanishes at this order.
        """
        k = np.complex128(wavenumber)
        k2 = k * k
        k3 = k2 * k
        e2 = eta * eta

        erf_factor = 1.0 + sp.erf(0.5j * k / eta)
        exp_factor = np.exp(0.25 * k2 / e2)
        c0 = eta * exp_factor / (2.0 * PI32) + 1j * k * erf_factor / (4.0 * np.pi)
        c2 = (
            -exp_factor * eta * (2.0 * e2 + k2) / (12.0 * PI32)
            - 1j * k3 * erf_factor / (24.0 * np.pi)
        )
        c4 = (
            exp_factor * eta * (12.0 * e2 * e2 + 2.0 * e2 * k2 + k2 * k2) / (240.0 * PI32)
            + 1j * k3 * k2 * erf_factor / (480.0 * np.pi)
        )

        r2 = np.sum(displacements**2, axis=-1)
        x, y, z = displacements.T
        radial = 2.0 * c2 + 4.0 * c4 * r2

        terms = phases[:, np.newaxis] * np.stack([
            c0 + c2 * r2 + c4 * r2 * r2,
            radial * x,
            radial * y,
            radial * z,
            8.0 * c4 * x * y,
            8.0 * c4 * x * z,
            8.0 * c4 * y * z,
            np.zeros_like(r2, dtype=np.complex128),
        ], axis=-1)
        return terms

    def shell(self, indices: npt.NDArray[np.int64]) -> Tuple[npt.NDArray[np.complex128], bool]:
        lattice_points = self.lattice_points(indices)
        displacements = self.displacements(lattice_points)
        phases = self.phases(lattice_points)

        if self.eta == 0.0:
            terms = free_space_terms(displacements, phases, np.complex128(self.wavenumber))
        else:
            terms = self.short_range_terms(displacements, phases, self.wavenumber, self.eta)

        return terms.sum(axis=0), False

    def construct(
        self, convergence: Convergence, exclude_inner_cells: bool = False
    ) -> LatticeSum:
        """
        The real-space lattice sum. With eta = 0 this is the plain sum of the
        free-space Green's function over the direct lattice.
        """
        return accumulate(
            self.shell,
            self.dimension,
            convergence,
            f"nearby lattice sum (R={self.evaluation_point}, k={self.wavenumber}, E={self.eta})",
            exclude_inner_cells,
        )

    def long_range(self, indices: npt.NDArray[np.int64]) -> npt.NDArray[np.complex128]:
        """
        Real-space contribution of the given cells to the long-range part of
        the Ewald sum, GLong = GFull - GShort.

        Cells with r E < 0.1 and r |k| < 1 use the small-r series instead of
        the subtraction, which would lose most of its significant digits.
        """
        if self.eta == 0.0:
            return np.zeros(8, dtype=np.complex128)

        lattice_points = self.lattice_points(indices)
        displacements = self.displacements(lattice_points)
        phases = self.phases(lattice_points)

        r = np.linalg.norm(displacements, axis=-1)
        small = (r * self.eta < 0.1) & (r * np.abs(self.wavenumber) < 1.0)

        full = free_space_terms(displacements, phases, np.complex128(self.wavenumber))
        short = self.short_range_terms(displacements, phases, self.wavenumber, self.eta)
        long = full - short

        lost = (
            ~small
            & (np.abs(long[:, 0]) < 1.0e-6 * (np.abs(full[:, 0]) + np.abs(short[:, 0])))
            & (np.abs(long[:, 0]) > 1.0e-8)
        )
        for ii in np.flatnonzero(lost):
            logger.warning(
                f"loss of precision (r={r[ii]:e}) "
                f"({np.abs(full[ii, 0]):.8e} - {np.abs(short[ii, 0]):.8e} = "
                f"{np.abs(long[ii, 0]):.1e}) in real-space long-range term"
            )

        if np.any(small):
            series = self.small_r_terms(displacements, phases, self.wavenumber, self.eta)
            long = np.where(small[:, np.newaxis], series, long)

        return long.sum(axis=0)
