# Spectral (reciprocal-space, long range) component of the Ewald sum
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import numpy.typing as npt

from pgreen.greens.convergence import NSUM, Convergence, LatticeSum, accumulate
from pgreen.greens.direct import free_space_transform_1d
from pgreen.greens.special import (
    erfc_s,
    exp_int,
    finite_or_zero,
    subtract_wavenumber_squared,
)
from pgreen.types.lattice import ReciprocalBasis
from pgreen.utils.logging import logger

M_2_SQRTPI = 2.0 / np.sqrt(np.pi)

# |Q| below this fraction of |k| marks a singular reciprocal-lattice term
SINGULAR_THRESHOLD = 1.0e-4
# beyond rho * E = 4.5 the long-range 1D transform equals the full one
BESSEL_CROSSOVER = 4.5


def exp_erfc_factor(
    z: float, eta: float, q: npt.NDArray[np.complex128]
) -> Tuple[npt.NDArray[np.complex128], npt.NDArray[np.complex128]]:
    """
    EEF = e^{Qz} erfc(Q/2E + Ez) + e^{-Qz} erfc(Q/2E - Ez) and its z derivative.
    Non-finite values are replaced by zero.
    """
    q = np.asarray(q, dtype=np.complex128)

    arg = 0.5 * q / eta + z * eta
    plus = erfc_s(q * z, arg)
    with np.errstate(over="ignore", invalid="ignore"):
        d_plus = q * plus - (M_2_SQRTPI * eta) * np.exp(q * z - arg * arg)

    arg = 0.5 * q / eta - z * eta
    minus = erfc_s(-q * z, arg)
    with np.errstate(over="ignore", invalid="ignore"):
        d_minus = -q * minus + (M_2_SQRTPI * eta) * np.exp(-q * z - arg * arg)

        eef = plus + minus
        eef_prime = d_plus + d_minus

    return finite_or_zero(eef), finite_or_zero(eef_prime)


def long_range_transform_1d(
    transverse_wavenumber2: complex, rho: float, eta: float
) -> Tuple[complex, complex, complex]:
    """
    Fourier transform along the lattice line of the long-range Ewald kernel,

        sum_q (-rho^2 E^2)^q / q! E_{q+1}(kt^2 / 4E^2) / 8 pi^2,

    with its first and second derivatives in rho. The generalised exponential
    integrals come from the upward recurrence
    E_{q+1}(x) = (e^{-x} - x E_q(x)) / q.

    For rho E > 4.5 the short-range part is negligible and the closed form
    of the full Green's function is returned instead.
    """
    if rho * eta > BESSEL_CROSSOVER:
        return free_space_transform_1d(transverse_wavenumber2, rho)

    # scaled part by part to keep the sign of a -0.0 imaginary part
    transverse_wavenumber2 = np.complex128(transverse_wavenumber2)
    scale = 0.25 / (eta * eta)
    arg = np.complex128(complex(
        transverse_wavenumber2.real * scale, transverse_wavenumber2.imag * scale
    ))
    e_q = exp_int(arg)
    norm = 8.0 * np.pi**2

    if rho == 0.0:
        return e_q / norm, 0.0, 0.0
    if e_q == 0.0:
        # E_1 underflowed, and every higher order is smaller still
        return 0.0, 0.0, 0.0

    exp_factor = np.exp(-arg)
    rho_e2 = rho * rho * eta * eta
    prefactor = 1.0
    total = e_q
    d_rho = 0.0
    d_rho2 = 0.0

    # convergence of the value series only; the derivative series follow it
    converged_iterations = 0
    for q in range(1, 1000):
        e_q = (exp_factor - arg * e_q) / q
        prefactor *= -rho_e2 / q

        summand = prefactor * e_q
        total += summand

        factor = 2.0 * q / rho
        d_rho += factor * summand
        d_rho2 += factor * summand * (2.0 * q - 1.0) / rho

        if np.abs(summand) < 1.0e-8 * np.abs(total):
            converged_iterations += 1
        else:
            converged_iterations = 0
        if converged_iterations == 2:
            break

    if converged_iterations != 2 and np.abs(total) > 1.0e-8:
        logger.warning(
            f"potential nonconvergence in 1D long-range transform "
            f"(kt^2={transverse_wavenumber2}, rho={rho}, E={eta})"
        )

    return total / norm, d_rho / norm, d_rho2 / norm


@dataclass
class Spectral:
    """
    Reciprocal-lattice sum of the long-range Ewald kernel.

    Subclasses implement `shell`, which returns the summed contribution of a
    set of reciprocal-lattice cells (before the lattice prefactor) together
    with a flag marking a vanishing propagation constant.
    """
    evaluation_point: npt.NDArray[np.float64]
    wavenumber: complex
    bloch_vector: npt.NDArray[np.float64]
    reciprocal: ReciprocalBasis
    eta: float

    dimension = 0

    @staticmethod
    def for_lattice(
        dimension: int,
        evaluation_point: npt.NDArray[np.float64],
        wavenumber: complex,
        bloch_vector: npt.NDArray[np.float64],
        reciprocal: ReciprocalBasis,
        eta: float,
    ) -> "Spectral":
        match dimension:
            case 1:
                return Spectral1D(evaluation_point, wavenumber, bloch_vector, reciprocal, eta)
            case 2:
                return Spectral2D(evaluation_point, wavenumber, bloch_vector, reciprocal, eta)
        raise ValueError(f"no spectral sum for {dimension}D lattices")

    def prefactor(self) -> float:
        raise NotImplementedError

    def shell(self, indices: npt.NDArray[np.int64]) -> Tuple[npt.NDArray[np.complex128], bool]:
        raise NotImplementedError

    def is_singular(self, transverse: npt.NDArray[np.complex128]) -> bool:
        return bool(np.any(
            np.abs(transverse) < SINGULAR_THRESHOLD * np.abs(self.wavenumber)
        ))

    def construct(self, convergence: Convergence) -> LatticeSum:
        if self.eta == 0.0:
            return LatticeSum(np.zeros(NSUM, dtype=np.complex128), 0, 0, True)

        result = accumulate(
            self.shell,
            self.dimension,
            convergence,
            f"distant lattice sum (R={self.evaluation_point}, k={self.wavenumber}, E={self.eta})",
        )
        result.values = result.values * self.prefactor()
        return result


@dataclass
class Spectral2D(Spectral):
    dimension = 2

    def prefactor(self) -> float:
        return self.reciprocal.zone_measure / (16.0 * np.pi**2)

    def shell(self, indices: npt.NDArray[np.int64]) -> Tuple[npt.NDArray[np.complex128], bool]:
        # P - G for G = n1 Gamma1 + n2 Gamma2
        pmg = self.bloch_vector - indices @ self.reciprocal.gamma
        q = np.sqrt(subtract_wavenumber_squared(np.sum(pmg**2, axis=-1), self.wavenumber))

        if self.is_singular(q):
            return np.zeros(NSUM, dtype=np.complex128), True

        prefactor = np.exp(1j * (pmg @ self.evaluation_point[:2])) / q
        eef, eef_prime = exp_erfc_factor(self.evaluation_point[2], self.eta, q)

        px, py = pmg.T
        value = prefactor * eef
        slope = prefactor * eef_prime
        terms = np.stack([
            value,
            1j * px * value,
            1j * py * value,
            slope,
            -px * py * value,
            1j * px * slope,
            1j * py * slope,
            -px * py * slope,
        ], axis=-1)

        return terms.sum(axis=0), False


@dataclass
class Spectral1D(Spectral):
    dimension = 1

    def prefactor(self) -> float:
        return self.reciprocal.zone_measure

    def shell(self, indices: npt.NDArray[np.int64]) -> Tuple[npt.NDArray[np.complex128], bool]:
        x, y, z = self.evaluation_point
        rho = self.reciprocal.rho
        y_over_rho = 0.0 if rho == 0.0 else y / rho
        z_over_rho = 0.0 if rho == 0.0 else z / rho

        out = np.zeros(NSUM, dtype=np.complex128)
        for m in indices[:, 0]:
            kx = self.bloch_vector[0] - m * self.reciprocal.gamma[0, 0]
            kt2 = subtract_wavenumber_squared(kx * kx, self.wavenumber)

            # |kt| < 1e-4 |k|
            if self.is_singular(np.sqrt(np.abs(kt2))):
                return out, True

            g, dg, d2g = long_range_transform_1d(kt2, rho, self.eta)
            d2g_yz = 0.0 if rho == 0.0 else d2g - dg / rho
            phase = np.exp(1j * kx * x)

            out += finite_or_zero(phase * np.array([
                g,
                1j * kx * g,
                y_over_rho * dg,
                z_over_rho * dg,
                1j * kx * y_over_rho * dg,
                1j * kx * z_over_rho * dg,
                y_over_rho * z_over_rho * d2g_yz,
                1j * kx * y_over_rho * z_over_rho * d2g_yz,
            ], dtype=np.complex128))

        return out, False
