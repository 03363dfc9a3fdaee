# the free-space (non-periodic) Helmholtz Green's function and its derivatives
from typing import Tuple

import numpy as np
import numpy.typing as npt
import scipy.special as sp
from numba import jit


@jit(nopython=True, cache=True)
def free_space_terms(
    displacements: npt.NDArray[np.float64],
    phases: npt.NDArray[np.complex128],
    wavenumber: complex,
) -> npt.NDArray[np.complex128]:
    """
    Returns phase * g and its derivatives for each displacement R - L.

    With g = exp(ikr) / 4 pi r the rows hold
    [g, x Psi, y Psi, z Psi, xy Zeta, xz Zeta, yz Zeta, xyz Upsilon], where

        Psi     = (ikr - 1) g / r^2
        Zeta    = (3 - 3ikr + (ikr)^2) g / r^4
        Upsilon = (-15 + 15ikr - 6(ikr)^2 + (ikr)^3) g / r^6

    Displacements shorter than 1e-8 are treated as the self term and left zero.
    """
    out = np.zeros((displacements.shape[0], 8), dtype=np.complex128)

    for ii in range(displacements.shape[0]):
        x = displacements[ii, 0]
        y = displacements[ii, 1]
        z = displacements[ii, 2]

        r2 = x * x + y * y + z * z
        r = np.sqrt(r2)
        if r < 1.0e-8:
            continue

        ikr = 1j * wavenumber * r
        phi = np.exp(ikr) / (4.0 * np.pi * r)
        psi = (ikr - 1.0) * phi / r2
        zeta = (3.0 + ikr * (-3.0 + ikr)) * phi / (r2 * r2)
        upsilon = (-15.0 + ikr * (15.0 + ikr * (-6.0 + ikr))) * phi / (r2 * r2 * r2)

        phase = phases[ii]
        out[ii, 0] = phase * phi
        out[ii, 1] = phase * x * psi
        out[ii, 2] = phase * y * psi
        out[ii, 3] = phase * z * psi
        out[ii, 4] = phase * x * y * zeta
        out[ii, 5] = phase * x * z * zeta
        out[ii, 6] = phase * y * z * zeta
        out[ii, 7] = phase * x * y * z * upsilon

    return out


def free_space_green(
    displacement: npt.NDArray[np.float64], wavenumber: complex
) -> npt.NDArray[np.complex128]:
    """The eight-slot free-space Green's function at a single displacement."""
    displacement = np.ascontiguousarray(
        np.asarray(displacement, dtype=np.float64).reshape(1, 3)
    )
    return free_space_terms(
        displacement, np.ones(1, dtype=np.complex128), np.complex128(wavenumber)
    )[0]


def free_space_transform_1d(
    transverse_wavenumber2: complex, rho: float
) -> Tuple[complex, complex, complex]:
    """
    Fourier transform of the free-space Green's function along a line.

    For the transverse wavenumber kt = sqrt(kx^2 - k^2) this is
    K_0(kt rho) / 4 pi^2; its first and second derivatives with respect to
    the distance rho from the line are returned alongside.
    """
    kt = np.sqrt(np.complex128(transverse_wavenumber2))
    k0, k1, k2 = sp.kv(np.arange(3), kt * rho)
    denominator = 4.0 * np.pi**2

    return (
        k0 / denominator,
        -kt * k1 / denominator,
        transverse_wavenumber2 * (k0 + k2) / (2.0 * denominator),
    )
