# exponential integral and overflow-safe exp * erfc products used by the Ewald sums
import numpy as np
import numpy.typing as npt
import scipy.special as sp

from pgreen.utils.logging import logger

TINY = 1.0e-30
EXP_INT_TOLERANCE = 1.0e-8


def finite_or_zero(value):
    """
    Replaces infinite or NaN entries by zero.

    These only arise for extreme arguments of the exp * erfc products, where
    the true contribution to the lattice sums is negligible.
    """
    if np.ndim(value) == 0:
        return value if np.isfinite(value) else np.zeros_like(value)[()]
    return np.where(np.isfinite(value), value, 0.0)


def exp_int_continued_fraction(
    z: complex, relative_tolerance: float = EXP_INT_TOLERANCE, return_iterations: bool = False
):
    """
    E_1(z) from its continued fraction, evaluated with the modified Lentz method.

    The expansion is

        E_1(z) = e^{-z} / (z + 1 / (1 + 1 / (z + 2 / (1 + 2 / (z + ...)))))

    so the j-th partial numerator is floor(j / 2) for j > 1 and the partial
    denominators alternate between z and 1.
    """
    z = np.complex128(z)
    f = np.complex128(TINY)
    c = f
    d = np.complex128(0.0)
    delta = np.complex128(1.0)
    converged_iterations = 0

    for j in range(1, 1000):
        if j == 1:
            a, b = np.exp(-z), z
        else:
            a, b = j // 2, (z if j % 2 else 1.0)

        d = b + a * d
        if d == 0.0:
            d = TINY
        c = b + a / c
        if c == 0.0:
            c = TINY
        d = 1.0 / d
        delta = c * d
        f = f * delta

        if np.abs(delta - 1.0) < relative_tolerance:
            converged_iterations += 1
        else:
            converged_iterations = 0
        if converged_iterations == 5:
            break

    if converged_iterations != 5:
        logger.warning(
            f"potentially large error in continued fraction for E1({z}) "
            f"[{100.0 * np.abs(delta - 1.0):.1e}%]"
        )

    return (f, j) if return_iterations else f


def exp_int_series(
    z: complex, relative_tolerance: float = EXP_INT_TOLERANCE, return_iterations: bool = False
):
    """E_1(z) = -gamma - log(z) - sum_{n>=1} (-z)^n / (n n!)"""
    z = np.complex128(z)
    result = -np.euler_gamma - np.log(z)
    last_result = result

    factorial = 1.0
    z_power = np.complex128(1.0)
    for n in range(1, 101):
        factorial *= n
        z_power *= -z
        last_result = result
        result = result - z_power / (factorial * n)
        if np.abs(result - last_result) < relative_tolerance * np.abs(result):
            break
    else:
        logger.warning(
            f"potentially large error in power series for E1({z}) "
            f"[{100.0 * np.abs(result - last_result) / np.abs(result):.1e}%]"
        )

    return (result, n) if return_iterations else result


def exp_int_asymptotic(
    z: complex, relative_tolerance: float = EXP_INT_TOLERANCE, return_iterations: bool = False
):
    """
    Large-|z| expansion E_1(z) ~ e^{-z} / z * sum_n (-1)^n n! / z^n.

    Returns zero beyond |z| = 100, where the exponential weight underflows.
    """
    z = np.complex128(z)
    if np.abs(z) > 100.0:
        return (np.complex128(0.0), 0) if return_iterations else np.complex128(0.0)

    total = np.complex128(1.0)
    term = np.complex128(1.0)
    for n in range(1, 101):
        term *= -float(n) / z
        total += term
        if np.abs(term) < relative_tolerance * np.abs(total):
            break
    else:
        logger.warning(
            f"potentially large error in asymptotic series for E1({z}) "
            f"[{100.0 * np.abs(term) / np.abs(total):.1e}%]"
        )

    result = total * np.exp(-z) / z
    return (result, n) if return_iterations else result


def exp_int(z: complex) -> np.complex128:
    """
    Exponential integral E_1(z) for complex z.

    The power series is used for small |z| and close to the branch cut on the
    negative real axis, the continued fraction for intermediate |z| and the
    asymptotic series for |z| >= 30.
    """
    z = np.complex128(z)
    abs_z = np.abs(z)

    if abs_z < 5.0:
        return exp_int_series(z)
    elif abs_z < 30.0:
        if np.abs(np.abs(np.angle(z)) - np.pi) < 0.2:
            return exp_int_series(z)
        return exp_int_continued_fraction(z)
    return exp_int_asymptotic(z)


def subtract_wavenumber_squared(p2, wavenumber: complex):
    """
    Returns p^2 - k^2 with the imaginary part set to -Im(k^2).

    For real k the imaginary part is then a negative zero, which places
    sqrt(p^2 - k^2) of propagating orders on the -i axis (outgoing waves),
    the limit of a vanishing positive loss.
    """
    k = np.complex128(wavenumber)
    k2 = k * k
    p2 = np.asarray(p2, dtype=np.float64)
    out = np.empty(p2.shape, dtype=np.complex128)
    out.real = p2 - k2.real
    out.imag = -k2.imag
    if out.ndim == 0:
        return out[()]
    return out


def erfc_s(
    a: npt.NDArray[np.complex128], b: npt.NDArray[np.complex128]
) -> npt.NDArray[np.complex128]:
    """
    Computes exp(a) * erfc(b) without overflow for large Re(a) and tiny erfc(b).

    Uses erfc(b) = exp(-b^2) erfcx(b) for Re(b) >= 0 and
    erfc(b) = 2 - exp(-b^2) erfcx(-b) otherwise, so that the scaled function is
    always evaluated in the right half plane.
    """
    a = np.asarray(a, dtype=np.complex128)
    b = np.asarray(b, dtype=np.complex128)

    x = b.real
    y = b.imag
    # -b^2, written out to keep the real part exact for |x| == |y|
    minus_b2 = (y - x) * (x + y) - 2j * x * y

    with np.errstate(over="ignore", invalid="ignore"):
        right = np.exp(a + minus_b2) * sp.erfcx(np.where(x >= 0, b, -b))
        out = np.where(x >= 0, right, 2.0 * np.exp(a) - right)

    if out.ndim == 0:
        return out[()]
    return out
