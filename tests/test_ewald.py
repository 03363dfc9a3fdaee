from itertools import product

import numpy as np
import numpy.testing as npt
import pytest
import scipy.special as sp

from pgreen.greens.convergence import Convergence
from pgreen.greens.direct import free_space_green, free_space_terms
from pgreen.greens.ewald import EwaldGreen, evaluate_periodic_green
from pgreen.greens.spectral import Spectral2D
from pgreen.types.lattice import Lattice, LatticeConfigurationError, Symmetry

SQUARE = np.array([[1.0, 0.0], [0.0, 1.0]])
LINE = np.array([[1.0, 0.0]])

# parity of each slot under x -> -x and z -> -z
X_PARITY = np.array([1, -1, 1, 1, -1, -1, 1, -1])
Z_PARITY = np.array([1, 1, 1, -1, 1, -1, -1, -1])


def _assert_close(actual, expected, rtol):
    npt.assert_allclose(actual, expected, rtol=rtol, atol=rtol * np.max(np.abs(expected)))


def _direct_sum(point, k, bloch_vector, basis, extent):
    """Brute force sum of the free-space Green's function over a block of cells."""
    indices = np.array(list(product(range(-extent, extent + 1), repeat=basis.shape[0])))
    lattice_points = indices @ basis
    displacements = np.zeros((lattice_points.shape[0], 3))
    displacements[:, :2] = point[:2] - lattice_points
    displacements[:, 2] = point[2]
    phases = np.exp(1j * lattice_points @ bloch_vector)
    return free_space_terms(displacements, phases, np.complex128(k)).sum(axis=0)


def test_zero_wavenumber_returns_zeros():
    values = evaluate_periodic_green([0.1, 0.2, 0.3], 0.0, [0.0, 0.0], SQUARE)
    npt.assert_array_equal(values, np.zeros(8))


def test_zero_wavenumber_skips_reciprocal_basis():
    # a degenerate cell only fails once the reciprocal basis is needed
    degenerate = [[1.0, 0.0], [2.0, 0.0]]
    values = evaluate_periodic_green([0.1, 0.2, 0.3], 0.0, [0.0, 0.0], degenerate)
    npt.assert_array_equal(values, np.zeros(8))

    with pytest.raises(LatticeConfigurationError):
        evaluate_periodic_green([0.1, 0.2, 0.3], 1.0, [0.0, 0.0], degenerate)


@pytest.mark.parametrize("k", [1.0j, 2.0j])
def test_unsplit_sum_equals_direct_lattice_sum(k):
    point = np.array([0.3, 0.2, 0.4])
    bloch_vector = np.array([0.4, -0.2])

    result = EwaldGreen(Lattice.from_basis(SQUARE), splitting_parameter=0.0).evaluate(
        point, k, bloch_vector
    )

    npt.assert_array_equal(result.distant.values, np.zeros(8))
    assert result.nearby.converged
    _assert_close(result.values, _direct_sum(point, k, bloch_vector, SQUARE, 40), 1e-7)


@pytest.mark.parametrize("k", [1.0j, 2.0j])
def test_evanescent_wavenumber_matches_direct_sum(k):
    point = np.array([0.3, 0.2, 0.4])
    values = evaluate_periodic_green(point, k, [0.0, 0.0], SQUARE)

    _assert_close(values, _direct_sum(point, k, np.zeros(2), SQUARE, 40), 1e-6)
    # with zero Bloch vector and imaginary k every image is real
    assert np.all(np.abs(values.imag) <= 1e-8 * np.abs(values.real) + 1e-12)


def test_near_electrostatic_square_lattice():
    values = evaluate_periodic_green([0.1, 0.1, 0.5], 1.0j, [0.0, 0.0], SQUARE)

    assert np.all(np.isfinite(values))
    assert np.abs(values[0].imag) < 1e-6 * np.abs(values[0].real)


def test_linear_lattice_at_diffraction_threshold_far_from_line():
    # k = 2pi with P = 0 makes the m = +-1 orders singular
    result = EwaldGreen(Lattice(Symmetry.Linear, [1.0])).evaluate(
        [0.0, 0.0, 3.0], 2.0 * np.pi, [0.0]
    )

    assert result.retried
    assert np.all(np.isfinite(result.values))


def test_planar_result_is_independent_of_splitting():
    point = np.array([0.3, 0.2, 0.1])
    k = 2.0 * np.pi * 0.3
    bloch_vector = np.array([0.5, 0.2])

    reference = evaluate_periodic_green(point, k, bloch_vector, SQUARE)
    for eta in (1.5, 2.5, 3.5):
        result = EwaldGreen(Lattice.from_basis(SQUARE), splitting_parameter=eta).evaluate(
            point, k, bloch_vector
        )
        assert result.nearby.converged
        assert result.distant.converged
        assert not result.retried
        _assert_close(result.values, reference, 1e-6)


def test_oblique_result_is_independent_of_splitting():
    basis = np.array([[1.0, 0.0], [0.4, 0.9]])
    point = np.array([0.25, -0.1, 0.3])
    k = 2.0 * np.pi * 0.25
    bloch_vector = np.array([0.3, 0.6])

    values = [
        evaluate_periodic_green(point, k, bloch_vector, basis, splitting_parameter=eta)
        for eta in (1.2, 2.0, 3.0)
    ]
    _assert_close(values[1], values[0], 1e-6)
    _assert_close(values[2], values[0], 1e-6)


@pytest.mark.parametrize("point", [[0.2, 0.3, 0.25], [0.1, 1.5, 2.0]])
def test_linear_result_is_independent_of_splitting(point):
    point = np.array(point)
    k = 2.0 * np.pi * 0.3
    bloch_vector = np.array([0.4, 0.0])

    # the far point takes the Bessel branch for the larger E
    values = [
        evaluate_periodic_green(point, k, bloch_vector, LINE, splitting_parameter=eta)
        for eta in (1.0, 2.0, 3.0)
    ]
    _assert_close(values[1], values[0], 1e-6)
    _assert_close(values[2], values[0], 1e-6)


def test_reflection_symmetry():
    k = 2.0 * np.pi * 0.3
    # P along y keeps the lattice phases symmetric under x -> -x
    bloch_vector = np.array([0.0, 0.3])
    point = np.array([0.3, 0.2, 0.4])

    values = evaluate_periodic_green(point, k, bloch_vector, SQUARE)
    mirrored_x = evaluate_periodic_green(point * [-1, 1, 1], k, bloch_vector, SQUARE)
    mirrored_z = evaluate_periodic_green(point * [1, 1, -1], k, bloch_vector, SQUARE)

    _assert_close(mirrored_x, X_PARITY * values, 1e-7)
    _assert_close(mirrored_z, Z_PARITY * values, 1e-7)


def _finite_difference_check(green, point, k, bloch_vector, rtol):
    step = 1e-4

    def partial(slot, axis):
        shift = np.zeros(3)
        shift[axis] = step
        return (
            green(point + shift, k, bloch_vector)[slot]
            - green(point - shift, k, bloch_vector)[slot]
        ) / (2.0 * step)

    values = green(point, k, bloch_vector)
    expected = np.array([
        partial(0, 0),
        partial(0, 1),
        partial(0, 2),
        partial(1, 1),
        partial(1, 2),
        partial(2, 2),
        partial(4, 2),
    ])
    _assert_close(values[1:], expected, rtol)


def test_planar_derivatives_match_finite_differences():
    green = EwaldGreen(
        Lattice.from_basis(SQUARE),
        splitting_parameter=2.0,
        convergence=Convergence(relative_tolerance=1e-12, max_shells=200),
    )
    _finite_difference_check(
        green, np.array([0.23, 0.17, 0.31]), 2.0 * np.pi * 0.3, np.array([0.4, 0.1]), 1e-5
    )


def test_linear_derivatives_match_finite_differences():
    green = EwaldGreen(
        Lattice(Symmetry.Linear, [1.0]),
        splitting_parameter=1.5,
        convergence=Convergence(relative_tolerance=1e-12, max_shells=200),
    )
    _finite_difference_check(
        green, np.array([0.2, 0.35, 0.25]), 2.0 * np.pi * 0.3, np.array([0.4, 0.0]), 1e-4
    )


def test_planar_singular_configuration_is_retried():
    # |P - G| = k for G = (+-2pi, 0) and (0, +-2pi)
    point = np.array([0.2, 0.3, 0.1])
    k = 2.0 * np.pi
    green = EwaldGreen(Lattice.from_basis(SQUARE))

    result = green.evaluate(point, k, [0.0, 0.0])

    assert result.retried
    assert not result.distant.singular
    assert np.all(np.isfinite(result.values))
    npt.assert_allclose(result.bloch_vector, [1e-2 * k, 0.0])

    shifted = green.evaluate(point, k, result.bloch_vector)
    assert not shifted.retried
    npt.assert_allclose(result.values, shifted.values, rtol=1e-12)


def test_linear_singular_configuration_is_retried():
    point = np.array([0.2, 0.3, 0.1])
    k = 2.0 * np.pi

    result = EwaldGreen(Lattice(Symmetry.Linear, [1.0])).evaluate(point, k, [0.0])

    assert result.retried
    assert np.all(np.isfinite(result.values))


def test_linear_real_wavenumber_is_lossless_limit():
    # only the m = 0 order propagates, on the series side of the crossover
    point = np.array([0.0, 0.0, 3.0])
    k = 4.398

    values = evaluate_periodic_green(point, k, [0.0], LINE, splitting_parameter=1.0)
    lossy = evaluate_periodic_green(point, k + 1.0e-7j, [0.0], LINE, splitting_parameter=1.0)

    _assert_close(values, lossy, 1e-5)
    assert values[0].imag > 0.0


def test_persistent_singularity_returns_partial_sum(monkeypatch, package_log):
    shifts = []

    def always_singular(self, indices):
        shifts.append(self.bloch_vector.copy())
        return np.zeros(8, dtype=np.complex128), True

    monkeypatch.setattr(Spectral2D, "shell", always_singular)
    k = 2.0 * np.pi * 0.3
    result = EwaldGreen(Lattice.from_basis(SQUARE), splitting_parameter=2.0).evaluate(
        [0.3, 0.2, 0.1], k, [0.5, 0.2]
    )

    assert result.retried
    assert result.distant.singular
    assert len(shifts) == 2
    npt.assert_allclose(shifts[1], shifts[0] + [1e-2 * k, 0.0])
    npt.assert_allclose(result.bloch_vector, shifts[1])
    assert np.all(np.isfinite(result.values))
    npt.assert_array_equal(result.values, result.nearby.values)
    assert any(
        record.levelname == "WARNING" and "still singular" in record.getMessage()
        for record in package_log.records
    )


def test_linear_far_point_is_free_space_line_transform():
    # rho E = 6, beyond the crossover to the Bessel form
    point = np.array([0.0, 0.0, 3.0])
    k = 2.0 * np.pi * 0.7
    eta = 2.0

    result = EwaldGreen(Lattice(Symmetry.Linear, [1.0]), splitting_parameter=eta).evaluate(
        point, k, [0.0]
    )
    assert np.all(np.abs(result.nearby.values) < 1e-8 * np.abs(result.values[0]))

    value = 0.0
    slope = 0.0
    for m in range(-10, 11):
        kx = -2.0 * np.pi * m
        kt = np.sqrt(complex(kx**2 - k**2, -0.0))
        value += sp.kv(0, kt * 3.0) / (2.0 * np.pi)
        slope += -kt * sp.kv(1, kt * 3.0) / (2.0 * np.pi)

    npt.assert_allclose(result.values[0], value, rtol=1e-8)
    npt.assert_allclose(result.values[3], slope, rtol=1e-8)
    # the observation point lies in the xz plane through the line
    npt.assert_allclose(result.values[[2, 4, 6, 7]], 0.0, atol=1e-12)

    series = evaluate_periodic_green(point, k, [0.0], LINE, splitting_parameter=1.0)
    _assert_close(series, result.values, 1e-6)


@pytest.mark.parametrize("point", [[0.3, 0.2, 0.4], [0.01, 0.0, 0.02]])
def test_inner_cell_exclusion(point):
    point = np.array(point)
    k = 2.0 * np.pi * 0.3
    bloch_vector = np.array([0.4, 0.1])
    lattice = Lattice.from_basis(SQUARE)

    full = EwaldGreen(lattice).evaluate(point, k, bloch_vector).values
    excluded = EwaldGreen(lattice, exclude_inner_cells=True).evaluate(point, k, bloch_vector)

    inner = np.zeros(8, dtype=np.complex128)
    for n1, n2 in product(range(-1, 2), repeat=2):
        lattice_point = np.array([n1, n2]) @ SQUARE
        displacement = point - np.array([*lattice_point, 0.0])
        inner += np.exp(1j * lattice_point @ bloch_vector) * free_space_green(displacement, k)

    assert np.any(excluded.inner_correction != 0.0)
    slots = [0, 1, 3]
    npt.assert_allclose(excluded.values[slots] + inner[slots], full[slots], rtol=1e-6, atol=1e-6)


def test_inner_cell_exclusion_without_splitting():
    point = np.array([0.3, 0.2, 0.4])
    k = 1.0j
    lattice = Lattice.from_basis(SQUARE)

    excluded = EwaldGreen(lattice, splitting_parameter=0.0, exclude_inner_cells=True)(
        point, k, [0.0, 0.0]
    )
    expected = _direct_sum(point, k, np.zeros(2), SQUARE, 40) - _direct_sum(
        point, k, np.zeros(2), SQUARE, 1
    )
    _assert_close(excluded, expected, 1e-7)


def test_first_dimension_of_a_planar_basis():
    point = np.array([0.2, 0.3, 0.25])
    k = 2.0 * np.pi * 0.3

    npt.assert_allclose(
        evaluate_periodic_green(point, k, [0.4, 0.0], SQUARE, lattice_dim=1),
        evaluate_periodic_green(point, k, [0.4, 0.0], LINE),
    )


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(splitting_parameter=-2.0),
        dict(lattice_dim=3),
        dict(lattice_basis=[[1.0, 0.0], [2.0, 0.0]]),
        dict(lattice_basis=[[0.0, 1.0]]),
        dict(observation_point=[0.1, 0.2]),
        dict(bloch_vector=[0.0, 0.0, 0.0]),
    ],
)
def test_configuration_errors(kwargs):
    arguments = dict(
        observation_point=[0.1, 0.2, 0.3],
        wavenumber=1.0,
        bloch_vector=[0.0, 0.0],
        lattice_basis=SQUARE,
    )
    arguments.update(kwargs)

    with pytest.raises(LatticeConfigurationError):
        evaluate_periodic_green(**arguments)
