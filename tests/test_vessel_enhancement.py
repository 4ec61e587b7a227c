"""Tests for Hessian vesselness, the divergence filter and gap bridging."""

import numpy as np
import pytest

from mito_segmentation.config import ScaleRange
from mito_segmentation.vessel_enhancement import (FrobeniusBlockTable, apply_global_noise_floor,
                                                  apply_region_noise_floor, clear_boundaries, compute_hessian,
                                                  connectivity_sigma, discrete_derivative, divergence_filter,
                                                  enhance_structural_connectivity, gaussian_smooth,
                                                  hessian_eigenvalues, multiscale_vesselness, vesselness_score)


def _blob(size=15, sigma=2.0):
    """Isotropic Gaussian blob centred in a cube."""
    c = size // 2
    z, y, x = np.mgrid[:size, :size, :size]
    return np.exp(-((x - c) ** 2 + (y - c) ** 2 + (z - c) ** 2) / (2 * sigma ** 2))


def _hessian(dxx, dyy, dzz, dxy=0.0, dxz=0.0, dyz=0.0):
    """Single-voxel Hessian dictionary."""
    values = dict(dxx=dxx, dyy=dyy, dzz=dzz, dxy=dxy, dxz=dxz, dyz=dyz)
    return {k: np.full((1, 1, 1), v, dtype=float) for k, v in values.items()}


class TestDerivatives:
    """Tests for smoothing and finite differences."""

    def test_smoothing_preserves_constant(self):
        """A constant field is a fixed point of the Gaussian."""
        field = np.full((5, 6, 7), 3.0)
        np.testing.assert_allclose(gaussian_smooth(field, 1.5), field)

    def test_derivative_of_ramp(self):
        """Central differences inside, halved one-sided differences at the edges."""
        field = np.tile(np.arange(6, dtype=float), (3, 4, 1))
        dx = discrete_derivative(field, 'x')
        np.testing.assert_allclose(dx[:, :, 1:-1], 1.0)
        np.testing.assert_allclose(dx[:, :, 0], 0.5)
        np.testing.assert_allclose(dx[:, :, -1], 0.5)
        np.testing.assert_allclose(discrete_derivative(field, 'y'), 0.0)
        np.testing.assert_allclose(discrete_derivative(field, 'z'), 0.0)

    def test_derivative_along_z(self):
        """The z axis is the first array axis."""
        field = np.zeros((5, 2, 2))
        field[:] = np.arange(5, dtype=float)[:, None, None] * 2
        np.testing.assert_allclose(discrete_derivative(field, 'z')[2], 2.0)

    def test_hessian_components(self):
        """A blob centre has negative pure second derivatives."""
        hessian = compute_hessian(_blob() * 100, 1.0)
        assert set(hessian) == {'dxx', 'dyy', 'dzz', 'dxy', 'dxz', 'dyz'}
        c = 7
        assert hessian['dxx'][c, c, c] < 0
        assert hessian['dyy'][c, c, c] < 0
        assert hessian['dzz'][c, c, c] < 0
        assert abs(hessian['dxy'][c, c, c]) < 1e-9


class TestEigenvalues:
    """Tests for the per-voxel eigen decomposition."""

    def test_sorted_by_magnitude(self):
        """Eigenvalues come out with |l1| <= |l2| <= |l3|."""
        l1, l2, l3, frob = hessian_eigenvalues(_hessian(-3.0, -1.0, 0.5))
        assert l1[0, 0, 0] == pytest.approx(0.5)
        assert l2[0, 0, 0] == pytest.approx(-1.0)
        assert l3[0, 0, 0] == pytest.approx(-3.0)
        assert frob[0, 0, 0] == pytest.approx(np.sqrt(9 + 1 + 0.25))

    def test_positive_trace_is_skipped(self):
        """Voxels with a non-negative trace get zero eigenvalues."""
        l1, l2, l3, frob = hessian_eigenvalues(_hessian(3.0, -1.0, 0.5))
        assert l1[0, 0, 0] == l2[0, 0, 0] == l3[0, 0, 0] == 0.0
        assert frob[0, 0, 0] > 0

    def test_off_diagonal_terms(self):
        """Mixed terms enter the decomposition and the norm twice."""
        l1, l2, l3, frob = hessian_eigenvalues(_hessian(-2.0, -2.0, -1.0, dxy=1.0))
        assert sorted([l1[0, 0, 0], l2[0, 0, 0], l3[0, 0, 0]]) == pytest.approx([-3.0, -1.0, -1.0])
        assert frob[0, 0, 0] == pytest.approx(np.sqrt(4 + 4 + 1 + 2))

    def test_small_batches(self):
        """Batching does not change the result."""
        hessian = compute_hessian(_blob() * 100, 1.0)
        full = hessian_eigenvalues(hessian)
        batched = hessian_eigenvalues(hessian, batch_size=7)
        for a, b in zip(full, batched):
            np.testing.assert_allclose(a, b)


class TestNoiseFloor:
    """Tests for the global and region-adaptive Frobenius floors."""

    def test_global_floor(self):
        """Values strictly below sqrt(max) are zeroed."""
        frob = np.array([1.0, 4.0, 16.0]).reshape(1, 1, 3)
        ones = np.ones_like(frob)
        l1, l2, l3 = apply_global_noise_floor(ones, ones, ones, frob)
        np.testing.assert_array_equal(l1.ravel(), [0.0, 1.0, 1.0])
        np.testing.assert_array_equal(l3.ravel(), [0.0, 1.0, 1.0])

    def test_block_coordinates(self):
        """Voxels map to blocks as (n_blocks * i) // n."""
        np.testing.assert_array_equal(FrobeniusBlockTable.block_coordinates(10, 3),
                                      [0, 0, 0, 0, 1, 1, 1, 2, 2, 2])

    def test_table_index_and_bounds(self):
        """The flat index is (bx * n + by) * nz + z."""
        table = FrobeniusBlockTable(3, 4)
        assert table.index(1, 2, 3) == (1 * 3 + 2) * 4 + 3
        table.set(1, 2, 3, 5.0)
        table.update_max(1, 2, 3, 2.0)
        assert table.get(1, 2, 3) == 5.0
        table.update_max(1, 2, 3, 7.0)
        assert table.get(1, 2, 3) == 7.0
        with pytest.raises(IndexError):
            table.index(3, 0, 0)

    def test_table_from_frobenius(self):
        """Each block keeps the maximum of its voxels per plane."""
        frob = np.zeros((2, 4, 4))
        frob[0, 0, 0] = 9.0   # block (0, 0), z=0
        frob[1, 3, 3] = 16.0  # block (1, 1), z=1
        frob[1, 0, 3] = 4.0   # x=3 -> bx=1, y=0 -> by=0
        table = FrobeniusBlockTable.from_frobenius(frob, 2)
        assert table.get(0, 0, 0) == 9.0
        assert table.get(1, 1, 1) == 16.0
        assert table.get(1, 0, 1) == 4.0
        assert table.get(0, 1, 0) == 0.0
        thresholds = table.threshold_field(frob.shape)
        assert thresholds.shape == frob.shape
        assert thresholds[1, 3, 3] == pytest.approx(4.0)

    def test_region_floor_rejects_isolated_spike(self):
        """A spike passes its own test but fails the neighbour mean."""
        frob = np.zeros((5, 5, 5))
        frob[2, 2, 2] = 100.0
        ones = np.ones_like(frob)
        l1, _, _ = apply_region_noise_floor(ones, ones, ones, frob, n_blocks=1)
        assert l1[2, 2, 2] == 0.0
        assert np.all(l1[2] == 0.0)

    def test_region_floor_keeps_uniform_structure(self):
        """Interior voxels of a uniform region survive."""
        frob = np.full((5, 5, 5), 4.0)
        ones = np.ones_like(frob)
        l1, _, _ = apply_region_noise_floor(ones, ones, ones, frob, n_blocks=2)
        assert l1[2, 2, 2] == 1.0
        # grid boundary has a zero neighbour mean
        assert l1[0, 2, 2] == 0.0


class TestVesselness:
    """Tests for the vesselness score."""

    def test_requires_negative_l2_l3(self):
        """Score is zero unless both large eigenvalues are negative."""
        score = vesselness_score(np.array([0.0, 0.0]), np.array([1.0, -1.0]), np.array([-1.0, 1.0]))
        np.testing.assert_array_equal(score, [0.0, 0.0])

    def test_ideal_tube(self):
        """A perfect tube gives the closed-form score."""
        score = vesselness_score(np.array([0.0]), np.array([-1000.0]), np.array([-1000.0]))
        expected = (1 - np.exp(-2.0)) * (1 - np.exp(-4.0))
        assert score[0] == pytest.approx(expected)

    def test_score_range(self):
        """Scores stay in [0, 1]."""
        rng = np.random.default_rng(0)
        l1, l2, l3 = rng.normal(0, 800, (3, 1000))
        score = vesselness_score(l1, l2, l3)
        assert score.min() >= 0.0
        assert score.max() <= 1.0

    def test_multiscale_on_empty_field(self):
        """A blank volume has no vesselness."""
        out = multiscale_vesselness(np.zeros((6, 6, 6)), ScaleRange(1.0, 1.5, 2))
        assert np.all(out == 0.0)

    def test_multiscale_range(self, line_array):
        """Vesselness of a tubule stays in [0, 1] and is positive somewhere."""
        for adaptive in (False, True):
            out = multiscale_vesselness(line_array.astype(float) * 100, ScaleRange(1.0, 1.5, 2),
                                        adaptive=adaptive, n_blocks=2)
            assert out.shape == line_array.shape
            assert out.min() >= 0.0
            assert out.max() <= 1.0


class TestDivergence:
    """Tests for the divergence ridge filter."""

    def test_blob_centre(self):
        """Gradients converge on the centre of a blob."""
        out = divergence_filter(_blob())
        assert out[7, 7, 7] == pytest.approx(1.0)
        assert out.min() >= 0.0
        assert out.max() <= 1.0 + 1e-12

    def test_margin_is_zero(self):
        """Voxels within stride + 1 of the boundary are not evaluated."""
        out = divergence_filter(_blob() + 1.0)
        assert np.all(out[:3] == 0.0)
        assert np.all(out[-3:] == 0.0)
        assert np.all(out[:, :, :3] == 0.0)

    def test_zero_voxels_stay_zero(self):
        """Only nonzero voxels get a response."""
        field = _blob()
        field[7, 7, 8] = 0.0
        assert divergence_filter(field)[7, 7, 8] == 0.0

    def test_small_grid(self):
        """Grids too small for the stencil give zeros."""
        assert np.all(divergence_filter(np.ones((6, 6, 6))) == 0.0)

    def test_clear_boundaries(self):
        """The outer layer is zeroed and the input untouched."""
        field = np.ones((4, 4, 4))
        out = clear_boundaries(field)
        assert out.sum() == 8
        assert out[1:3, 1:3, 1:3].min() == 1.0
        assert field.sum() == 64


class TestConnectivity:
    """Tests for the structural connectivity pass."""

    def test_sigma_choice(self):
        """Sensitive thresholds use stronger smoothing."""
        assert connectivity_sigma(0.05) == 2.0
        assert connectivity_sigma(0.1666667) == 1.5

    def test_constant_field_is_fixed(self):
        """Every blending rule preserves a constant field."""
        field = np.full((6, 6, 6), 0.5)
        np.testing.assert_allclose(enhance_structural_connectivity(field, 1.5), field)

    def test_boundary_unchanged(self):
        """The boundary layer is copied as is."""
        field = np.zeros((7, 7, 7))
        field[3, 3, 1:6] = 0.8
        field[0, 0, 0] = 0.3
        out = enhance_structural_connectivity(field, 1.0)
        assert out[0, 0, 0] == 0.3
        assert out[3, 3, 3] == pytest.approx(0.9 * 0.8 + 0.1 * gaussian_smooth(
            field, (1.0, 1.0, 0.3), truncate=1.5)[3, 3, 3])

    def test_fills_gap(self):
        """A weak voxel between strong ones is raised."""
        field = np.zeros((7, 9, 9))
        field[2:5, 3:6, 2:4] = 0.5
        field[2:5, 3:6, 5:7] = 0.5
        out = enhance_structural_connectivity(field, 1.5)
        assert out[3, 4, 4] > 0.05
