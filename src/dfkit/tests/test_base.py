from functools import partial

import numpy as np
import pytest

from dfkit import base, utils


class TestRightsolve:
    random = partial(np.random.uniform, 0, 1)

    def rightsolve(self, *args, **kwargs):
        return base.rightsolve(*args, **kwargs)

    @pytest.fixture
    def A(self):
        return np.array(
            [
                [2, 1, 0],
                [1, 0, 1]
            ]
        )

    @pytest.fixture
    def A_orthogonal_component(self):
        return np.array(
            [[1, -2, -1]]
        )

    def test_solvable_system_matrix(self):
        A = self.random((2, 3))
        X = self.random((1, 2))
        B = X@A

        assert np.allclose(self.rightsolve(A, B), X)

    def test_least_squares_matrix(self, A, A_orthogonal_component):
        X = np.array(
            [
                [1, 1],
                [1, 2]
            ]
        )
        B = X@A + 0.5*A_orthogonal_component

        assert np.allclose(self.rightsolve(A, B), X)


class TestPseudoInverse:
    def test_inverts_nonsingular_matrix(self):
        rng = np.random.default_rng(0)
        A = rng.standard_normal((5, 5))
        V = A.T @ A + np.identity(5)

        assert np.allclose(base.pseudo_inverse(V) @ V, np.identity(5))

    def test_small_singular_values_are_not_inverted(self):
        V = np.diag([2.0, 1e-14, 0.0])
        V_inv = base.pseudo_inverse(V)

        assert np.allclose(np.diag(V_inv), [0.5, 1e-14, 0.0])
        assert np.all(np.isfinite(V_inv))

    @pytest.mark.parametrize('shape', [(2, 3), (3, 2)])
    def test_non_square_matrix(self, shape):
        rng = np.random.default_rng(1)
        V = rng.standard_normal(shape)
        V_inv = base.pseudo_inverse(V)

        assert V_inv.shape == shape[::-1]
        assert np.allclose(V_inv, np.linalg.pinv(V))

    def test_custom_threshold(self):
        V = np.diag([4.0, 1e-3])
        V_inv = base.pseudo_inverse(V, threshold=1e-2)

        assert np.allclose(np.diag(V_inv), [0.25, 1e-3])

    def test_svd_failure_is_computation_failure(self):
        V = np.array([[1.0, np.nan], [np.nan, 1.0]])

        with pytest.raises(base.ComputationFailureError):
            base.pseudo_inverse(V)


class TestNormalEquationsSolve:
    def test_direct_solve_is_used_for_well_conditioned_system(self):
        rng = np.random.default_rng(1)
        A = rng.standard_normal((10, 4))
        V = A.T @ A
        X = rng.standard_normal((6, 4))

        solution, used_direct = base.normal_equations_solve(V, X @ V)
        assert used_direct
        assert np.allclose(solution, X)

    def test_singular_system_uses_pseudo_inverse(self):
        v = np.array([[1.0, 2.0, 3.0]])
        V = v.T @ v
        B = np.ones((4, 3))

        solution, used_direct = base.normal_equations_solve(V, B)
        assert not used_direct
        assert np.all(np.isfinite(solution))
        assert np.allclose(solution, B @ base.pseudo_inverse(V))

    def test_fast_solve_off_skips_direct_solve(self):
        V = np.identity(3)
        B = np.arange(6, dtype=float).reshape(2, 3)

        solution, used_direct = base.normal_equations_solve(V, B, fast_solve=False)
        assert not used_direct
        assert np.allclose(solution, B)


def test_normal_equations_lhs_skips_mode():
    rng = np.random.default_rng(2)
    factor_matrices = [rng.standard_normal((size, 3)) for size in (4, 5, 6)]
    A, B, C = factor_matrices

    V = base.normal_equations_lhs(factor_matrices, 1)
    assert np.allclose(V, (A.T @ A) * (C.T @ C))


class TestKhatriRao:
    def test_khatri_rao_binary_columns_are_kronecker_products(self):
        rng = np.random.default_rng(3)
        A = rng.standard_normal((3, 2))
        B = rng.standard_normal((4, 2))

        product = base.khatri_rao_binary(A, B)
        for r in range(2):
            assert np.allclose(product[:, r], np.kron(A[:, r], B[:, r]))

    def test_skip_removes_factor(self):
        rng = np.random.default_rng(4)
        A, B, C = [rng.standard_normal((size, 2)) for size in (3, 4, 5)]

        assert np.allclose(base.khatri_rao(A, B, C, skip=1), base.khatri_rao(A, C))

    def test_matches_unfolding_of_kruskal_tensor(self):
        rng = np.random.default_rng(5)
        A, B, C = [rng.standard_normal((size, 2)) for size in (3, 4, 5)]
        tensor = np.einsum('ir,jr,kr->ijk', A, B, C)

        assert np.allclose(base.unfold(tensor, 0), A @ base.khatri_rao(B, C).T)


def test_fold_is_inverse_of_unfold():
    tensor = np.arange(60).reshape(3, 4, 5)
    for mode in range(3):
        assert np.array_equal(base.fold(base.unfold(tensor, mode), mode, tensor.shape), tensor)


class TestReferencePair:
    @pytest.fixture
    def reference_pair(self):
        rng = np.random.default_rng(6)
        left = rng.standard_normal((7, 3, 4))
        right = rng.standard_normal((7, 5))
        return left, right

    def test_contraction_sums_over_connecting_dimension(self, reference_pair):
        left, right = reference_pair
        tensor = base.contract_reference_pair(left, right)

        assert tensor.shape == (3, 4, 5)
        assert np.allclose(tensor, np.einsum('xij,xk->ijk', left, right))

    def test_reference_norm_equals_dense_norm(self, reference_pair):
        left, right = reference_pair
        tensor = base.contract_reference_pair(left, right)

        assert np.isclose(base.reference_norm(left, right), np.linalg.norm(tensor))

    def test_mismatched_connecting_dimension_raises(self):
        with pytest.raises(base.InvalidArgumentError):
            base.contract_reference_pair(np.ones((3, 2)), np.ones((4, 2)))

    def test_contracted_pair_is_kruskal_tensor(self):
        rng = np.random.default_rng(7)
        left, right, factors, weights = utils.create_reference_pair((3, 4, 5), 2, 1, rng=rng)
        tensor = base.contract_reference_pair(left, right)

        A, B, C = factors
        assert np.allclose(tensor, np.einsum('r,ir,jr,kr->ijk', weights, A, B, C))
