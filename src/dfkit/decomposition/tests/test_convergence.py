import numpy as np
import pytest

from dfkit import base
from dfkit.decomposition import convergence, decompositions


@pytest.fixture
def random_ktensor():
    return decompositions.KruskalTensor.random_init((4, 5, 6), 3, rng=np.random.default_rng(0))


class TestNormCheck:
    def test_first_evaluation_is_not_converged(self, random_ktensor):
        norm_check = convergence.NormCheck()

        assert not norm_check.evaluate(random_ktensor)
        assert norm_check.last_change == np.inf

    def test_unchanged_factors_are_converged(self, random_ktensor):
        norm_check = convergence.NormCheck()
        norm_check(random_ktensor)

        assert norm_check(random_ktensor)
        assert norm_check.last_change == 0

    def test_change_is_summed_over_modes(self, random_ktensor):
        norm_check = convergence.NormCheck(tol=1e-3)
        norm_check(random_ktensor)

        for factor_matrix in random_ktensor.factor_matrices:
            factor_matrix[0, 0] += 1
        assert not norm_check(random_ktensor)
        assert np.isclose(norm_check.last_change, 3)

    def test_stored_factors_are_copies(self, random_ktensor):
        norm_check = convergence.NormCheck()
        norm_check(random_ktensor)

        random_ktensor.factor_matrices[0][...] += 1
        assert not norm_check(random_ktensor)

    def test_rank_change_resets(self, random_ktensor):
        norm_check = convergence.NormCheck()
        norm_check(random_ktensor)

        larger_ktensor = decompositions.KruskalTensor(
            [np.hstack([fm, fm[:, :1]]) for fm in random_ktensor.factor_matrices]
        )
        assert not norm_check(larger_ktensor)
        assert norm_check(larger_ktensor)

    def test_side_channel(self):
        assert convergence.NormCheck().side_channel is convergence.SideChannel.NONE


class TestFitCheck:
    def test_needs_norm_and_mttkrp(self, random_ktensor):
        fit_check = convergence.FitCheck()
        with pytest.raises(base.NotReadyError):
            fit_check.evaluate(random_ktensor)

        fit_check.set_norm(1.0)
        with pytest.raises(base.NotReadyError):
            fit_check.evaluate(random_ktensor)

    def test_exact_model_has_unit_fit(self, random_ktensor):
        X = random_ktensor.construct_tensor()
        fit_check = convergence.FitCheck(norm=np.linalg.norm(X))

        mode = 2
        factor_matrices = random_ktensor.factor_matrices
        mttkrp = base.matrix_khatri_rao_product(X, factor_matrices, mode)
        fit_check.set_mttkrp(mode, mttkrp)

        assert not fit_check.evaluate(random_ktensor)
        assert abs(fit_check.fit - 1) < 1e-6
        assert fit_check.evaluate(random_ktensor)

    def test_fit_of_inexact_model(self, random_ktensor):
        rng = np.random.default_rng(1)
        X = random_ktensor.construct_tensor() + 0.1*rng.standard_normal((4, 5, 6))
        fit_check = convergence.FitCheck(norm=np.linalg.norm(X))

        mode = 0
        fit_check.set_mttkrp(mode, base.matrix_khatri_rao_product(X, random_ktensor.factor_matrices, mode))
        fit_check.evaluate(random_ktensor)

        residual = np.linalg.norm(X - random_ktensor.construct_tensor())
        assert np.isclose(fit_check.fit, 1 - residual/np.linalg.norm(X))

    def test_reset(self, random_ktensor):
        fit_check = convergence.FitCheck(norm=1.0)
        fit_check.set_mttkrp(0, np.zeros((4, 3)))
        fit_check.evaluate(random_ktensor)
        fit_check.reset()

        assert fit_check.fit is None
        assert fit_check.last_change == np.inf

    def test_side_channel(self):
        assert convergence.FitCheck().side_channel is convergence.SideChannel.MTTKRP
