import numpy as np
import pytest

from dfkit import metrics, utils


class TestFactorMatchScore:
    @pytest.fixture
    def random_factors(self):
        rng = np.random.default_rng(0)
        return [rng.standard_normal((size, 3)) for size in (5, 6, 7)]

    def test_identical_factors_have_score_one(self, random_factors):
        fms, permutation = metrics.factor_match_score(random_factors, random_factors)

        assert abs(fms - 1) < 1e-10
        assert permutation == (0, 1, 2)

    def test_permutation_is_recovered(self, random_factors):
        permuted = utils.permute_factors([2, 0, 1], random_factors)
        fms, permutation = metrics.factor_match_score(random_factors, permuted)

        assert abs(fms - 1) < 1e-10
        assert permutation == (1, 2, 0)

    def test_sign_flips_are_ignored(self, random_factors):
        flipped = [-random_factors[0], -random_factors[1], random_factors[2]]
        fms, _ = metrics.factor_match_score(random_factors, flipped)

        assert abs(fms - 1) < 1e-10

    def test_invalid_reduction(self, random_factors):
        with pytest.raises(ValueError):
            metrics.factor_match_score(random_factors, random_factors, fms_reduction='max')


def test_percent_explained():
    tensor = np.ones((2, 2))

    assert metrics.percent_explained(tensor, tensor) == 1
    assert np.isclose(metrics.percent_explained(tensor, np.zeros((2, 2))), 0)
