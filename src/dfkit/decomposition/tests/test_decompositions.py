import tempfile

import numpy as np
import pytest

from dfkit.decomposition import decompositions


class TestKruskalTensor:
    @pytest.fixture
    def random_3mode_ktensor(self):
        rng = np.random.default_rng(0)
        A = rng.standard_normal((6, 4))
        B = rng.standard_normal((7, 4))
        C = rng.standard_normal((8, 4))

        return decompositions.KruskalTensor([A, B, C], weights=rng.uniform(1, 2, 4))

    def test_load_tensor_loads_stored_tensor(self, random_3mode_ktensor):
        with tempfile.TemporaryDirectory() as tmpdir:
            filename = f'{tmpdir}/storedfactors.h5'
            random_3mode_ktensor.store(filename)

            loaded_tensor = decompositions.KruskalTensor.from_file(filename)

        assert np.allclose(loaded_tensor.weights, random_3mode_ktensor.weights)
        assert loaded_tensor.weights.shape == random_3mode_ktensor.weights.shape

        for fm, lfm in zip(random_3mode_ktensor.factor_matrices, loaded_tensor.factor_matrices):
            assert np.allclose(fm, lfm)

    def test_all_factor_matrices_must_have_same_size(self):
        A = np.ones((3, 5))
        B = np.ones((4, 5))
        C = np.ones((5, 6))

        with pytest.raises(ValueError):
            decompositions.KruskalTensor([A, B, C])

    def test_weights_must_match_rank(self):
        with pytest.raises(ValueError):
            decompositions.KruskalTensor([np.ones((3, 2)), np.ones((4, 2))], weights=[1, 2, 3])

    def test_correct_size_of_tensor(self, random_3mode_ktensor):
        assert random_3mode_ktensor.construct_tensor().shape == (6, 7, 8)

    def test_tensor_is_constructed_correctly(self, random_3mode_ktensor):
        tensor = random_3mode_ktensor.construct_tensor()
        A, B, C = random_3mode_ktensor.factor_matrices
        weights = random_3mode_ktensor.weights

        assert np.allclose(tensor, np.einsum('r,ir,jr,kr->ijk', weights, A, B, C))

    def test_normalize_ktensor_doesnt_change_constructed_tensor(self, random_3mode_ktensor):
        unnormalized_tensor = random_3mode_ktensor.construct_tensor().copy()
        random_3mode_ktensor.normalize_components()
        assert np.allclose(unnormalized_tensor, random_3mode_ktensor.construct_tensor())

    def test_normalize_ktensor_normalizes_ktensor(self, random_3mode_ktensor):
        random_3mode_ktensor.normalize_components()
        units = np.ones(random_3mode_ktensor.rank)

        for factor_matrix in random_3mode_ktensor.factor_matrices:
            assert np.allclose(np.linalg.norm(factor_matrix, axis=0), units)

    def test_random_init_has_unit_components(self):
        ktensor = decompositions.KruskalTensor.random_init((3, 4, 5), 2, rng=np.random.default_rng(1))

        assert ktensor.shape == [3, 4, 5]
        assert np.allclose(ktensor.weights, 1)
        for factor_matrix in ktensor:
            assert np.allclose(np.linalg.norm(factor_matrix, axis=0), 1)

    def test_factor_match_score_with_itself(self, random_3mode_ktensor):
        fms, _ = random_3mode_ktensor.factor_match_score(random_3mode_ktensor)
        assert abs(fms - 1) < 1e-10
