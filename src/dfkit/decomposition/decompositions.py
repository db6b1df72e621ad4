from abc import ABC, abstractclassmethod, abstractmethod

import h5py
import numpy as np

from .. import base, metrics

__all__ = ['KruskalTensor']


class BaseDecomposedTensor(ABC):
    @abstractmethod
    def __init__(self):
        raise NotImplementedError

    @abstractmethod
    def construct_tensor(self):
        raise NotImplementedError

    @abstractmethod
    def __getitem__(self, item):
        raise NotImplementedError

    def store(self, filename):
        with h5py.File(filename, 'w') as h5:
            self.store_in_hdf5_group(h5)

    @abstractmethod
    def store_in_hdf5_group(self, group):
        raise NotImplementedError

    def _prepare_hdf5_group(self, group):
        group.attrs['type'] = type(self).__name__

    @classmethod
    def from_file(cls, filename):
        with h5py.File(filename, 'r') as h5:
            return cls.load_from_hdf5_group(h5)

    @abstractclassmethod
    def load_from_hdf5_group(cls, group):
        raise NotImplementedError

    @classmethod
    def _check_hdf5_group(cls, group):
        if not group.attrs['type'] == cls.__name__:
            raise Warning(f'The `type` attribute of the HDF5 group is not'
                          f' "{cls.__name__}, but "{group.attrs["type"]}"\n.'
                          'This might mean that you\'re loading the wrong tensor file')


class KruskalTensor(BaseDecomposedTensor):
    r"""Container class for Kruskal tensors, the output of a CP decomposition.

    A Kruskal tensor describes a tensor :math:`\mathcal{X}` as a weighted sum
    of rank one components,

    .. math::

        \mathcal{X} = \sum_{r=1}^R w_r \mathbf{u}^{(0)}_r \circ \cdots \circ \mathbf{u}^{(N-1)}_r,

    where :math:`R` is the rank, :math:`w_r` is the rth weight and
    :math:`\mathbf{u}^{(i)}_r` is the rth column of the ith factor matrix.
    The decomposition engines keep the columns at unit length, so the weights
    carry the scale of each component.

    Arguments:
    ----------
    factor_matrices: list(np.ndarray)
        A list of :math:`N` factor matrices, where :math:`N`
        is the number of modes in the decomposed tensor.
        Each factor matrix, :math:`U_i` has size :math:`(l_i \times R)`,
        where :math:`l_i` is the length of the tensor along the `i-th`
        mode and :math:`R` is the rank of the decomposition.
    weights: np.ndarray (optional, default=None)
        A list of :math:`R` weights. If None, the weights are all 1.
    """
    fm_template = 'factor_matrix{:03d}'

    def __init__(self, factor_matrices, weights=None):
        self.rank = factor_matrices[0].shape[1]

        for i, factor_matrix in enumerate(factor_matrices):
            if factor_matrix.shape[1] != self.rank:
                raise ValueError(
                    f'All factor matrices must have the same number of columns. \n'
                    f'The first factor matrix has {self.rank} columns, whereas the {i}-th '
                    f'has {factor_matrix.shape[1]} columns.'
                )

        self.factor_matrices = factor_matrices
        if weights is None:
            weights = np.ones(self.rank)
        elif len(weights) != self.rank:
            raise ValueError(
                f'There must be as many weights as there are columns in the factor matrices.'
                f'The factor matrices has {self.rank} columns, but there are {len(weights)} weights.'
            )
        self.weights = np.asarray(weights, dtype=float)

    @property
    def shape(self):
        return [fm.shape[0] for fm in self.factor_matrices]

    def construct_tensor(self):
        tensor = (self.weights[np.newaxis] * self.factor_matrices[0]) @ base.khatri_rao(*self.factor_matrices[1:]).T
        return base.fold(tensor, 0, shape=self.shape)

    def normalize_components(self, update_weights=True, eps=1e-15):
        """Set all factor matrices to unit length. Updates the weights if `update_weights` is True.
        """
        for i, factor_matrix in enumerate(self.factor_matrices):
            norms = np.linalg.norm(factor_matrix, axis=0)
            self.factor_matrices[i][...] = factor_matrix/(norms[np.newaxis] + eps)
            if update_weights:
                self.weights *= norms

        return self

    @classmethod
    def random_init(cls, sizes, rank, rng=None):
        """Construct a random Kruskal tensor with unit vectors as components and unit weights.
        """
        if rng is None:
            rng = np.random.default_rng()
        factor_matrices = [rng.standard_normal((size, rank)) for size in sizes]
        return cls(factor_matrices).normalize_components(update_weights=False)

    def store_in_hdf5_group(self, group):
        self._prepare_hdf5_group(group)

        group.attrs['n_factor_matrices'] = len(self.factor_matrices)
        group.attrs['rank'] = self.rank

        for i, factor_matrix in enumerate(self.factor_matrices):
            group[self.fm_template.format(i)] = factor_matrix

        group['weights'] = self.weights

    @classmethod
    def load_from_hdf5_group(cls, group):
        cls._check_hdf5_group(group)

        factor_matrices = [
            group[cls.fm_template.format(i)][...]
                for i in range(group.attrs['n_factor_matrices'])
        ]
        weights = group['weights'][...]

        return cls(factor_matrices, weights)

    def __getitem__(self, item):
        return self.factor_matrices[item]

    def __len__(self):
        return len(self.factor_matrices)

    def factor_match_score(self, decomposition, weight_penalty=True, fms_reduction='min'):
        assert decomposition.rank == self.rank

        return metrics.factor_match_score(self.factor_matrices,
                                          decomposition.factor_matrices,
                                          weight_penalty=weight_penalty,
                                          fms_reduction=fms_reduction)
