"""
Convergence tests used to stop the ALS sweeps at a fixed rank.
"""
from abc import ABC, abstractmethod
from enum import Enum

import numpy as np

from .. import base

__all__ = ['SideChannel', 'ConvergenceTest', 'NormCheck', 'FitCheck']


class SideChannel(Enum):
    """Extra data a convergence test wants from the decomposer.

    ``MTTKRP`` tests receive each freshly computed matricised tensor times
    Khatri-Rao product through ``set_mttkrp`` and the norm of the decomposed
    tensor through ``set_norm``.
    """
    NONE = 'none'
    MTTKRP = 'mttkrp'


class ConvergenceTest(ABC):
    """Base class for convergence tests.

    A convergence test is stateful: it remembers what it saw at the previous
    evaluation, so one instance should only follow one decomposition.
    """
    side_channel = SideChannel.NONE

    def __init__(self, tol):
        self.tol = tol
        self.last_change = np.inf

    @abstractmethod
    def evaluate(self, decomposition):
        """Return True if the decomposition is converged.

        Arguments
        ---------
        decomposition : dfkit.decomposition.decompositions.KruskalTensor
            The current factor matrices and weights.
        """
        pass

    @abstractmethod
    def reset(self):
        pass

    def __call__(self, decomposition):
        return self.evaluate(decomposition)


class NormCheck(ConvergenceTest):
    r"""Converged when the factor matrices stop changing.

    The change is the sum over modes of :math:`\|U_i - U_i^{prev}\|_F`. The stored
    factor matrices are discarded whenever the rank changes, so the first
    evaluation at a new rank never converges.
    """
    def __init__(self, tol=1e-10):
        super().__init__(tol)
        self.previous_factor_matrices = None

    def reset(self):
        self.previous_factor_matrices = None
        self.last_change = np.inf

    def evaluate(self, decomposition):
        factor_matrices = decomposition.factor_matrices
        previous = self.previous_factor_matrices
        self.previous_factor_matrices = [fm.copy() for fm in factor_matrices]

        if previous is None or any(p.shape != fm.shape for p, fm in zip(previous, factor_matrices)):
            self.last_change = np.inf
            return False

        self.last_change = sum(
            np.linalg.norm(fm - prev) for fm, prev in zip(factor_matrices, previous)
        )
        return self.last_change < self.tol


class FitCheck(ConvergenceTest):
    r"""Converged when the relative fit stops improving.

    The fit is

    .. math::

        1 - \frac{\|\mathcal{T} - \hat{\mathcal{T}}\|_F}{\|\mathcal{T}\|_F},

    computed without forming either tensor: the inner product
    :math:`\langle\mathcal{T}, \hat{\mathcal{T}}\rangle` comes from the last
    MTTKRP handed over by the decomposer and the norm of the model from the
    Gram matrices of the factor matrices.

    Arguments:
    ----------
    tol: float (optional, default=1e-4)
        Smallest change in fit between two sweeps that is not considered
        converged.
    norm: float (optional, default=None)
        Frobenius norm of the decomposed tensor. Set by the decomposer if None.
    """
    side_channel = SideChannel.MTTKRP

    def __init__(self, tol=1e-4, norm=None):
        super().__init__(tol)
        self.norm = norm
        self.fit = None
        self.mttkrp = None
        self.mttkrp_mode = None

    def reset(self):
        self.fit = None
        self.last_change = np.inf

    def set_norm(self, norm):
        self.norm = norm

    def set_mttkrp(self, mode, mttkrp):
        self.mttkrp_mode = mode
        self.mttkrp = mttkrp

    def compute_fit(self, decomposition):
        if self.norm is None:
            raise base.NotReadyError('The norm of the decomposed tensor must be set before computing the fit.')
        if self.mttkrp is None:
            raise base.NotReadyError('No MTTKRP has been given to the fit check.')

        weights = decomposition.weights
        factor_matrix = decomposition.factor_matrices[self.mttkrp_mode]
        inner_product = np.sum(weights*np.sum(self.mttkrp*factor_matrix, axis=0))

        gram_product = np.ones((len(weights), len(weights)))
        for fm in decomposition.factor_matrices:
            gram_product *= fm.T @ fm
        model_sq_norm = weights @ gram_product @ weights

        sq_residual = self.norm**2 + model_sq_norm - 2*inner_product
        residual = np.sqrt(max(sq_residual, 0))
        return 1 - residual/self.norm

    def evaluate(self, decomposition):
        fit = self.compute_fit(decomposition)
        if self.fit is None:
            self.last_change = np.inf
        else:
            self.last_change = abs(fit - self.fit)
        self.fit = fit

        return self.last_change < self.tol
