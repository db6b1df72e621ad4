import warnings

import numpy as np
import scipy.linalg as sla

PINV_THRESHOLD = 1e-13


class DecompositionError(Exception):
    pass


class InvalidArgumentError(DecompositionError, ValueError):
    pass


class InvalidSymmetryError(InvalidArgumentError):
    pass


class UnsupportedConfigurationError(DecompositionError):
    pass


class ComputationFailureError(DecompositionError):
    pass


class NotReadyError(DecompositionError, RuntimeError):
    pass


def pseudo_inverse(V, threshold=PINV_THRESHOLD):
    """Moore-Penrose pseudo-inverse of V based on its SVD.

    Singular values strictly above ``threshold`` are inverted. Values at or
    below it are passed through unmodified, so near-zero directions are never
    amplified.
    """
    try:
        U, S, Vh = sla.svd(V, full_matrices=False, lapack_driver='gesvd')
    except (np.linalg.LinAlgError, ValueError) as e:
        raise ComputationFailureError(f'SVD pseudo inverse failed: {e}') from e

    S_inv = S.copy()
    invertible = S > threshold
    S_inv[invertible] = 1/S[invertible]

    return (Vh.T * S_inv) @ U.T


def rightsolve(V, B):
    """Solve the equation X*V = B wrt X using the thresholded pseudo-inverse.
    """
    return B @ pseudo_inverse(V)


def normal_equations_solve(V, B, fast_solve=True):
    """Solve X V = B wrt X for a symmetric normal-equations matrix V.

    A direct square solve of ``V X^T = B^T`` is tried first. If it fails
    because V is singular or badly conditioned, the SVD based pseudo-inverse
    is used instead.

    Returns:
    --------
    np.ndarray
        The solution X.
    bool
        Whether the direct solve was used.
    """
    if fast_solve:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('error', sla.LinAlgWarning)
                X = sla.solve(V, B.T, assume_a='sym')
        except (np.linalg.LinAlgError, sla.LinAlgWarning):
            pass
        else:
            if np.all(np.isfinite(X)):
                return X.T, True

    return rightsolve(V, B), False


def normal_equations_lhs(factor_matrices, mode):
    """Compute left hand side of the least squares problem for ``mode``.

    The Hadamard product of the Gram matrices of all other factor matrices.
    """
    rank = factor_matrices[0].shape[1]
    V = np.ones((rank, rank))
    for i, factor_matrix in enumerate(factor_matrices):
        if i == mode:
            continue
        V *= factor_matrix.T @ factor_matrix
    return V


def khatri_rao_binary(A, B):
    """Calculates the Khatri-Rao product of A and B

    A and B have to have the same number of columns.
    """
    I, K = A.shape
    J, K = B.shape

    out = np.empty((I * J, K))
    for i, row in enumerate(A):
        out[i*J:(i+1)*J] = row[np.newaxis, :]*B
    return out


def khatri_rao(*factors, skip=None):
    """Calculates the Khatri-Rao product of a list of matrices.

    Also known as the column-wise Kronecker product. The row index of the
    product runs over the factors in row-major order, so it matches
    ``unfold``.

    Parameters:
    -----------
    *factors: np.ndarray list
        List of factor matrices. The matrices have to all have
        the same number of columns.
    skip: int or None (optional, default is None)
        Optional index to skip in the product. If None, no index
        is skipped.

    Returns:
    --------
    product: np.ndarray
        Khatri-Rao product. A matrix of shape (prod(N_i), M)
    """
    factors = list(factors).copy()
    if skip is not None:
        factors.pop(skip)

    product = factors[0]
    for factor in factors[1:]:
        product = khatri_rao_binary(product, factor)
    return product


def unfold(A, n):
    """Unfold tensor to matricizied form.

    Parameters:
    -----------
    A: np.ndarray
        Tensor to unfold.
    n: int
        Defines which mode to unfold along.

    Returns:
    --------
    M: np.ndarray
        The mode-n unfolding of `A`
    """
    return np.moveaxis(A, n, 0).reshape(A.shape[n], -1)


def fold(M, n, shape):
    """Fold a matrix to a higher order tensor.

    Inverse of ``unfold``.
    """
    newshape = list(shape)
    mode_dim = newshape.pop(n)
    newshape.insert(0, mode_dim)

    return np.moveaxis(np.reshape(M, newshape), 0, n)


def matrix_khatri_rao_product(X, factors, mode):
    """Compute the matricised tensor times Khatri Rao product along given mode.

    Reference implementation that forms the Khatri-Rao product explicitly.
    """
    assert len(X.shape) == len(factors)
    return unfold(X, mode) @ khatri_rao(*tuple(factors), skip=mode)


def free_shape(left, right):
    """Shape of the tensor defined by contracting ``left`` and ``right``."""
    return (*left.shape[1:], *right.shape[1:])


def contract_reference_pair(left, right):
    """Form the dense tensor T = sum_x left[x, ...] * right[x, ...].

    The cost is the product of all free extents times the connecting extent.
    """
    if left.shape[0] != right.shape[0]:
        raise InvalidArgumentError(
            f'The connecting dimensions differ ({left.shape[0]} and {right.shape[0]}).'
        )
    num_connecting = left.shape[0]
    left_matrix = left.reshape(num_connecting, -1)
    right_matrix = right.reshape(num_connecting, -1)
    return (left_matrix.T @ right_matrix).reshape(free_shape(left, right))


def reference_norm(left, right):
    """Frobenius norm of the contracted reference pair.

    Uses ||L^T R||_F^2 = sum((L L^T) * (R R^T)), which only needs Gram matrices
    over the connecting dimension.
    """
    num_connecting = left.shape[0]
    left_matrix = left.reshape(num_connecting, -1)
    right_matrix = right.reshape(num_connecting, -1)
    sq_norm = np.sum((left_matrix @ left_matrix.T) * (right_matrix @ right_matrix.T))
    return np.sqrt(max(sq_norm, 0))
