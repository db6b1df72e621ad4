import numpy as np

FILL_STD = 2.0


def normalize_factor(factor, eps=1e-15):
    """Normalizes the columns of a factor matrix.

    Parameters:
    -----------
    factor: np.ndarray
        Factor matrix to normalize.
    eps: float
        Epsilon used to prevent division by zero.

    Returns:
    --------
    np.ndarray:
        Matrix where the columns are normalized to length one.
    np.ndarray:
        Norms of the columns before normalization.
    """
    norms = np.linalg.norm(factor, axis=0)
    return factor / (norms[np.newaxis] + eps), norms


def normalize_factors(factors):
    """Normalizes the columns of each element in list of factors

    Parameters:
    -----------
    factor: list of np.ndarray
        List containing factor matrices to normalize.

    Returns:
    --------
    list of np.ndarray:
        List containing matrices where the columns are normalized
        to length one.
    list of np.ndarray:
        List containing the norms of the columns from before
        normalization.
    """
    normalized_factors = []
    norms = []

    for factor in factors:
        normalized_factor, norm = normalize_factor(factor)
        normalized_factors.append(normalized_factor)
        norms.append(norm)

    return normalized_factors, norms


def gaussian_fill(rng, shape, std=FILL_STD):
    """Draw a block of normally distributed numbers with mean 0."""
    return rng.normal(0, std, size=shape)


def extend_factor_matrix(factor_matrix, new_rank, rng, std=FILL_STD):
    """Copy a factor matrix into a wider one and fill the new columns with noise.

    Parameters:
    -----------
    factor_matrix: np.ndarray
        Factor matrix of shape (I, R).
    new_rank: int
        Number of columns of the extended matrix, must be at least R.
    rng: np.random.Generator
        Generator used for the new columns.

    Returns:
    --------
    np.ndarray:
        Matrix of shape (I, new_rank) whose first R columns equal ``factor_matrix``.
    """
    num_rows, rank = factor_matrix.shape
    if new_rank < rank:
        raise ValueError(f'Cannot shrink a factor matrix from {rank} to {new_rank} columns.')

    extended = np.empty((num_rows, new_rank))
    extended[:, :rank] = factor_matrix
    extended[:, rank:] = gaussian_fill(rng, (num_rows, new_rank - rank), std=std)
    return extended


def permute_factors(permutation, factors):
    return [factor[:, permutation] for factor in factors]


def create_random_factors(sizes, rank, rng=None):
    if rng is None:
        rng = np.random.default_rng()
    factors = [rng.standard_normal((size, rank)) for size in sizes]
    factors, norms = normalize_factors(factors)
    return factors, norms


def create_reference_pair(sizes, rank, split, rng=None, factors=None, weights=None):
    """Create two reference tensors whose contraction is an exact rank ``rank`` CP tensor.

    The connecting dimension has length ``rank``. Its r-th slice of the left tensor
    is the outer product of the left modes' r-th components scaled by the r-th weight,
    and the r-th slice of the right tensor is the outer product of the right modes'
    r-th components.

    Parameters:
    -----------
    sizes: tuple[int]
        Extent of every mode of the contracted tensor.
    rank: int
        Number of components.
    split: int
        Number of modes (taken from the front of ``sizes``) that belong to the left tensor.
    rng: np.random.Generator (optional)
        Generator for the random factors.
    factors: list(np.ndarray) (optional)
        Known factor matrices. Random unit-norm factors are drawn if None.
    weights: np.ndarray (optional)
        Component weights, ones if None.

    Returns:
    --------
    left: np.ndarray
        Array of shape (rank, *sizes[:split]).
    right: np.ndarray
        Array of shape (rank, *sizes[split:]).
    factors: list(np.ndarray)
    weights: np.ndarray
    """
    if factors is None:
        factors, _ = create_random_factors(sizes, rank, rng=rng)
    if weights is None:
        weights = np.ones(rank)
    weights = np.asarray(weights, dtype=float)

    left = _stack_components(factors[:split], rank) * weights.reshape(-1, *[1]*split)
    right = _stack_components(factors[split:], rank)
    return left, right, factors, weights


def _stack_components(factors, rank):
    """Returns an array whose r-th slice is the outer product of the factors' r-th columns."""
    components = np.ones((rank,))
    for factor in factors:
        components = components[..., np.newaxis] * factor.T.reshape(rank, *[1]*(components.ndim - 1), -1)
    return components
