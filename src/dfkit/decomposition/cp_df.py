from contextlib import contextmanager

import numpy as np
import scipy.linalg as sla

from .. import base, utils
from . import decompositions
from .base_decomposer import BaseDecomposer
from .convergence import NormCheck, SideChannel

__all__ = ['CP_DF_ALS']


class CP_DF_ALS(BaseDecomposer):
    r"""CP decomposition with Alternating Least Squares of a density-fitted tensor.

    The decomposed tensor is never stored. It is the contraction of two
    reference tensors over their first (connecting) dimension,

    .. math::

        \mathcal{T}_{i_0 \cdots i_{N-1}} = \sum_x L_{x i_0 \cdots i_{M-1}} R_{x i_M \cdots i_{N-1}},

    and every ALS update contracts the factor matrices directly into the
    reference tensors instead of forming a Khatri-Rao product.
    The modes of the decomposition are the free modes of ``left`` followed
    by the free modes of ``right``.

    Arguments:
    ----------
    left: np.ndarray
        Left reference tensor, the first axis is the connecting dimension.
    right: np.ndarray
        Right reference tensor, the first axis is the connecting dimension.
    symmetries: list(int) (optional, default=None)
        One entry per mode. ``symmetries[i] == i`` means mode i is fitted,
        ``symmetries[i] == j < i`` means mode i is a copy of mode j.
        If None, all modes are fitted.
    max_its: int (optional, default=10000)
        Maximum number of sweeps at each rank. Can be overwritten per call.
    convergence_test: ConvergenceTest (optional, default=None)
        Test that stops the sweeps at a fixed rank. Defaults to
        ``NormCheck(tol=1e-10)``. Can be overwritten per call.
    fast_solve: bool (optional, default=True)
        Try a direct linear solve of the normal equations before falling
        back to the SVD based pseudo-inverse.
    random_state: int or np.random.Generator (optional, default=3)
        Seed for the random numbers used to fill new factor matrix columns.
    max_dense_elements: int (optional, default=2**27)
        Largest number of elements the explicit tensor may have. The explicit
        tensor is needed for SVD initialisation and for computing the error.
        If None, there is no limit.
    loggers: list(Logger) (optional, default=None)
        List of loggers that are called after every sweep.
    checkpoint_frequency: int (optional, default=None)
        How often (in sweeps) the decomposition is stored to disk.
    checkpoint_path: str or Path (optional, default=None)
        Where to store the checkpoint HDF5 file.
    print_frequency: int (optional, default=None)
        How often convergence information should be printed in the terminal.
        None and negative values leads to no printing.
    """
    DecompositionType = decompositions.KruskalTensor

    def __init__(
        self,
        left,
        right,
        symmetries=None,
        max_its=10000,
        convergence_test=None,
        fast_solve=True,
        random_state=3,
        max_dense_elements=2**27,
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=None,
    ):
        super().__init__(
            max_its=max_its,
            loggers=loggers,
            checkpoint_frequency=checkpoint_frequency,
            checkpoint_path=checkpoint_path,
            print_frequency=print_frequency,
        )
        left = np.asarray(left, dtype=float)
        right = np.asarray(right, dtype=float)
        if left.ndim < 1 or right.ndim < 1:
            raise base.InvalidArgumentError('The reference tensors must have a connecting dimension.')
        if left.shape[0] != right.shape[0]:
            raise base.InvalidArgumentError(
                f'The connecting dimension of the left ({left.shape[0]}) and '
                f'right ({right.shape[0]}) reference tensors must be equal.'
            )

        self.left = left
        self.right = right
        self.ndim_left = left.ndim
        self.ndim_right = right.ndim
        self.ndim = left.ndim + right.ndim - 2
        if self.ndim < 2:
            raise base.InvalidArgumentError(
                f'The contracted tensor must have at least two modes, not {self.ndim}.'
            )
        self.shape = base.free_shape(left, right)
        self._left_modes = list(range(self.ndim_left - 1))
        self._right_modes = list(range(self.ndim_left - 1, self.ndim))

        if symmetries is None:
            symmetries = list(range(self.ndim))
        symmetries = [int(source) for source in symmetries]
        if len(symmetries) != self.ndim:
            raise base.InvalidArgumentError(
                f'The symmetry map must have one entry per non-connecting mode ({self.ndim}), '
                f'not {len(symmetries)}.'
            )
        for mode, source in enumerate(symmetries):
            if 0 <= source < mode and self.shape[source] != self.shape[mode]:
                raise base.InvalidArgumentError(
                    f'Mode {mode} (length {self.shape[mode]}) cannot be a copy of '
                    f'mode {source} (length {self.shape[source]}).'
                )
        self.symmetries = symmetries

        if convergence_test is None:
            convergence_test = NormCheck(tol=1e-10)
        self.convergence_test = convergence_test
        self.active_convergence_test = convergence_test
        self.fast_solve = fast_solve
        self.random_state = random_state
        self.rng = np.random.default_rng(random_state)
        self.max_dense_elements = max_dense_elements

        self._factor_matrices = []
        self._weights = None
        self._dense_reference = None
        self._reference_norm = None
        self.num_sweeps = 0
        self.epsilon = -1.0

    # ----------------------------------------------------------------- access
    @property
    def rank(self):
        if not self._factor_matrices:
            return 0
        return self._factor_matrices[0].shape[1]

    @property
    def weights(self):
        return self._weights

    @property
    def decomposition(self):
        if not self._factor_matrices:
            raise base.NotReadyError('Factor matrices have not been computed. Compute the CP decomposition first.')
        return self.DecompositionType(self._factor_matrices, self._weights)

    @property
    def reference_norm(self):
        """Frobenius norm of the decomposed tensor."""
        if self._reference_norm is None:
            self._reference_norm = base.reference_norm(self.left, self.right)
        return self._reference_norm

    def get_factor_matrices(self):
        """Returns a copy of the factor matrices, one per mode.

        The component weights are available from ``weights``.
        """
        if not self._factor_matrices:
            raise base.NotReadyError('Attempting to return factor matrices that are not computed. '
                                     'Compute the CP decomposition first.')
        return [factor_matrix.copy() for factor_matrix in self._factor_matrices]

    def reconstruct(self):
        """Returns the dense tensor described by the factor matrices and weights.
        """
        if not self._factor_matrices:
            raise base.NotReadyError('Factor matrices have not been computed. Compute the CP decomposition first.')

        # Scale the first factor matrix, this choice is arbitrary
        scaled_first = self._factor_matrices[0] * self._weights[np.newaxis]

        khatri_rao = base.khatri_rao(scaled_first, *self._factor_matrices[1:-1])
        tensor = khatri_rao @ self._factor_matrices[-1].T
        return tensor.reshape(self.shape)

    def compute_epsilon(self):
        """Frobenius norm of the difference between the exact and approximated tensor."""
        return np.linalg.norm(self._get_dense_reference() - self.reconstruct())

    @property
    def loss(self):
        return self.compute_epsilon()**2

    # ------------------------------------------------------------ rank growth
    def compute_rank(
        self,
        rank,
        step=1,
        *,
        convergence_test=None,
        svd_initial_guess=False,
        svd_rank=0,
        max_its=None,
        fast_solve=None,
        calculate_epsilon=False,
    ):
        """Compute the CP decomposition with ``rank`` components.

        The factor matrices are built from the current rank (or from scratch)
        up to ``rank`` in increments of ``step``, optimising with ALS at each
        intermediate rank.

        Arguments:
        ----------
        rank: int
            The rank of the CP decomposition.
        step: int (optional, default=1)
            Rank increment between the intermediate decompositions.
        convergence_test: ConvergenceTest (optional)
            Overrides the decomposer's convergence test.
        svd_initial_guess: bool (optional, default=False)
            Initialise the factor matrices with the leading singular vectors
            of the unfolded tensor if no factor matrices exist yet.
        svd_rank: int (optional, default=0)
            Rank of the SVD initial guess, ``0 < svd_rank <= rank``.
        max_its: int (optional)
            Overrides the decomposer's maximum number of sweeps per rank.
        fast_solve: bool (optional)
            Overrides the decomposer's ``fast_solve``.
        calculate_epsilon: bool (optional, default=False)
            Compute the 2-norm error of the final decomposition.

        Returns:
        --------
        float
            The 2-norm error, -1 if ``calculate_epsilon`` is False.
        """
        self._check_positive(rank=rank, step=step)
        self._check_svd_rank(svd_initial_guess, svd_rank, rank)
        self._check_dense_support(svd_initial_guess, calculate_epsilon)
        convergence_test = self._get_convergence_test(convergence_test)

        self.epsilon = -1.0
        with self._abort_on_failure():
            self._build(
                rank, step, convergence_test, max_its, fast_solve, calculate_epsilon,
                svd_initial_guess, svd_rank,
            )
        self._report_total()
        return self.epsilon

    def compute_error(
        self,
        tcut_cp=1e-2,
        step=1,
        max_rank=1e5,
        *,
        convergence_test=None,
        svd_initial_guess=False,
        svd_rank=0,
        max_its=None,
        fast_solve=None,
    ):
        """Increase the rank by ``step`` until the 2-norm error is at most ``tcut_cp``.

        Gives up once the rank reaches ``max_rank``, in which case the returned
        error may be larger than ``tcut_cp``.

        Returns:
        --------
        float
            The 2-norm error of the final decomposition.
        """
        self._check_positive(step=step, max_rank=max_rank)
        max_rank = int(max_rank)
        self._check_svd_rank(svd_initial_guess, svd_rank, max_rank)
        self._check_dense_support(svd_initial_guess, calculate_epsilon=True)
        convergence_test = self._get_convergence_test(convergence_test)

        if self._factor_matrices:
            rank = self.rank
        elif svd_initial_guess:
            rank = svd_rank
        else:
            rank = 1

        with self._abort_on_failure():
            while True:
                self._build(
                    rank, step, convergence_test, max_its, fast_solve, True,
                    svd_initial_guess, svd_rank,
                )
                if self.epsilon <= tcut_cp or rank >= max_rank:
                    break
                rank = min(rank + step, max_rank)

        self._report_total()
        return self.epsilon

    def compute_geometric(
        self,
        desired_rank,
        geometric_step=2,
        *,
        convergence_test=None,
        svd_initial_guess=False,
        svd_rank=0,
        max_its=None,
        fast_solve=None,
        calculate_epsilon=False,
    ):
        """Compute the CP decomposition with rank at most ``desired_rank``.

        The rank starts at 1 (or ``svd_rank``) and is multiplied by
        ``geometric_step`` after every ALS optimisation. A ``geometric_step``
        of 1 increases the rank by one instead. Each round extends the factor
        matrices straight to the new rank.

        Returns:
        --------
        float
            The 2-norm error, -1 if ``calculate_epsilon`` is False.
        """
        self._check_positive(desired_rank=desired_rank, geometric_step=geometric_step)
        self._check_svd_rank(svd_initial_guess, svd_rank, desired_rank)
        self._check_dense_support(svd_initial_guess, calculate_epsilon)
        convergence_test = self._get_convergence_test(convergence_test)

        rank = svd_rank if svd_initial_guess else 1
        rank = max(rank, min(self.rank, desired_rank))

        self.epsilon = -1.0
        with self._abort_on_failure():
            while rank <= desired_rank:
                self._build(
                    rank, None, convergence_test, max_its, fast_solve,
                    calculate_epsilon, svd_initial_guess, svd_rank,
                )
                next_rank = int(rank * geometric_step)
                rank = next_rank if next_rank > rank else rank + 1

        self._report_total()
        return self.epsilon

    def paneled_build(
        self,
        convergence_tests,
        rank_step=0.5,
        panels=4,
        max_its=20,
        *,
        fast_solve=None,
        calculate_epsilon=False,
    ):
        """Build the decomposition in panels of growing rank.

        The first panel has rank equal to the longest dimension of the
        reference tensors and starts from the SVD initial guess. Each of the
        following panels adds ``int(rank_step * max_dim)`` randomly filled
        components to every factor matrix before optimising again.

        Arguments:
        ----------
        convergence_tests: list(ConvergenceTest)
            One convergence test for each panel.
        rank_step: float (optional, default=0.5)
            Rank growth per panel relative to the longest dimension.
        panels: int (optional, default=4)
            Number of panels.
        max_its: int (optional, default=20)
            Maximum number of sweeps per panel.

        Returns:
        --------
        float
            The 2-norm error, -1 if ``calculate_epsilon`` is False.
        """
        self._check_positive(rank_step=rank_step, panels=panels)
        if len(convergence_tests) < panels:
            raise base.InvalidArgumentError(
                f'Too few convergence tests ({len(convergence_tests)}). '
                f'Must provide one convergence test per panel ({panels}).'
            )
        self._check_dense_support(True, calculate_epsilon)

        max_dim = max(*self.left.shape, *self.right.shape)

        self.epsilon = -1.0
        with self._abort_on_failure():
            for panel, convergence_test in zip(range(panels), convergence_tests):
                if panel == 0:
                    self._build(
                        max_dim, 1, convergence_test, max_its, fast_solve, calculate_epsilon,
                        svd_initial_guess=True, svd_rank=max_dim,
                    )
                    continue

                new_rank = self.rank + int(rank_step*max_dim)
                self._grow_factor_matrices(new_rank, normalize=True)
                self._als(new_rank, convergence_test, max_its, fast_solve, calculate_epsilon)

        self._report_total()
        return self.epsilon

    # ------------------------------------------------------------------ build
    def _build(
        self,
        rank,
        step,
        convergence_test,
        max_its,
        fast_solve,
        calculate_epsilon,
        svd_initial_guess,
        svd_rank,
    ):
        """Grow the factor matrices to ``rank`` in increments of ``step``, running ALS at every rank.

        The intermediate ranks are ``current + 1, current + 1 + step, ...`` and
        ``rank`` is always the last one. A ``step`` of None grows straight to
        ``rank``.
        """
        seeded = False
        if not self._factor_matrices and svd_initial_guess:
            self._init_svd(svd_rank)
            self._als(svd_rank, convergence_test, max_its, fast_solve, calculate_epsilon)
            seeded = True

        current_rank = self.rank
        if step is None:
            checkpoints = [rank] if rank > current_rank else []
        else:
            checkpoints = list(range(current_rank + 1, rank + 1, step))
        if checkpoints and checkpoints[-1] != rank:
            checkpoints.append(rank)

        for new_rank in checkpoints:
            self._grow_factor_matrices(new_rank)
            self._als(new_rank, convergence_test, max_its, fast_solve, calculate_epsilon)

        # Asking for an already computed rank continues optimising it.
        if not checkpoints and not seeded:
            self._als(current_rank, convergence_test, max_its, fast_solve, calculate_epsilon)

    def _init_svd(self, svd_rank):
        """Initialise every factor matrix with the leading left singular vectors of its unfolding.

        The singular vectors are found as eigenvectors of the Gram matrix of
        the unfolded tensor. Modes shorter than ``svd_rank`` get the remaining
        columns filled with random numbers.
        """
        tensor = self._get_dense_reference()

        factor_matrices = []
        for mode, length in enumerate(self.shape):
            unfolded = base.unfold(tensor, mode)
            try:
                _, eigenvectors = sla.eigh(unfolded @ unfolded.T)
            except np.linalg.LinAlgError as e:
                raise base.ComputationFailureError(f'Error in computing the SVD initial guess: {e}') from e

            num_vectors = min(length, svd_rank)
            factor_matrix = np.zeros((length, svd_rank))
            # eigh sorts the eigenvalues in ascending order
            factor_matrix[:, :num_vectors] = eigenvectors[:, ::-1][:, :num_vectors]
            if length < svd_rank:
                factor_matrix[:, length:] = utils.gaussian_fill(self.rng, (length, svd_rank - length))

            factor_matrices.append(utils.normalize_factor(factor_matrix)[0])

        self._factor_matrices = factor_matrices
        self._weights = np.ones(svd_rank)

    def _grow_factor_matrices(self, new_rank, normalize=False):
        if not self._factor_matrices:
            self._factor_matrices = [
                utils.normalize_factor(utils.gaussian_fill(self.rng, (length, new_rank)))[0]
                for length in self.shape
            ]
            self._weights = np.ones(new_rank)
            return

        old_rank = self.rank
        factor_matrices = []
        for factor_matrix in self._factor_matrices:
            factor_matrix = utils.extend_factor_matrix(factor_matrix, new_rank, self.rng)
            if normalize:
                factor_matrix = utils.normalize_factor(factor_matrix)[0]
            factor_matrices.append(factor_matrix)

        self._factor_matrices = factor_matrices
        self._weights = np.concatenate([self._weights, np.ones(new_rank - old_rank)])

    # -------------------------------------------------------------------- ALS
    def _als(self, rank, convergence_test, max_its, fast_solve, calculate_epsilon):
        """Sweep over the modes until the convergence test passes or ``max_its`` sweeps are done."""
        if max_its is None:
            max_its = self.max_its
        max_its = int(max_its)
        if fast_solve is None:
            fast_solve = self.fast_solve

        self.active_convergence_test = convergence_test
        if convergence_test.side_channel is SideChannel.MTTKRP and convergence_test.norm is None:
            convergence_test.set_norm(self.reference_norm)

        count = 0
        converged = False
        while count < max_its and not converged:
            for mode, source in enumerate(self.symmetries):
                if source == mode:
                    fast_solve = self._update_als_factor(mode, fast_solve, convergence_test)
                elif 0 <= source < mode:
                    self._factor_matrices[mode] = self._factor_matrices[source].copy()
                else:
                    raise base.InvalidSymmetryError(
                        f'Incorrectly defined symmetry: mode {mode} cannot be a copy of mode {source}.'
                    )
            count += 1
            converged = convergence_test.evaluate(self.decomposition)

            if self._should_print and self.current_iteration % self.print_frequency == 0:
                print(f'    {self.current_iteration}: rank {rank}, change is {convergence_test.last_change:4g}')

            self._after_fit_iteration()

        self.num_sweeps += count
        if calculate_epsilon:
            self.epsilon = self.compute_epsilon()
            if self._should_print:
                print(f'    Rank {rank}: the error is {self.epsilon:4g} after {count} sweeps')
        self._after_fit()

    def _update_als_factor(self, mode, fast_solve, convergence_test):
        """Solve the least squares problem for one mode holding all others fixed.

        Returns whether the direct solve should still be tried for the next modes.
        """
        rhs = self.direct_mttkrp(mode)
        if convergence_test.side_channel is SideChannel.MTTKRP:
            convergence_test.set_mttkrp(mode, rhs)

        lhs = base.normal_equations_lhs(self._factor_matrices, mode)
        new_factor, used_direct_solve = base.normal_equations_solve(lhs, rhs, fast_solve=fast_solve)
        if fast_solve and not used_direct_solve and self._should_print:
            print('    Square solve failed, reverting to the pseudo inverse')

        self._factor_matrices[mode], self._weights = utils.normalize_factor(new_factor)
        return fast_solve and used_direct_solve

    def direct_mttkrp(self, mode):
        """Compute the mode-``mode`` MTTKRP without forming a Khatri-Rao product.

        The factor matrices of the reference tensor that does not contain
        ``mode`` are contracted into it first. The result is contracted with
        the other reference tensor over the connecting dimension, and the
        remaining modes are removed one at a time by Hadamard contractions.

        Returns:
        --------
        np.ndarray
            Matrix of shape (length of ``mode``, rank).
        """
        if mode in self._left_modes:
            tensor, other_tensor = self.left, self.right
            modes, other_modes = self._left_modes, self._right_modes
        else:
            tensor, other_tensor = self.right, self.left
            modes, other_modes = self._right_modes, self._left_modes

        connecting_factor = self._contract_other_side(other_tensor, other_modes)

        num_connecting = tensor.shape[0]
        contracted = tensor.reshape(num_connecting, -1).T @ connecting_factor
        return self._hadamard_contract_modes(contracted, modes, modes.index(mode))

    def _contract_other_side(self, tensor, modes):
        """Contract all free modes of ``tensor`` with their factor matrices.

        Returns a (connecting dimension x rank) matrix.
        """
        rank = self.rank
        if not modes:
            return np.repeat(tensor[:, np.newaxis], rank, axis=1)

        # Contract out the last dimension with a matrix product
        last_length = tensor.shape[-1]
        contracted = tensor.reshape(-1, last_length) @ self._factor_matrices[modes[-1]]

        # Hadamard contract the rest, moving toward the connecting dimension
        for mode in reversed(modes[:-1]):
            length = self.shape[mode]
            contracted = np.einsum(
                'jkr,kr->jr', contracted.reshape(-1, length, rank), self._factor_matrices[mode]
            )
        return contracted

    def _hadamard_contract_modes(self, contracted, modes, skip):
        """Hadamard contract every mode in ``modes`` except the ``skip``-th one.

        ``contracted`` has one row per element of the product of the mode
        lengths (row-major) and one column per component. Modes are removed
        from the last one inward. When the skipped mode is reached it is
        moved into the columns, so the modes before it are contracted against
        (length of skipped mode x rank) columns. The first mode can not be
        handled by that loop when it is not the skipped mode, so it is
        contracted separately at the end.
        """
        rank = self.rank
        lengths = [self.shape[mode] for mode in modes]
        num_rows = contracted.shape[0]
        skipped_length = 1

        for local_mode in range(len(modes) - 1, 0, -1):
            length = lengths[local_mode]
            factor_matrix = self._factor_matrices[modes[local_mode]]
            num_rows //= length

            if local_mode == skip:
                skipped_length = length
                contracted = contracted.reshape(num_rows, skipped_length*rank)
            elif local_mode > skip:
                contracted = np.einsum(
                    'jkr,kr->jr', contracted.reshape(num_rows, length, rank), factor_matrix
                )
            else:
                contracted = np.einsum(
                    'jklr,kr->jlr',
                    contracted.reshape(num_rows, length, skipped_length, rank),
                    factor_matrix,
                ).reshape(num_rows, skipped_length*rank)

        if skip != 0:
            contracted = np.einsum(
                'ilr,ir->lr',
                contracted.reshape(lengths[0], skipped_length, rank),
                self._factor_matrices[modes[0]],
            )
        return contracted

    # ---------------------------------------------------------------- helpers
    def _get_convergence_test(self, convergence_test):
        if convergence_test is None:
            return self.convergence_test
        return convergence_test

    @staticmethod
    def _check_positive(**arguments):
        for name, value in arguments.items():
            if value <= 0:
                raise base.InvalidArgumentError(f'`{name}` must be greater than 0, not {value}.')

    @staticmethod
    def _check_svd_rank(svd_initial_guess, svd_rank, rank):
        if not svd_initial_guess:
            return
        if svd_rank <= 0:
            raise base.InvalidArgumentError('Must specify the rank of the initial approximation using SVD.')
        if svd_rank > rank:
            raise base.InvalidArgumentError(
                f'Initial guess (rank {svd_rank}) is larger than the desired CP rank ({rank}).'
            )

    def _check_dense_support(self, svd_initial_guess, calculate_epsilon):
        needs_dense = calculate_epsilon or (svd_initial_guess and not self._factor_matrices)
        if not needs_dense or self._dense_reference is not None or self.max_dense_elements is None:
            return

        num_elements = int(np.prod(self.shape))
        if num_elements > self.max_dense_elements:
            raise base.UnsupportedConfigurationError(
                f'The SVD initial guess and the error require the explicit tensor with {num_elements} '
                f'elements, but at most {self.max_dense_elements} are allowed.'
            )

    def _get_dense_reference(self):
        if self._dense_reference is None:
            self._check_dense_support(svd_initial_guess=False, calculate_epsilon=True)
            self._dense_reference = base.contract_reference_pair(self.left, self.right)
        return self._dense_reference

    def _check_valid_components(self, decomposition):
        """Check if provided factor matrices have correct shape.
        """
        if len(decomposition.factor_matrices) != self.ndim:
            raise ValueError(
                f'The decomposition has {len(decomposition.factor_matrices)} factor matrices, '
                f'but the tensor has {self.ndim} modes.'
            )
        for i, factor_matrix in enumerate(decomposition.factor_matrices):
            length = factor_matrix.shape[0]
            if length != self.shape[i]:
                raise ValueError(
                    f'The length of component {i} ({length}) is not the same as the length of '
                    f'the tensor\'s dimension {i} ({self.shape[i]}).'
                )

    def _set_decomposition(self, decomposition):
        self._factor_matrices = [np.array(fm, dtype=float) for fm in decomposition.factor_matrices]
        self._weights = np.array(decomposition.weights, dtype=float)

    def _discard_decomposition(self):
        self._factor_matrices = []
        self._weights = None

    @contextmanager
    def _abort_on_failure(self):
        """Drop the factor matrices if the decomposition fails, they are not a valid result."""
        try:
            yield
        except Exception:
            self._discard_decomposition()
            raise

    def _report_total(self):
        if self._should_print:
            print(f'Number of ALS sweeps performed: {self.num_sweeps}')
