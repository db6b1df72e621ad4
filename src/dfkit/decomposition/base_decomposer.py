"""
Contains the base class for the decomposition methods in dfkit
"""


from abc import ABC, abstractmethod

import h5py

from . import decompositions


class BaseDecomposer(ABC):
    r"""Base class for all dfkit decomposer objects

    Arguments:
    ----------
    max_its: int (optional, default=10000)
        Maximum number of sweeps at each fixed rank.
        Can be overwritten by the methods that fit the model.
    loggers: list(Logger) (optional, default=None)
        List of loggers, each logger should implement a ``log`` method
        that takes a decomposer as input and a ``write_to_hdf5_group``
        method that stores the log in a hdf5 group. See
        ``dfkit.decomposition.logging.logger.BaseLogger`` for interface.
    checkpoint_frequency: int (optional, default=None)
        How often (in sweeps) the decomposer should store the decomposition
        and logs to disk. If None or negative, will only checkpoint the
        last sweep of each fit.
    checkpoint_path: str or Path (optional, default=None)
        Where to store the log HDF5 file. If None, then the checkpoints
        and logs are not stored to disk.
    print_frequency: int (optional, default=None)
        How often convergence information should be printed in the terminal.
        None and negative values leads to no printing.
    """
    DecompositionType = decompositions.BaseDecomposedTensor

    @abstractmethod
    def __init__(
        self,
        max_its=10000,
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=None,
    ):
        self.max_its = max_its
        if checkpoint_frequency is None:
            checkpoint_frequency = -1
        self.checkpoint_frequency = checkpoint_frequency
        self.checkpoint_path = checkpoint_path

        if print_frequency is None:
            print_frequency = -1
        self.print_frequency = print_frequency

        if loggers is None:
            loggers = []
        self.loggers = loggers
        self.current_iteration = 0

    @property
    @abstractmethod
    def decomposition(self):
        pass

    @abstractmethod
    def reconstruct(self):
        pass

    @abstractmethod
    def _check_valid_components(self, decomposition):
        pass

    @abstractmethod
    def _set_decomposition(self, decomposition):
        pass

    @property
    def _should_print(self):
        return self.print_frequency > 0

    def store_checkpoint(self):
        if self.checkpoint_path is None:
            return

        with h5py.File(self.checkpoint_path, 'a') as h5:
            group_name = f'checkpoint_{self.current_iteration:05d}'
            if group_name in h5:
                return

            if 'checkpoint_its' not in h5.attrs:
                h5.attrs['checkpoint_its'] = [self.current_iteration]
            else:
                h5.attrs['checkpoint_its'] = [*h5.attrs['checkpoint_its'], self.current_iteration]

            h5.attrs['final_iteration'] = self.current_iteration
            h5.attrs['decomposition_type'] = type(self).__name__
            checkpoint_group = h5.create_group(group_name)
            self.decomposition.store_in_hdf5_group(checkpoint_group)

            for logger in self.loggers:
                logger.write_to_hdf5_group(h5)

    def load_checkpoint(self, checkpoint_path, load_it=None):
        """Load the specified checkpoint at the given iteration.

        If ``load_it=None``, then the latest checkpoint will be used.
        """
        with h5py.File(checkpoint_path, 'r') as h5:
            if 'final_iteration' not in h5.attrs:
                raise ValueError(f'There is no checkpoints in {checkpoint_path}')

            if load_it is None:
                load_it = h5.attrs['final_iteration']

            group_name = f'checkpoint_{load_it:05d}'
            if group_name not in h5:
                raise ValueError(f'There is no checkpoint {group_name} in {checkpoint_path}')

            initial_decomposition = self.DecompositionType.load_from_hdf5_group(h5[group_name])

        self._check_valid_components(initial_decomposition)
        self._set_decomposition(initial_decomposition)
        self.current_iteration = int(load_it)

    def _after_fit_iteration(self):
        for logger in self.loggers:
            logger.log(self)

        self.current_iteration += 1
        it = self.current_iteration
        if (self.checkpoint_frequency > 0) and (it % self.checkpoint_frequency == 0):
            self.store_checkpoint()

    def _after_fit(self):
        """Store a final checkpoint if checkpointing is on and the last sweep was not stored."""
        if self.checkpoint_path is None:
            return
        if (self.checkpoint_frequency <= 0) or (self.current_iteration % self.checkpoint_frequency != 0):
            self.store_checkpoint()
