import time
from abc import ABC, abstractmethod

import numpy as np


class BaseLogger(ABC):
    def __init__(self):
        self.log_metrics = []
        self.log_iterations = []
        self.prev_checkpoint_it = 0
        self.name = type(self).__name__

    @abstractmethod
    def _log(self, decomposer):
        pass

    def log(self, decomposer):
        """Logs metric and iterations by appending them to lists."""
        self._log(decomposer)
        self.log_iterations.append(decomposer.current_iteration)

    @property
    def latest_log_metrics(self):
        return self.log_metrics[self.prev_checkpoint_it:]

    @property
    def latest_log_iterations(self):
        return self.log_iterations[self.prev_checkpoint_it:]

    def _write_sequence_to_hd5_group(self, logname, logger_group, log):
        """Writes list of log values to HDF5 group.

        Arguments
        ---------
        logname: string
            Name of log. Used as name for a HDF5 dataset.
        logger_group: h5.Group
            Group to write the log to.
        log: list(int)
            List containing the log values.
        """
        log = np.array(log, dtype=float)
        if logname in logger_group:
            old_length = logger_group[logname].shape[0]
            new_length = old_length + len(log)
            logger_group[logname].resize(new_length, axis=0)
            logger_group[logname][old_length:] = log
        else:
            logger_group.create_dataset(logname, shape=(len(log),), maxshape=(None,), dtype=log.dtype)
            logger_group[logname][...] = log

    def write_to_hdf5_group(self, h5group):
        """Writes log metrics and log iterations to HDF5 group."""
        logger_group = h5group.require_group(self.name)
        self._write_sequence_to_hd5_group('iterations', logger_group, self.latest_log_iterations)
        self._write_sequence_to_hd5_group('values', logger_group, self.latest_log_metrics)
        self.prev_checkpoint_it += len(self.latest_log_iterations)


class RankLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.rank)


class EpsilonLogger(BaseLogger):
    """Logs the Frobenius norm of the residual.

    Forms the dense tensor once and reconstructs the model at every sweep,
    so it is only meant for small problems.
    """
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.compute_epsilon())


class FitLogger(BaseLogger):
    """Logs the fit tracked by a ``FitCheck`` convergence test, -1 if there is none."""
    def _log(self, decomposer):
        fit = getattr(decomposer.active_convergence_test, 'fit', None)
        if fit is None:
            fit = -1
        self.log_metrics.append(fit)


class WeightNormLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(np.linalg.norm(decomposer.weights))


class Timer(BaseLogger):
    def __init__(self):
        super().__init__()
        self.initial_time = None

    def _log(self, decomposer):
        if self.initial_time is None:
            self.initial_time = time.process_time()
            current_time = self.initial_time
        else:
            current_time = time.process_time()
        self.log_metrics.append(current_time - self.initial_time)
