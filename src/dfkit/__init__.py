from . import base, metrics, utils
from .base import (
    ComputationFailureError,
    DecompositionError,
    InvalidArgumentError,
    InvalidSymmetryError,
    NotReadyError,
    UnsupportedConfigurationError,
)
from .decomposition import CP_DF_ALS, FitCheck, KruskalTensor, NormCheck

__version__ = '0.1.0'
