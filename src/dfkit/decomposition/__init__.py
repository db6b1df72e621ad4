from .convergence import ConvergenceTest, FitCheck, NormCheck, SideChannel
from .cp_df import CP_DF_ALS
from .decompositions import KruskalTensor
from . import logging
