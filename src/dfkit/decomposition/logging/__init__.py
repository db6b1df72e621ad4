from .logger import EpsilonLogger, FitLogger, RankLogger, Timer, WeightNormLogger
