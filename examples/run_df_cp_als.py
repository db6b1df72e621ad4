import argparse
from pathlib import Path

import h5py
import matplotlib.pyplot as plt
import numpy as np

import dfkit.utils
from dfkit import decomposition


def _parse_args():
    parser = argparse.ArgumentParser(description='Density-fitted CP-ALS of a synthetic tensor.')
    parser.add_argument('--sizes', type=int, nargs='+', default=[10, 12, 14])
    parser.add_argument('--split', type=int, default=1,
                        help='Number of modes that belong to the left reference tensor.')
    parser.add_argument('--true_rank', type=int, default=4)
    parser.add_argument('--driver', choices=['rank', 'error', 'geometric', 'paneled'], default='rank')
    parser.add_argument('--rank', type=int, default=4)
    parser.add_argument('--tol', type=float, default=1e-6)
    parser.add_argument('--seed', type=int, default=3)
    parser.add_argument('--print_frequency', type=int, default=10)
    parser.add_argument('--output', type=Path, default=Path('df_cp_als.h5'))
    parser.add_argument('--plot', action='store_true')
    return parser.parse_args()


def _run_driver(decomposer, args):
    if args.driver == 'rank':
        return decomposer.compute_rank(args.rank, calculate_epsilon=True)
    elif args.driver == 'error':
        return decomposer.compute_error(tcut_cp=args.tol, max_rank=args.rank)
    elif args.driver == 'geometric':
        return decomposer.compute_geometric(args.rank, calculate_epsilon=True)
    convergence_tests = [decomposition.NormCheck(tol=args.tol) for _ in range(4)]
    return decomposer.paneled_build(convergence_tests, calculate_epsilon=True)


if __name__ == '__main__':
    args = _parse_args()
    rng = np.random.default_rng(args.seed)
    left, right, true_factors, true_weights = dfkit.utils.create_reference_pair(
        args.sizes, args.true_rank, args.split, rng=rng
    )

    loggers = {
        'rank': decomposition.logging.RankLogger(),
        'epsilon': decomposition.logging.EpsilonLogger(),
        'time': decomposition.logging.Timer(),
    }
    decomposer = decomposition.CP_DF_ALS(
        left,
        right,
        random_state=args.seed,
        loggers=list(loggers.values()),
        print_frequency=args.print_frequency,
    )
    epsilon = _run_driver(decomposer, args)
    print(f'Final rank: {decomposer.rank}, error: {epsilon:g}, sweeps: {decomposer.num_sweeps}')

    if decomposer.rank == args.true_rank:
        fms, _ = decomposer.decomposition.factor_match_score(
            decomposition.KruskalTensor(true_factors, true_weights)
        )
        print(f'Factor match score: {fms:g}')

    with h5py.File(args.output, 'w') as h5:
        h5.attrs['driver'] = args.driver
        h5.attrs['epsilon'] = epsilon
        decomposer.decomposition.store_in_hdf5_group(h5.create_group('decomposition'))
        for logger in loggers.values():
            logger.write_to_hdf5_group(h5)

    if args.plot:
        fig, axes = plt.subplots(1, len(loggers))
        for ax, (name, logger) in zip(axes, loggers.items()):
            ax.set_title(name)
            ax.plot(logger.log_iterations, logger.log_metrics)
        plt.show()
