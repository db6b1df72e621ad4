import itertools

import numpy as np

from . import utils


def weight_score(weight1, weight2):
    return np.abs(weight1 - weight2) / max(weight1, weight2)


def _factor_match_score(true_factors, estimated_factors, weight_penalty=True, absolute_value=True):
    if len(true_factors[0].shape) == 1:
        true_factors = [factor.reshape(-1, 1) for factor in true_factors]
    if len(estimated_factors[0].shape) == 1:
        estimated_factors = [factor.reshape(-1, 1) for factor in estimated_factors]

    rank = true_factors[0].shape[1]

    # Make sure columns of factor matrices are normalized
    true_factors, true_norms = utils.normalize_factors(true_factors)
    estimated_factors, estimated_norms = utils.normalize_factors(estimated_factors)

    if weight_penalty:
        true_weights = np.prod(true_norms, axis=0)
        estimated_weights = np.prod(estimated_norms, axis=0)
    else:
        true_weights = np.ones((rank,))
        estimated_weights = np.ones((rank,))

    scores = []
    for r in range(rank):
        score = 1 - weight_score(true_weights[r], estimated_weights[r])
        for true_factor, estimated_factor in zip(true_factors, estimated_factors):
            if absolute_value:
                score *= np.abs(true_factor[:, r].T @ estimated_factor[:, r])
            else:
                score *= true_factor[:, r].T @ estimated_factor[:, r]

        scores.append(score)
    return scores


def factor_match_score(
    true_factors, estimated_factors, weight_penalty=True, fms_reduction="min"
):
    """Factor match score between two factor sets, maximised over component permutations.

    Component signs are ignored. Returns the score and the permutation of the
    estimated components that attains it.
    """
    if fms_reduction == "min":
        fms_reduction = np.min
    elif fms_reduction == "mean":
        fms_reduction = np.mean
    else:
        raise ValueError('`fms_reduction` must be either "min" or "mean".')

    rank = true_factors[0].shape[1]
    estimated_rank = estimated_factors[0].shape[1]

    max_fms = -1
    best_permutation = None

    for permutation in itertools.permutations(range(estimated_rank), r=rank):
        permuted_factors = utils.permute_factors(permutation, estimated_factors)

        fms = fms_reduction(
            _factor_match_score(
                true_factors, permuted_factors, weight_penalty=weight_penalty
            )
        )

        if fms > max_fms:
            max_fms = fms
            best_permutation = permutation
    return max_fms, best_permutation


def percent_explained(true_tensor, estimated_tensor):
    SSE = np.linalg.norm(true_tensor-estimated_tensor)**2
    SSX = np.linalg.norm(true_tensor)**2
    return 1 - SSE/SSX
