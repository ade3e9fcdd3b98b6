"""Barrier continuation: convergence test and barrier shrink rule."""

import logging

import optimistix as optx

from topopt_ipm.block_state import BlockState
from topopt_ipm.types import KKTSystem

logger = logging.getLogger(__name__)


def check_convergence(
    system: KKTSystem,
    state: BlockState,
    barrier_size,
    tolerance: float = 1e-2,
) -> bool:
    """Check whether the barrier subproblem is solved to tolerance.

    The KKT conditions are considered met once the l1 norm of the residual
    drops below ``tolerance * barrier_size``.

    Args:
        system: KKT collaborator.
        state: Iterate to test.
        barrier_size: Current barrier parameter.
        tolerance: Relative tolerance with respect to the barrier size.

    Returns:
        True if the residual is small enough to shrink the barrier.
    """
    residual = system.residual_only(state, barrier_size)
    logger.debug("current rhs norm is %g", float(optx.max_norm(residual)))
    return bool(residual.l1_norm() < tolerance * barrier_size)


def update_barrier_size(
    barrier_size,
    min_barrier_size: float = 5e-4,
    multiplier: float = 0.8,
    exponent: float = 1.2,
) -> float:
    """Shrink the barrier parameter.

    Takes the smaller of a linear (``mu * multiplier``) and a superlinear
    (``mu ** exponent``) reduction, never going below ``min_barrier_size``.
    Above one the linear rule wins; close to zero the superlinear one does.
    """
    barrier_size = float(barrier_size)
    candidate = min(barrier_size * multiplier, barrier_size**exponent)
    return max(candidate, min_barrier_size)
