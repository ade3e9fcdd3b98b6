"""Fraction-to-boundary step length selection.

A Newton step for the barrier problem must keep the slacks and their
multipliers strictly positive. The largest admissible primal length (for the
slacks) and dual length (for the slack multipliers) are found independently
by bisection on ``[0, 1]``, testing

    tau * state + alpha * step >= 0

on the relevant segments, where the fraction to the boundary ``tau`` shrinks
the admissible region in proportion to the barrier size.
"""

import equinox as eqx
import jax
import jax.numpy as jnp

from topopt_ipm.block_state import (
    DUAL_STEP_BLOCKS,
    PRIMAL_STEP_BLOCKS,
    SLACK_MULTIPLIERS,
    SLACKS,
    BlockState,
)
from topopt_ipm.types import Scalar


def fraction_to_boundary(
    barrier_size,
    min_fraction: float = 0.8,
    max_fraction: float = 0.99999,
) -> Scalar:
    """Compute ``tau = clamp(1 - barrier_size, min_fraction, max_fraction)``.

    Args:
        barrier_size: Current barrier parameter.
        min_fraction: Lower bound on tau (reached for large barriers).
        max_fraction: Upper bound on tau (reached as the barrier vanishes).

    Returns:
        The fraction to the boundary.
    """
    return jnp.clip(1.0 - jnp.asarray(barrier_size), min_fraction, max_fraction)


def _segments_non_negative(state, step, tau, step_size, names):
    checks = [
        jnp.all(tau * state.block(name) + step_size * step.block(name) >= 0)
        for name in names
    ]
    return jnp.all(jnp.stack(checks))


def calculate_max_step_size(
    state: BlockState,
    step: BlockState,
    barrier_size,
    bisection_steps: int = 50,
    min_fraction: float = 0.8,
    max_fraction: float = 0.99999,
) -> tuple[Scalar, Scalar]:
    """Find the largest primal and dual step lengths that keep s, z >= 0.

    Both lengths are bisected simultaneously but independently. 50 bisection
    steps resolve the length to double precision. The lower end of each
    bracket is returned, so the result always passes the non-negativity test
    unless even a vanishing step fails it, in which case ``(0, 0)`` comes
    back and the caller handed in a state that was not strictly interior.

    Args:
        state: Current (strictly interior) iterate.
        step: Full Newton step.
        barrier_size: Current barrier parameter.
        bisection_steps: Number of bisection iterations.
        min_fraction: Lower bound of the fraction to the boundary.
        max_fraction: Upper bound of the fraction to the boundary.

    Returns:
        Tuple ``(step_size_s, step_size_z)``, both in ``[0, 1]``.
    """
    dtype = jnp.result_type(*jax.tree_util.tree_leaves(state))
    tau = fraction_to_boundary(barrier_size, min_fraction, max_fraction).astype(dtype)
    return _bisect_step_sizes(state, step, tau, bisection_steps)


@eqx.filter_jit
def _bisect_step_sizes(state, step, tau, bisection_steps):
    dtype = tau.dtype
    zero = jnp.zeros((), dtype=dtype)
    one = jnp.ones((), dtype=dtype)

    def body_fn(_, bracket):
        s_low, s_high, z_low, z_high = bracket
        s_mid = 0.5 * (s_low + s_high)
        z_mid = 0.5 * (z_low + z_high)

        accept_s = _segments_non_negative(state, step, tau, s_mid, SLACKS)
        accept_z = _segments_non_negative(state, step, tau, z_mid, SLACK_MULTIPLIERS)

        s_low = jnp.where(accept_s, s_mid, s_low)
        s_high = jnp.where(accept_s, s_high, s_mid)
        z_low = jnp.where(accept_z, z_mid, z_low)
        z_high = jnp.where(accept_z, z_high, z_mid)
        return s_low, s_high, z_low, z_high

    s_low, _, z_low, _ = jax.lax.fori_loop(
        0, bisection_steps, body_fn, (zero, one, zero, one)
    )
    return s_low, z_low


def scale_step(step: BlockState, step_size_s, step_size_z) -> BlockState:
    """Scale the primal and slack blocks by ``s`` and the multipliers by ``z``."""
    scaled = {name: step_size_s * step.block(name) for name in PRIMAL_STEP_BLOCKS}
    scaled.update({name: step_size_z * step.block(name) for name in DUAL_STEP_BLOCKS})
    return step.replace_blocks(**scaled)
