"""Small SAND test problem without a mesh.

A chain of ``n`` bar elements is clamped at its left end and pulled by a
traction at its free tip. Element ``e`` has SIMP stiffness ``ρ_e^p * k0``,
the filtered density is ``ρ = H ρ̃`` with a hat-function filter over the
element centres, and the unfiltered density is kept in ``[0, 1]`` through
two slacks guarded by a log-barrier. The objective is the traction work
``tᵀu`` (the compliance). The volume constraint ``mean(ρ) = density_ratio``
holds at the uniform starting point and every Newton step keeps ``Σ Δρ = 0``
(see ``LagrangianKKTSystem.fixed_sum_block``).

The barrier Lagrangian, with every constraint written as ``c(x) = 0``, is

    L = tᵀu + λᵀ(K(ρ)u - t) + yᵀ(Hρ̃ - ρ)
        - z_lᵀ(ρ̃ - s_l) - z_uᵀ(1 - ρ̃ - s_u)
        - μ Σ log s_l - μ Σ log s_u

Its gradient blocks are exactly the SAND KKT conditions, so
``LagrangianKKTSystem`` turns it into a Newton system.
"""

import jax.numpy as jnp
import numpy as np

from topopt_ipm.block_state import BlockState, initial_state
from topopt_ipm.kkt import LagrangianKKTSystem


def density_filter(n_elements: int, filter_radius: float, length: float = 1.0) -> np.ndarray:
    """Build the row-normalized hat-function filter matrix ``H``.

    Entry ``H[i, j]`` is proportional to ``max(0, r - |x_i - x_j|)`` where
    ``x`` are the element centres, so each row is a weighted average of the
    unfiltered densities within the filter radius.
    """
    h = length / n_elements
    centres = (np.arange(n_elements) + 0.5) * h
    distance = np.abs(centres[:, None] - centres[None, :])
    weights = np.maximum(0.0, filter_radius - distance)
    return weights / weights.sum(axis=1, keepdims=True)


def _elongation(u):
    # The left end of the chain is clamped
    return u - jnp.concatenate([jnp.zeros((1,), dtype=u.dtype), u[:-1]])


def spring_chain_problem(
    n_elements: int = 4,
    penalty_exponent: float = 3.0,
    filter_radius: float = 0.3,
    traction: float = -1.0,
    element_stiffness: float = 1.0,
    density_ratio: float = 0.5,
    volume_constraint: bool = True,
    dtype=None,
) -> tuple[LagrangianKKTSystem, BlockState]:
    """Create the bar-chain SAND problem and its starting point.

    Args:
        n_elements: Number of bar elements (and design cells).
        penalty_exponent: SIMP exponent ``p``.
        filter_radius: Radius of the density filter, in units of the chain
            length. Must be larger than half an element.
        traction: Force applied at the free tip.
        element_stiffness: Stiffness ``k0`` of a fully dense element.
        density_ratio: Initial uniform density, and the mean density held
            fixed by the volume constraint.
        volume_constraint: Whether Newton steps keep the total filtered
            density constant.
        dtype: Optional floating point dtype of the state.

    Returns:
        Tuple ``(system, state)`` ready for ``InteriorPointSolver.run``.
    """
    if filter_radius <= 0.5 / n_elements:
        raise ValueError("filter_radius must exceed half an element length")

    state = initial_state(n_elements, n_elements, density_ratio=density_ratio, dtype=dtype)
    dtype = state.density.dtype
    H = jnp.asarray(density_filter(n_elements, filter_radius), dtype=dtype)
    t = jnp.zeros((n_elements,), dtype=dtype).at[-1].set(traction)

    def objective(x: BlockState):
        return jnp.dot(t, x.displacement)

    def lagrangian(x: BlockState, barrier_size):
        stiffness = element_stiffness * x.density**penalty_exponent
        # λᵀ K(ρ) u, with K assembled from the element elongations
        strain_work = jnp.sum(
            stiffness * _elongation(x.displacement) * _elongation(x.displacement_multiplier)
        )
        elasticity = strain_work - jnp.dot(t, x.displacement_multiplier)
        filter_constraint = jnp.dot(
            x.unfiltered_density_multiplier, H @ x.unfiltered_density - x.density
        )
        lower = jnp.dot(
            x.density_lower_slack_multiplier,
            x.unfiltered_density - x.density_lower_slack,
        )
        upper = jnp.dot(
            x.density_upper_slack_multiplier,
            1.0 - x.unfiltered_density - x.density_upper_slack,
        )
        barrier = barrier_size * (
            jnp.sum(jnp.log(x.density_lower_slack)) + jnp.sum(jnp.log(x.density_upper_slack))
        )
        return objective(x) + elasticity + filter_constraint - lower - upper - barrier

    system = LagrangianKKTSystem(
        lagrangian, objective, fixed_sum_block="density" if volume_constraint else None
    )
    return system, state
