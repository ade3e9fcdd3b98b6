"""Exact L1 Merit Function, Penalty Update and Scaled Step.

This module implements the exact l1 merit function used to globalize the
interior-point iteration, the adaptive update of its penalty parameter and
the backtracking ("scaled") step used when the watchdog gives up on full
Newton steps.

The merit function is:
    φ(x; ρ) = J(x) + ρ * Σ_c ‖r_c(x)‖_1

where J is the traction work of the displacement, r_c are the residual
blocks of the equality constraints (elasticity, filter, lower and upper
slack definitions) and ρ is the penalty parameter.
"""

import logging
from typing import NamedTuple

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, jaxtyped

from topopt_ipm.block_state import DECISION_VARIABLES, EQUALITY_CONSTRAINTS, BlockState
from topopt_ipm.types import KKTSystem, NewtonMatrix, Scalar

logger = logging.getLogger(__name__)


class ScaledStepResult(NamedTuple):
    """Result from the scaled (backtracking) step.

    Attributes:
        state: The new iterate ``state + step_size * step``.
        step_size: The step size used.
        success: Whether the sufficient decrease test was met.
        n_halvings: Number of times the step size was halved.
    """

    state: BlockState
    step_size: float
    success: bool
    n_halvings: int


@jaxtyped(typechecker=beartype)
def compute_merit(
    objective_value: Scalar,
    residual: BlockState,
    penalty: Scalar,
) -> Scalar:
    """Compute the exact l1 merit from an objective value and a residual.

    Args:
        objective_value: Objective J(x) at the test point.
        residual: KKT residual at the test point.
        penalty: Penalty parameter ρ.

    Returns:
        Merit function value φ(x; ρ).
    """
    violation = sum(
        (residual.block_l1_norm(name) for name in EQUALITY_CONSTRAINTS),
        start=jnp.zeros_like(objective_value),
    )
    return objective_value + penalty * violation


def calculate_exact_merit(
    system: KKTSystem,
    test_solution: BlockState,
    barrier_size,
    penalty,
) -> Scalar:
    """Evaluate the exact l1 merit of ``test_solution``.

    Only the residual is requested from the collaborator; no Newton matrix
    is assembled.

    Args:
        system: KKT collaborator.
        test_solution: Point at which to evaluate the merit.
        barrier_size: Current barrier parameter.
        penalty: Penalty parameter ρ.

    Returns:
        Merit function value.
    """
    residual = system.residual_only(test_solution, barrier_size)
    # integer-valued objectives are promoted to the dtype of the state
    objective_value = jnp.asarray(
        system.objective(test_solution), dtype=test_solution.density.dtype
    )
    penalty = jnp.asarray(penalty, dtype=objective_value.dtype)
    return compute_merit(objective_value, residual, penalty)


def merit_directional_derivative(
    system: KKTSystem,
    state: BlockState,
    step: BlockState,
    barrier_size,
    penalty,
    perturbation: float = 1e-4,
) -> Scalar:
    """Forward-difference estimate of the merit derivative along ``step``."""
    merit_0 = calculate_exact_merit(system, state, barrier_size, penalty)
    merit_h = calculate_exact_merit(
        system, state + perturbation * step, barrier_size, penalty
    )
    return (merit_h - merit_0) / perturbation


def estimate_penalty_parameter(
    matrix: NewtonMatrix,
    residual: BlockState,
    step: BlockState,
) -> Scalar:
    """Estimate a penalty large enough for ``step`` to descend the merit.

    Follows Nocedal & Wright (18.36):

        ρ_trial = (gᵀp + ½ pᵀHp) / (0.05 ‖c‖)   if pᵀHp > 0
        ρ_trial = gᵀp / (0.05 ‖c‖)              otherwise

    where p is the step restricted to the decision variables, H the
    decision-variable block of the Newton matrix, ``g = -residual`` and ‖c‖
    the sum of the max-norms of the equality-constraint residual blocks.

    When the constraints are exactly satisfied the estimate is ``-inf`` so
    that the penalty is left unchanged.

    Args:
        matrix: Newton matrix assembled at the current iterate.
        residual: Newton right-hand side at the current iterate.
        step: Newton step computed from ``matrix`` and ``residual``.

    Returns:
        Trial penalty value.
    """
    primal_step = step.restrict(DECISION_VARIABLES)
    hess_part = primal_step.dot(matrix.mv(primal_step), DECISION_VARIABLES)
    grad_part = -residual.dot(step, DECISION_VARIABLES)

    constraint_norm = sum(
        (residual.block_linfty_norm(name) for name in EQUALITY_CONSTRAINTS),
        start=jnp.zeros_like(grad_part),
    )

    numerator = jnp.where(hess_part > 0, grad_part + 0.5 * hess_part, grad_part)
    feasible = constraint_norm <= 0
    safe_norm = jnp.where(feasible, 1.0, constraint_norm)
    return jnp.where(feasible, -jnp.inf, numerator / (0.05 * safe_norm))


@jaxtyped(typechecker=beartype)
def update_penalty_parameter(
    current_penalty: Scalar,
    trial_penalty: Scalar,
) -> Scalar:
    """Ratchet the penalty parameter.

    The trial value is adopted only when it exceeds the current one, so the
    penalty never decreases (NaN trials are ignored).

    Args:
        current_penalty: Current penalty parameter.
        trial_penalty: Estimate from ``estimate_penalty_parameter``.

    Returns:
        Updated penalty parameter.
    """
    return jnp.where(trial_penalty > current_penalty, trial_penalty, current_penalty)


def _sufficient_decrease(
    merit_new: Scalar, merit_0: Scalar, step_size: float, slope: Scalar
) -> Bool[Array, ""]:
    return merit_new < merit_0 + step_size * slope


def take_scaled_step(
    system: KKTSystem,
    state: BlockState,
    step: BlockState,
    descent_requirement: float,
    barrier_size,
    penalty,
    max_halvings: int = 10,
    perturbation: float = 1e-4,
) -> ScaledStepResult:
    """Backtrack along ``step`` until the merit decreases sufficiently.

    Finds α in {1, 1/2, 1/4, ...} such that:
        φ(x + α*d) < φ(x) + α * descent_requirement * φ'(x; d)

    where φ'(x; d) is a forward-difference estimate. At most ``max_halvings``
    sizes are tested. If none passes, the step size after the last halving
    (``2**-max_halvings``) is used anyway; this soft failure is reported via
    ``success=False`` and progress is still bounded by the outer iteration
    cap.

    Args:
        system: KKT collaborator.
        state: Starting point.
        step: Search direction (already fraction-to-boundary scaled).
        descent_requirement: Armijo-type constant.
        barrier_size: Current barrier parameter.
        penalty: Penalty parameter ρ.
        max_halvings: Maximum number of tested step sizes.
        perturbation: Finite-difference perturbation for φ'.

    Returns:
        ScaledStepResult with the new state and step size.
    """
    merit_0 = calculate_exact_merit(system, state, barrier_size, penalty)
    merit_derivative = merit_directional_derivative(
        system, state, step, barrier_size, penalty, perturbation
    )
    slope = descent_requirement * merit_derivative

    step_size = 1.0
    n_halvings = 0
    success = False
    for _ in range(max_halvings):
        merit_new = calculate_exact_merit(
            system, state + step_size * step, barrier_size, penalty
        )
        if bool(_sufficient_decrease(merit_new, merit_0, step_size, slope)):
            success = True
            break
        step_size = step_size / 2
        n_halvings += 1

    if not success:
        logger.debug(
            "Scaled step found no sufficient decrease; using step size %g",
            step_size,
        )

    return ScaledStepResult(
        state=state + step_size * step,
        step_size=step_size,
        success=success,
        n_halvings=n_halvings,
    )
