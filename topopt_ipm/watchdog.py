"""Watchdog line search for the interior-point iteration.

The watchdog tolerates a bounded number of full Newton steps that increase
the merit function before it demands descent. Near the central path this
avoids the very short steps a monotone line search would force on the
iteration. If none of the speculative steps reaches the goal merit, the
controller falls back to backtracking from either the end or the beginning
of the speculative trajectory.

State machine of one cycle::

    SPECULATING --(goal met after k+1 steps)--------------> ACCEPTED
        |
        +--(max_uphill_steps exhausted)--> BACKTRACKING --> ACCEPTED
"""

import logging
from typing import NamedTuple

import jax.numpy as jnp

from topopt_ipm.block_state import BlockState
from topopt_ipm.merit import (
    calculate_exact_merit,
    estimate_penalty_parameter,
    merit_directional_derivative,
    take_scaled_step,
    update_penalty_parameter,
)
from topopt_ipm.step_size import calculate_max_step_size, scale_step
from topopt_ipm.types import KKTSystem, Scalar

logger = logging.getLogger(__name__)


class WatchdogOutcome:
    """Constants describing how a watchdog cycle picked its new iterate."""

    # A speculative full step met the goal merit
    UPHILL_ACCEPTED = 0
    # Backtracked from the end of the speculative trajectory
    STRETCH_ACCEPTED = 1
    # Backtracked from the watchdog state along the first step
    WATCHDOG_RESTART = 2
    # One more backtracked step taken from the stretch state
    STRETCH_CONTINUED = 3


class NewtonStep(NamedTuple):
    """Fraction-to-boundary scaled Newton step.

    Attributes:
        step: The scaled step.
        penalty: Penalty parameter after the update at this iterate.
        step_size_s: Primal (slack) step length.
        step_size_z: Dual (slack multiplier) step length.
    """

    step: BlockState
    penalty: Scalar
    step_size_s: Scalar
    step_size_z: Scalar


class WatchdogResult(NamedTuple):
    """Result from one watchdog cycle.

    Attributes:
        state: The accepted iterate.
        penalty: Penalty parameter at the end of the cycle.
        iterations: Iteration budget consumed by the cycle.
        outcome: One of the ``WatchdogOutcome`` constants.
        merit: Merit of the accepted iterate.
    """

    state: BlockState
    penalty: Scalar
    iterations: int
    outcome: int
    merit: Scalar


def find_max_step(
    system: KKTSystem,
    state: BlockState,
    barrier_size,
    penalty,
    bisection_steps: int = 50,
    min_fraction: float = 0.8,
    max_fraction: float = 0.99999,
) -> NewtonStep:
    """Compute a Newton step, update the penalty and scale the step.

    Args:
        system: KKT collaborator.
        state: Current iterate.
        barrier_size: Current barrier parameter.
        penalty: Current penalty parameter.
        bisection_steps: Bisection iterations of the step-size search.
        min_fraction: Lower bound of the fraction to the boundary.
        max_fraction: Upper bound of the fraction to the boundary.

    Returns:
        NewtonStep holding the scaled step and the updated penalty.
    """
    matrix, residual = system.assemble(state, barrier_size)
    step = system.solve(matrix, residual)

    penalty = jnp.asarray(penalty)
    trial_penalty = estimate_penalty_parameter(matrix, residual, step)
    new_penalty = update_penalty_parameter(penalty, trial_penalty.astype(penalty.dtype))
    if bool(new_penalty > penalty):
        logger.info("penalty multiplier updated to %g", float(new_penalty))

    step_size_s, step_size_z = calculate_max_step_size(
        state, step, barrier_size, bisection_steps, min_fraction, max_fraction
    )
    return NewtonStep(
        step=scale_step(step, step_size_s, step_size_z),
        penalty=new_penalty,
        step_size_s=step_size_s,
        step_size_z=step_size_z,
    )


def run_watchdog(
    system: KKTSystem,
    state: BlockState,
    barrier_size,
    penalty,
    max_uphill_steps: int = 8,
    descent_requirement: float = 1e-4,
    perturbation: float = 1e-4,
    max_halvings: int = 10,
    bisection_steps: int = 50,
    min_fraction: float = 0.8,
    max_fraction: float = 0.99999,
) -> WatchdogResult:
    """Run one watchdog cycle starting from ``state``.

    Speculation: up to ``max_uphill_steps`` full (fraction-to-boundary
    scaled) Newton steps are applied without any merit check. After each
    one the merit is compared with

        goal = φ(w) + descent_requirement * φ'(w; d_w)

    where w is the watchdog state and d_w the first step of the cycle. The
    first iterate below the goal is accepted.

    Backtracking: if no speculative iterate is accepted, a scaled step is
    taken from the end of the trajectory (the "stretch" state). It is kept
    if the trajectory end already beats the watchdog merit or the stretch
    state meets the goal. Otherwise, if the stretch state is worse than the
    watchdog state the cycle restarts with a scaled step from the watchdog
    state along d_w; if not, one more scaled step is taken from the stretch
    state.

    Args:
        system: KKT collaborator.
        state: Current iterate; it becomes the watchdog state.
        barrier_size: Current barrier parameter.
        penalty: Current penalty parameter.
        max_uphill_steps: Number of speculative steps before backtracking.
        descent_requirement: Sufficient decrease constant.
        perturbation: Finite-difference perturbation for φ'.
        max_halvings: Maximum halvings of a scaled step.
        bisection_steps: Bisection iterations of the step-size search.
        min_fraction: Lower bound of the fraction to the boundary.
        max_fraction: Upper bound of the fraction to the boundary.

    Returns:
        WatchdogResult with the accepted iterate and consumed iterations.
    """
    if max_uphill_steps < 1:
        raise ValueError(f"max_uphill_steps must be >= 1, got {max_uphill_steps}")

    step_options = dict(
        bisection_steps=bisection_steps,
        min_fraction=min_fraction,
        max_fraction=max_fraction,
    )
    scaled_options = dict(max_halvings=max_halvings, perturbation=perturbation)

    def merit(test_state):
        return calculate_exact_merit(system, test_state, barrier_size, penalty)

    def goal_merit(watchdog_state, watchdog_step):
        merit_derivative = merit_directional_derivative(
            system, watchdog_state, watchdog_step, barrier_size, penalty, perturbation
        )
        return merit(watchdog_state) + descent_requirement * merit_derivative

    watchdog_state = state
    watchdog_step = None
    current_state = state
    goal = None

    # SPECULATING
    for k in range(max_uphill_steps):
        newton = find_max_step(system, current_state, barrier_size, penalty, **step_options)
        penalty = newton.penalty
        if k == 0:
            watchdog_step = newton.step

        current_state = current_state + newton.step

        current_merit = merit(current_state)
        goal = goal_merit(watchdog_state, watchdog_step)
        logger.debug(
            "current merit is %g and goal merit is %g",
            float(current_merit),
            float(goal),
        )
        if bool(current_merit < goal):
            logger.info("found workable step after %d iterations", k + 1)
            return WatchdogResult(
                state=current_state,
                penalty=penalty,
                iterations=k + 1,
                outcome=WatchdogOutcome.UPHILL_ACCEPTED,
                merit=current_merit,
            )

    # BACKTRACKING
    newton = find_max_step(system, current_state, barrier_size, penalty, **step_options)
    penalty = newton.penalty
    stretch = take_scaled_step(
        system,
        current_state,
        newton.step,
        descent_requirement,
        barrier_size,
        penalty,
        **scaled_options,
    )
    stretch_merit = merit(stretch.state)
    watchdog_merit = merit(watchdog_state)

    if bool(merit(current_state) < watchdog_merit) or bool(stretch_merit < goal):
        logger.info("Taking scaled step from end of watchdog")
        return WatchdogResult(
            state=stretch.state,
            penalty=penalty,
            iterations=max_uphill_steps + 1,
            outcome=WatchdogOutcome.STRETCH_ACCEPTED,
            merit=stretch_merit,
        )

    logger.info("Taking scaled step from beginning of watchdog")
    if bool(stretch_merit > watchdog_merit):
        restart = take_scaled_step(
            system,
            watchdog_state,
            watchdog_step,
            descent_requirement,
            barrier_size,
            penalty,
            **scaled_options,
        )
        return WatchdogResult(
            state=restart.state,
            penalty=penalty,
            iterations=max_uphill_steps + 1,
            outcome=WatchdogOutcome.WATCHDOG_RESTART,
            merit=merit(restart.state),
        )

    newton = find_max_step(system, stretch.state, barrier_size, penalty, **step_options)
    penalty = newton.penalty
    continued = take_scaled_step(
        system,
        stretch.state,
        newton.step,
        descent_requirement,
        barrier_size,
        penalty,
        **scaled_options,
    )
    return WatchdogResult(
        state=continued.state,
        penalty=penalty,
        iterations=max_uphill_steps + 2,
        outcome=WatchdogOutcome.STRETCH_CONTINUED,
        merit=merit(continued.state),
    )
