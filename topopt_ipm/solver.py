"""Primal-dual interior-point driver with barrier continuation.

This module contains the main solver class. It owns the iterate, the
barrier parameter and the merit penalty, and advances them one watchdog
cycle at a time:

1. Run a watchdog cycle (speculative Newton steps, falling back to
   backtracking) at the current barrier size.
2. Report the accepted iterate to an optional checkpoint callback.
3. Check the barrier-relaxed KKT conditions. Once they hold (or the global
   iteration cap is hit) the barrier parameter is shrunk.

The run ends when the barrier has reached its floor and the KKT conditions
hold there, or when the global iteration cap is reached.

The discretization of the problem is entirely delegated to a ``KKTSystem``
collaborator (see ``topopt_ipm.types``).
"""

import logging
from typing import Any, Optional

import equinox as eqx
import jax.numpy as jnp
import optimistix as optx
from jaxtyping import Array, Float

from topopt_ipm.barrier import check_convergence, update_barrier_size
from topopt_ipm.block_state import BlockState
from topopt_ipm.kkt import TimedKKTSystem
from topopt_ipm.types import CheckpointFn, KKTSystem
from topopt_ipm.utils import Timer
from topopt_ipm.watchdog import run_watchdog

logger = logging.getLogger(__name__)


class InteriorPointState(eqx.Module):
    """State of the interior-point driver.

    Attributes:
        iterate: Current primal-dual iterate (strictly interior).
        barrier_size: Current barrier parameter μ.
        penalty: Current merit penalty parameter ρ.
        iteration_number: Iteration budget consumed so far.
        num_cycles: Number of watchdog cycles run.
        converged: Whether the last convergence check at the current barrier
            size passed.
        last_outcome: ``WatchdogOutcome`` of the last cycle (-1 before the
            first one).
    """

    iterate: BlockState
    barrier_size: float
    penalty: Float[Array, ""]
    iteration_number: int
    num_cycles: int
    converged: bool
    last_outcome: int


class InteriorPointSolution(eqx.Module):
    """Result of ``InteriorPointSolver.run``.

    Attributes:
        value: Final iterate.
        result: ``optx.RESULTS.successful`` or ``optx.RESULTS.max_steps_reached``.
        state: Final solver state.
        stats: Solver statistics from ``postprocess``.
    """

    value: BlockState
    result: optx.RESULTS
    state: InteriorPointState
    stats: dict[str, Any]


class InteriorPointSolver(eqx.Module):
    """Interior-point solver for the SAND topology-optimization KKT system.

    Attributes:
        initial_barrier_size: Starting barrier parameter.
        min_barrier_size: Floor of the barrier parameter.
        barrier_size_multiplier: Linear barrier reduction factor.
        barrier_size_exponent: Superlinear barrier reduction exponent.
        max_uphill_steps: Speculative steps per watchdog cycle.
        max_iterations: Global iteration cap.
        descent_requirement: Sufficient decrease constant of the line search.
        convergence_tolerance: KKT residual tolerance relative to the barrier.
        initial_penalty: Starting merit penalty parameter.
        merit_perturbation: Finite-difference step for merit derivatives.
        max_halvings: Maximum halvings of a scaled step.
        bisection_steps: Bisection iterations of the step-size search.
        min_fraction_to_boundary: Lower bound of the fraction to the boundary.
        max_fraction_to_boundary: Upper bound of the fraction to the boundary.

    Example:
        >>> from topopt_ipm import InteriorPointSolver
        >>> from topopt_ipm.problems import spring_chain_problem
        >>>
        >>> system, state = spring_chain_problem(n_elements=4)
        >>> solution = InteriorPointSolver(max_iterations=200).run(system, state)
    """

    # Barrier continuation
    initial_barrier_size: float = 25.0
    min_barrier_size: float = 5e-4
    barrier_size_multiplier: float = 0.8
    barrier_size_exponent: float = 1.2

    # Iteration caps (static - they shape the control flow)
    max_uphill_steps: int = eqx.field(static=True, default=8)
    max_iterations: int = eqx.field(static=True, default=10000)

    # Line search and convergence
    descent_requirement: float = 1e-4
    convergence_tolerance: float = 1e-2
    initial_penalty: float = 1.0
    merit_perturbation: float = 1e-4
    max_halvings: int = eqx.field(static=True, default=10)

    # Fraction-to-boundary rule
    bisection_steps: int = eqx.field(static=True, default=50)
    min_fraction_to_boundary: float = 0.8
    max_fraction_to_boundary: float = 0.99999

    def __check_init__(self):
        """Validate the configuration."""
        if self.min_barrier_size <= 0:
            raise ValueError("min_barrier_size must be positive")
        if self.initial_barrier_size < self.min_barrier_size:
            raise ValueError("initial_barrier_size must be >= min_barrier_size")
        if not 0 < self.barrier_size_multiplier < 1:
            raise ValueError("barrier_size_multiplier must lie in (0, 1)")
        if self.barrier_size_exponent <= 1:
            raise ValueError("barrier_size_exponent must be > 1")
        if self.max_uphill_steps < 1:
            raise ValueError("max_uphill_steps must be >= 1")
        if self.initial_penalty <= 0:
            raise ValueError("initial_penalty must be positive")
        if not 0 < self.min_fraction_to_boundary <= self.max_fraction_to_boundary < 1:
            raise ValueError(
                "fraction to boundary bounds must satisfy 0 < min <= max < 1"
            )

    def init(self, system: KKTSystem, y: BlockState) -> InteriorPointState:
        """Initialize the solver state.

        Args:
            system: KKT collaborator.
            y: Starting iterate. Slacks and slack multipliers must be
                strictly positive.

        Returns:
            Initial InteriorPointState.

        Raises:
            InfeasibleStateError: If ``y`` is not strictly interior.
        """
        y.check_interior()
        return InteriorPointState(
            iterate=y,
            barrier_size=float(self.initial_barrier_size),
            penalty=jnp.asarray(self.initial_penalty, dtype=y.density.dtype),
            iteration_number=0,
            num_cycles=0,
            converged=False,
            last_outcome=-1,
        )

    def step(
        self,
        system: KKTSystem,
        state: InteriorPointState,
        callback: Optional[CheckpointFn] = None,
    ) -> InteriorPointState:
        """Perform one watchdog cycle and, if due, shrink the barrier.

        Args:
            system: KKT collaborator.
            state: Current solver state.
            callback: Optional observer called with the iteration number and
                the accepted iterate.

        Returns:
            The new solver state.
        """
        barrier_size = state.barrier_size
        cycle = run_watchdog(
            system,
            state.iterate,
            barrier_size,
            state.penalty,
            max_uphill_steps=self.max_uphill_steps,
            descent_requirement=self.descent_requirement,
            perturbation=self.merit_perturbation,
            max_halvings=self.max_halvings,
            bisection_steps=self.bisection_steps,
            min_fraction=self.min_fraction_to_boundary,
            max_fraction=self.max_fraction_to_boundary,
        )
        iteration_number = state.iteration_number + cycle.iterations

        if callback is not None:
            callback(iteration_number, cycle.state)

        converged = check_convergence(
            system, cycle.state, barrier_size, self.convergence_tolerance
        )
        if converged or iteration_number >= self.max_iterations:
            barrier_size = update_barrier_size(
                barrier_size,
                self.min_barrier_size,
                self.barrier_size_multiplier,
                self.barrier_size_exponent,
            )
            logger.info(
                "barrier size reduced to %g on iteration number %d",
                barrier_size,
                iteration_number,
            )

        return InteriorPointState(
            iterate=cycle.state,
            barrier_size=barrier_size,
            penalty=cycle.penalty,
            iteration_number=iteration_number,
            num_cycles=state.num_cycles + 1,
            converged=converged,
            last_outcome=cycle.outcome,
        )

    def terminate(
        self, system: KKTSystem, state: InteriorPointState
    ) -> tuple[bool, optx.RESULTS]:
        """Check if the solver should terminate.

        The iteration continues while

            (barrier_size > min_barrier_size or not converged) and
            iteration_number < max_iterations

        Args:
            system: KKT collaborator.
            state: Current solver state.

        Returns:
            Tuple of (done, result).
        """
        if state.iteration_number >= self.max_iterations:
            return True, optx.RESULTS.max_steps_reached
        if state.barrier_size > self.min_barrier_size:
            return False, optx.RESULTS.successful
        converged = check_convergence(
            system, state.iterate, state.barrier_size, self.convergence_tolerance
        )
        return converged, optx.RESULTS.successful

    def postprocess(
        self,
        system: KKTSystem,
        state: InteriorPointState,
        timer: Optional[Timer] = None,
    ) -> dict[str, Any]:
        """Collect solver statistics.

        Args:
            system: KKT collaborator.
            state: Final solver state.
            timer: Optional timer whose summary is reported.

        Returns:
            Dictionary of solver statistics.
        """
        residual = system.residual_only(state.iterate, state.barrier_size)
        return {
            "num_steps": state.iteration_number,
            "num_cycles": state.num_cycles,
            "final_barrier_size": state.barrier_size,
            "final_penalty": state.penalty,
            "final_objective": system.objective(state.iterate),
            "final_residual_norm": residual.l1_norm(),
            "timings": {} if timer is None else timer.summary(),
        }

    def run(
        self,
        system: KKTSystem,
        y: BlockState,
        callback: Optional[CheckpointFn] = None,
    ) -> InteriorPointSolution:
        """Run the interior-point method to termination.

        Collaborator errors (e.g. a singular Newton system) propagate to the
        caller unchanged.

        Args:
            system: KKT collaborator.
            y: Strictly interior starting iterate.
            callback: Optional checkpoint observer, called after every
                accepted watchdog cycle.

        Returns:
            InteriorPointSolution with the final iterate and statistics.
        """
        timer = Timer()
        timed_system = TimedKKTSystem(system, timer)

        with timer.scope("setup"):
            state = self.init(timed_system, y)

        done, result = self.terminate(timed_system, state)
        while not done:
            state = self.step(timed_system, state, callback)
            done, result = self.terminate(timed_system, state)

        stats = self.postprocess(timed_system, state, timer)
        return InteriorPointSolution(value=state.iterate, result=result, state=state, stats=stats)
