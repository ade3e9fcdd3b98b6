"""topopt-ipm: a primal-dual interior-point method for SAND topology optimization.

This package drives the barrier-relaxed KKT system of a simultaneous analysis
and design (SAND) topology-optimization problem to a local optimum. It
provides the barrier continuation loop, a non-monotone watchdog line search
on an exact l1 merit function, the fraction-to-boundary rule and the
adaptive merit penalty. Assembly and solution of the Newton systems are
delegated to a ``KKTSystem`` collaborator; a dense reference collaborator
built on JAX autodiff and lineax is included.
"""

from topopt_ipm.barrier import check_convergence, update_barrier_size
from topopt_ipm.block_state import (
    DECISION_VARIABLES,
    EQUALITY_CONSTRAINTS,
    SEGMENTS,
    BlockState,
    initial_state,
)
from topopt_ipm.kkt import LagrangianKKTSystem, TimedKKTSystem
from topopt_ipm.merit import (
    ScaledStepResult,
    calculate_exact_merit,
    compute_merit,
    estimate_penalty_parameter,
    merit_directional_derivative,
    take_scaled_step,
    update_penalty_parameter,
)
from topopt_ipm.solver import (
    InteriorPointSolution,
    InteriorPointSolver,
    InteriorPointState,
)
from topopt_ipm.step_size import calculate_max_step_size, fraction_to_boundary, scale_step
from topopt_ipm.types import CheckpointFn, InfeasibleStateError, KKTSystem
from topopt_ipm.watchdog import (
    NewtonStep,
    WatchdogOutcome,
    WatchdogResult,
    find_max_step,
    run_watchdog,
)

__all__ = [
    # Main solver
    "InteriorPointSolver",
    "InteriorPointState",
    "InteriorPointSolution",
    # State
    "BlockState",
    "initial_state",
    "SEGMENTS",
    "DECISION_VARIABLES",
    "EQUALITY_CONSTRAINTS",
    # Types
    "KKTSystem",
    "CheckpointFn",
    "InfeasibleStateError",
    # Collaborators
    "LagrangianKKTSystem",
    "TimedKKTSystem",
    # Step size
    "fraction_to_boundary",
    "calculate_max_step_size",
    "scale_step",
    # Merit function
    "compute_merit",
    "calculate_exact_merit",
    "merit_directional_derivative",
    "estimate_penalty_parameter",
    "update_penalty_parameter",
    "take_scaled_step",
    "ScaledStepResult",
    # Watchdog
    "find_max_step",
    "run_watchdog",
    "NewtonStep",
    "WatchdogOutcome",
    "WatchdogResult",
    # Barrier continuation
    "check_convergence",
    "update_barrier_size",
]
