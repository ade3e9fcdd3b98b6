"""Type definitions for topopt-ipm.

This module contains type aliases and the collaborator protocol used
throughout the package. Array types use jaxtyping for runtime type checking
with beartype.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import lineax as lx
from jaxtyping import Array, Float

if TYPE_CHECKING:
    from topopt_ipm.block_state import BlockState

# Type alias for scalar arrays
Scalar = Float[Array, ""]

# Newton matrix: a linear operator from BlockState-shaped steps to
# BlockState-shaped residuals
NewtonMatrix = lx.AbstractLinearOperator

# objective_fn(state) -> scalar traction work
ObjectiveFn = Callable[["BlockState"], Scalar]

# Observer invoked after every accepted watchdog cycle:
# callback(iteration_number, state)
CheckpointFn = Callable[[int, "BlockState"], None]


class KKTSystem(Protocol):
    """Collaborator that discretizes the barrier-relaxed KKT conditions.

    The residual is the right-hand side of the Newton system, i.e. the
    negated gradient of the barrier Lagrangian, so that a step solves
    ``matrix @ step = residual``. A collaborator that eliminates unknowns
    (for instance to impose a volume constraint) returns the residual already
    condensed, with zeros in the eliminated rows.

    ``objective`` may return any real scalar; the merit function promotes it
    to the floating dtype of the state.
    """

    def assemble(
        self, state: "BlockState", barrier_size: Any
    ) -> tuple[NewtonMatrix, "BlockState"]: ...

    def solve(self, matrix: NewtonMatrix, residual: "BlockState") -> "BlockState": ...

    def residual_only(self, state: "BlockState", barrier_size: Any) -> "BlockState": ...

    def objective(self, state: "BlockState") -> Scalar: ...


class InfeasibleStateError(ValueError):
    """Raised when a slack or slack multiplier is not strictly positive."""
