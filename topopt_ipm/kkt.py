"""Dense reference implementation of the KKT collaborator.

The interior-point driver only sees the ``KKTSystem`` protocol. This module
provides an implementation for problems small enough to be written down as
a single scalar barrier Lagrangian ``L(state, barrier_size)``:

- the residual is ``-∇L`` (the Newton right-hand side),
- the Newton matrix is the Jacobian of ``∇L``, i.e. the Hessian of the
  Lagrangian, exposed as a ``lineax.PyTreeLinearOperator``,
- the Newton step is obtained with ``lineax.linear_solve``.

Assembly, residual evaluation and the solve are each compiled once with
``equinox.filter_jit``; the barrier size is passed as an array so that
shrinking it does not trigger recompilation.

Slack rows use the form ``z - μ/s`` that falls out of differentiating the
log-barrier, so no special treatment of the complementarity conditions is
needed.

A linear constraint ``Σ_i x_i = const`` on one block (the volume constraint
of a SAND problem) is imposed on the Newton step by condensation: the last
entry of the block is eliminated through ``Δx_last = -Σ_{i<last} Δx_i``. The
corresponding residual entries are condensed onto the remaining ones and
the eliminated row is reported as zero, so a starting point with the right
sum keeps it for the whole iteration.
"""

from collections.abc import Callable
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import lineax as lx

from topopt_ipm.block_state import SEGMENTS, BlockState
from topopt_ipm.types import KKTSystem, NewtonMatrix, ObjectiveFn, Scalar
from topopt_ipm.utils import Timer

# lagrangian_fn(state, barrier_size) -> scalar
LagrangianFn = Callable[[BlockState, Any], Scalar]


def _distribute(vector: BlockState, name: str) -> BlockState:
    """Expand a reduced step: the last entry of ``name`` balances the others."""
    block = vector.block(name)
    return vector.replace_blocks(**{name: block.at[-1].set(-jnp.sum(block[:-1]))})


def _condense(vector: BlockState, name: str) -> BlockState:
    """Transpose of ``_distribute``; the eliminated entry becomes zero."""
    block = vector.block(name)
    return vector.replace_blocks(**{name: block - block[-1]})


def _eliminated_entry(vector: BlockState, name: str) -> BlockState:
    block = vector.block(name)
    return vector.zeros_like().replace_blocks(
        **{name: jnp.zeros_like(block).at[-1].set(block[-1])}
    )


def _structure(leaf):
    return jax.ShapeDtypeStruct(leaf.shape, leaf.dtype)


def _as_array(barrier_size, state: BlockState):
    return jnp.asarray(barrier_size, dtype=state.density.dtype)


class LagrangianKKTSystem:
    """KKT collaborator obtained by differentiating a barrier Lagrangian.

    Attributes:
        lagrangian_fn: Barrier Lagrangian ``L(state, barrier_size)``.
        objective_fn: Objective used by the merit function.
        linear_solver: lineax solver for the Newton system. The KKT matrix
            is symmetric indefinite, so the default is LU.
        fixed_sum_block: Optional name of a block whose sum is held fixed
            by every Newton step.
    """

    def __init__(
        self,
        lagrangian_fn: LagrangianFn,
        objective_fn: ObjectiveFn,
        linear_solver: lx.AbstractLinearSolver | None = None,
        fixed_sum_block: str | None = None,
    ):
        if fixed_sum_block is not None and fixed_sum_block not in SEGMENTS:
            raise KeyError(f"unknown block {fixed_sum_block!r}")
        self.lagrangian_fn = lagrangian_fn
        self.objective_fn = objective_fn
        self.linear_solver = lx.LU() if linear_solver is None else linear_solver
        self.fixed_sum_block = fixed_sum_block

        gradient_fn = jax.grad(lagrangian_fn)

        def residual_fn(state, barrier_size):
            return self.condense(-gradient_fn(state, barrier_size))

        def assemble_fn(state, barrier_size):
            hessian = jax.jacfwd(gradient_fn)(state, barrier_size)
            matrix = lx.PyTreeLinearOperator(
                hessian, jax.tree_util.tree_map(_structure, state)
            )
            return matrix, residual_fn(state, barrier_size)

        self._gradient = eqx.filter_jit(gradient_fn)
        self._residual = eqx.filter_jit(residual_fn)
        self._assemble = eqx.filter_jit(assemble_fn)
        self._solve = eqx.filter_jit(self._solve_impl)
        self._objective = eqx.filter_jit(objective_fn)

    def condense(self, vector: BlockState) -> BlockState:
        """Map a full residual onto the rows left after the elimination."""
        if self.fixed_sum_block is None:
            return vector
        return _condense(vector, self.fixed_sum_block)

    def gradient(self, state: BlockState, barrier_size) -> BlockState:
        """Gradient of the Lagrangian (the KKT conditions)."""
        return self._gradient(state, _as_array(barrier_size, state))

    def residual_only(self, state: BlockState, barrier_size) -> BlockState:
        return self._residual(state, _as_array(barrier_size, state))

    def assemble(self, state: BlockState, barrier_size) -> tuple[NewtonMatrix, BlockState]:
        return self._assemble(state, _as_array(barrier_size, state))

    def solve(self, matrix: NewtonMatrix, residual: BlockState) -> BlockState:
        return self._solve(matrix, residual)

    def objective(self, state: BlockState) -> Scalar:
        return self._objective(state)

    def _solve_impl(self, matrix, residual):
        name = self.fixed_sum_block
        if name is None:
            return lx.linear_solve(matrix, residual, solver=self.linear_solver).value

        # Dᵀ J D + E, where E keeps the eliminated unknown from being singular
        def reduced_mv(vector):
            applied = matrix.mv(_distribute(vector, name))
            return _condense(applied, name) + _eliminated_entry(vector, name)

        reduced = lx.FunctionLinearOperator(reduced_mv, matrix.in_structure())
        solution = lx.linear_solve(reduced, residual, solver=self.linear_solver)
        return _distribute(solution.value, name)


class TimedKKTSystem:
    """Wraps a collaborator and records the time spent in each operation.

    Results are blocked on before each scope closes.
    """

    def __init__(self, system: KKTSystem, timer: Timer):
        self.system = system
        self.timer = timer

    def assemble(self, state: BlockState, barrier_size) -> tuple[NewtonMatrix, BlockState]:
        with self.timer.scope("assembly"):
            return jax.block_until_ready(self.system.assemble(state, barrier_size))

    def solve(self, matrix: NewtonMatrix, residual: BlockState) -> BlockState:
        with self.timer.scope("solver"):
            return jax.block_until_ready(self.system.solve(matrix, residual))

    def residual_only(self, state: BlockState, barrier_size) -> BlockState:
        with self.timer.scope("residual"):
            return jax.block_until_ready(self.system.residual_only(state, barrier_size))

    def objective(self, state: BlockState) -> Scalar:
        return self.system.objective(state)
