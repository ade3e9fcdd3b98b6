"""Tests for the watchdog line search.

The scenarios drive the state machine with a quadratic system whose Newton
step is rescaled by a fixed factor:

- ``1.0``: exact Newton steps, accepted immediately.
- ``2.0``: every step reflects through the target, so no speculative step
  decreases the merit but half a step from the end of the trajectory does.
- ``-1.0``: anti-Newton steps, every iterate is worse than the last.
- ``0.0``: the iteration stalls.
"""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from topopt_ipm.block_state import SLACK_MULTIPLIERS, SLACKS, initial_state
from topopt_ipm.kkt import LagrangianKKTSystem
from topopt_ipm.merit import calculate_exact_merit
from topopt_ipm.watchdog import WatchdogOutcome, find_max_step, run_watchdog

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def _quadratic_system(target, curvature=1.0):
    def lagrangian(x, barrier_size):
        diff = x - target
        return 0.5 * curvature * diff.dot(diff)

    def objective(x):
        return 0.0 * jnp.sum(x.displacement)

    return LagrangianKKTSystem(lagrangian, objective)


class _ScaledNewtonSystem:
    """Delegates to a system and multiplies every Newton step by ``factor``."""

    def __init__(self, system, factor):
        self.system = system
        self.factor = factor
        self.assemble_calls = 0

    def assemble(self, state, barrier_size):
        self.assemble_calls += 1
        return self.system.assemble(state, barrier_size)

    def solve(self, matrix, residual):
        return self.factor * self.system.solve(matrix, residual)

    def residual_only(self, state, barrier_size):
        return self.system.residual_only(state, barrier_size)

    def objective(self, state):
        return self.system.objective(state)


def _scenario(factor, n=3):
    state = initial_state(n, n)
    target = state.replace_blocks(displacement_multiplier=jnp.ones(n))
    return _ScaledNewtonSystem(_quadratic_system(target), factor), state


class TestFindMaxStep:
    """Tests for the scaled Newton step."""

    def test_exact_step_is_kept(self):
        system, state = _scenario(1.0)
        newton = find_max_step(system, state, 25.0, jnp.array(1.0))

        np.testing.assert_allclose(newton.step.displacement_multiplier, 1.0, rtol=1e-12)
        np.testing.assert_allclose(newton.step_size_s, 1.0, rtol=1e-12)
        np.testing.assert_allclose(newton.step_size_z, 1.0, rtol=1e-12)
        np.testing.assert_allclose(newton.penalty, 1.0)

    def test_step_keeps_slacks_positive(self):
        state = initial_state(3, 3)
        target = state.replace_blocks(
            density_lower_slack=jnp.full((3,), -1.0),
            density_upper_slack_multiplier=jnp.full((3,), -10.0),
        )
        newton = find_max_step(_quadratic_system(target), state, 25.0, jnp.array(1.0))

        moved = state + newton.step
        for name in SLACKS + SLACK_MULTIPLIERS:
            assert bool(jnp.all(moved.block(name) > 0)), name
        # 0.8 * 0.5 - 1.5 * s >= 0 and 0.8 * 50 - 60 * z >= 0
        np.testing.assert_allclose(newton.step_size_s, 0.4 / 1.5, atol=1e-12)
        np.testing.assert_allclose(newton.step_size_z, 40.0 / 60.0, atol=1e-12)

    def test_penalty_update_is_logged(self, caplog):
        state = initial_state(3, 3)
        target = state.replace_blocks(
            density=jnp.full((3,), 1.5), displacement_multiplier=jnp.ones(3)
        )
        system = _quadratic_system(target, curvature=-1.0)

        with caplog.at_level(logging.INFO, logger="topopt_ipm.watchdog"):
            newton = find_max_step(system, state, 25.0, jnp.array(1.0))

        np.testing.assert_allclose(newton.penalty, 60.0, rtol=1e-10)
        assert "penalty multiplier updated to 60" in caplog.text

    def test_penalty_never_decreases(self):
        system, state = _scenario(1.0)
        newton = find_max_step(system, state, 25.0, jnp.array(1e3))
        np.testing.assert_allclose(newton.penalty, 1e3)


class TestRunWatchdog:
    """Tests for the watchdog state machine."""

    def test_newton_step_accepted_immediately(self):
        system, state = _scenario(1.0)
        result = run_watchdog(system, state, 25.0, jnp.array(1.0))

        assert result.outcome == WatchdogOutcome.UPHILL_ACCEPTED
        assert result.iterations == 1
        assert system.assemble_calls == 1
        np.testing.assert_allclose(result.state.displacement_multiplier, 1.0, rtol=1e-12)
        assert float(result.merit) < float(
            calculate_exact_merit(system, state, 25.0, 1.0)
        )

    def test_reflection_accepts_stretch(self):
        system, state = _scenario(2.0)
        result = run_watchdog(system, state, 25.0, jnp.array(1.0))

        assert result.outcome == WatchdogOutcome.STRETCH_ACCEPTED
        assert result.iterations == 9
        # eight speculative steps plus the stretch step
        assert system.assemble_calls == 9
        np.testing.assert_allclose(result.state.displacement_multiplier, 1.0, atol=1e-8)

    def test_ascent_restarts_from_watchdog(self):
        system, state = _scenario(-1.0)
        result = run_watchdog(system, state, 25.0, jnp.array(1.0))

        assert result.outcome == WatchdogOutcome.WATCHDOG_RESTART
        assert result.iterations == 9
        # the restart reuses the first step of the cycle
        np.testing.assert_allclose(
            result.state.displacement_multiplier, -(2.0**-10), rtol=1e-10
        )

    def test_stall_continues_from_stretch(self):
        system, state = _scenario(0.0)
        result = run_watchdog(system, state, 25.0, jnp.array(1.0))

        assert result.outcome == WatchdogOutcome.STRETCH_CONTINUED
        assert result.iterations == 10
        assert system.assemble_calls == 10
        np.testing.assert_allclose(result.state.displacement_multiplier, 0.0)

    @pytest.mark.parametrize("max_uphill_steps", [1, 3])
    def test_iteration_cost_follows_uphill_steps(self, max_uphill_steps):
        system, state = _scenario(-1.0)
        result = run_watchdog(
            system, state, 25.0, jnp.array(1.0), max_uphill_steps=max_uphill_steps
        )
        assert result.iterations == max_uphill_steps + 1

    @pytest.mark.parametrize("factor", [1.0, 2.0, -1.0, 0.0])
    def test_iterate_stays_interior(self, factor):
        system, state = _scenario(factor)
        result = run_watchdog(system, state, 25.0, jnp.array(1.0))
        assert bool(result.state.is_strictly_interior())
        assert float(result.penalty) >= 1.0

    def test_invalid_uphill_steps(self):
        system, state = _scenario(1.0)
        with pytest.raises(ValueError, match="max_uphill_steps"):
            run_watchdog(system, state, 25.0, jnp.array(1.0), max_uphill_steps=0)
