"""Tests for the fraction-to-boundary step length selection."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from topopt_ipm.block_state import (
    DUAL_STEP_BLOCKS,
    PRIMAL_STEP_BLOCKS,
    SLACK_MULTIPLIERS,
    SLACKS,
    BlockState,
    initial_state,
)
from topopt_ipm import step_size
from topopt_ipm.step_size import (
    calculate_max_step_size,
    fraction_to_boundary,
    scale_step,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def _slack_state(n=3, slack=1.0, multiplier=50.0):
    state = BlockState.zeros(n, n)
    return state.replace_blocks(
        **{name: jnp.full((n,), slack) for name in SLACKS},
        **{name: jnp.full((n,), multiplier) for name in SLACK_MULTIPLIERS},
    )


class TestFractionToBoundary:
    """Tests for tau = clamp(1 - mu, 0.8, 0.99999)."""

    @pytest.mark.parametrize(
        "barrier_size,expected",
        [(25.0, 0.8), (0.2, 0.8), (0.1, 0.9), (5e-4, 0.9995), (1e-7, 0.99999)],
    )
    def test_values(self, barrier_size, expected):
        np.testing.assert_allclose(fraction_to_boundary(barrier_size), expected, rtol=1e-12)

    def test_custom_bounds(self):
        np.testing.assert_allclose(fraction_to_boundary(0.5, 0.1, 0.3), 0.3)
        np.testing.assert_allclose(fraction_to_boundary(0.95, 0.1, 0.3), 0.1)


class TestCalculateMaxStepSize:
    """Tests for the bisection on the primal and dual step lengths."""

    def test_non_blocking_step_gives_full_length(self):
        state = _slack_state()
        step = _slack_state(slack=2.0, multiplier=1.0)
        s, z = calculate_max_step_size(state, step, 25.0)
        np.testing.assert_allclose(s, 1.0, rtol=1e-12)
        np.testing.assert_allclose(z, 1.0, rtol=1e-12)
        assert float(s) < 1.0
        assert float(z) < 1.0

    def test_zero_step_gives_full_length(self):
        state = initial_state(4, 4)
        s, z = calculate_max_step_size(state, BlockState.zeros(4, 4), 1.0)
        np.testing.assert_allclose(s, 1.0, rtol=1e-12)
        np.testing.assert_allclose(z, 1.0, rtol=1e-12)

    def test_blocking_slack(self):
        """0.8 * 1 - 2 * alpha >= 0 gives alpha = 0.4 at mu = 25."""
        state = _slack_state()
        step = BlockState.zeros(3, 3).replace_blocks(
            density_lower_slack=jnp.array([0.0, -2.0, 1.0])
        )
        s, z = calculate_max_step_size(state, step, 25.0)
        np.testing.assert_allclose(s, 0.4, atol=1e-12)
        np.testing.assert_allclose(z, 1.0, rtol=1e-12)

    def test_blocking_multipliers_independent_of_slacks(self):
        state = _slack_state()
        step = BlockState.zeros(3, 3).replace_blocks(
            density_lower_slack=jnp.full((3,), -4.0),
            density_lower_slack_multiplier=jnp.full((3,), -100.0),
            density_upper_slack_multiplier=jnp.full((3,), -200.0),
        )
        s, z = calculate_max_step_size(state, step, 25.0)
        np.testing.assert_allclose(s, 0.2, atol=1e-12)
        # the tightest of the two multiplier blocks wins
        np.testing.assert_allclose(z, 0.2, atol=1e-12)

    def test_fraction_depends_on_barrier(self):
        """At mu = 0.1, tau = 0.9 and the bound becomes 0.9 / 3."""
        state = _slack_state()
        step = BlockState.zeros(3, 3).replace_blocks(
            density_upper_slack=jnp.full((3,), -3.0)
        )
        s, _ = calculate_max_step_size(state, step, 0.1)
        np.testing.assert_allclose(s, 0.3, atol=1e-12)

    def test_other_blocks_are_ignored(self):
        state = _slack_state()
        step = BlockState.zeros(3, 3).replace_blocks(
            density=jnp.full((3,), -1e6),
            displacement=jnp.full((3,), 1e6),
        )
        s, z = calculate_max_step_size(state, step, 25.0)
        np.testing.assert_allclose(s, 1.0, rtol=1e-12)
        np.testing.assert_allclose(z, 1.0, rtol=1e-12)

    def test_result_keeps_segments_non_negative(self):
        key = jax.random.PRNGKey(0)
        state = initial_state(6, 6)
        for _ in range(5):
            key, subkey = jax.random.split(key)
            leaves, treedef = jax.tree_util.tree_flatten(state)
            keys = jax.random.split(subkey, len(leaves))
            noise = [100.0 * jax.random.normal(k, leaf.shape) for k, leaf in zip(keys, leaves)]
            step = jax.tree_util.tree_unflatten(treedef, noise)

            s, z = calculate_max_step_size(state, step, 0.5)
            assert 0.0 <= float(s) <= 1.0
            assert 0.0 <= float(z) <= 1.0
            moved = state + scale_step(step, s, z)
            for name in SLACKS + SLACK_MULTIPLIERS:
                assert bool(moved.is_non_negative(name)), name

    def test_non_interior_state_gives_zero(self):
        state = _slack_state().replace_blocks(density_lower_slack=jnp.array([1.0, -1.0, 1.0]))
        s, z = calculate_max_step_size(state, BlockState.zeros(3, 3), 25.0)
        np.testing.assert_allclose(s, 0.0)
        np.testing.assert_allclose(z, 1.0, rtol=1e-12)

    def test_bisection_compiled_once(self, monkeypatch):
        """New barrier sizes and iterates reuse the compiled bisection."""
        traced = []
        segments_non_negative = step_size._segments_non_negative

        def counting(*args):
            traced.append(None)
            return segments_non_negative(*args)

        monkeypatch.setattr(step_size, "_segments_non_negative", counting)

        state = _slack_state(n=11)
        step = BlockState.zeros(11, 11).replace_blocks(
            density_lower_slack=jnp.full((11,), -2.0)
        )
        calculate_max_step_size(state, step, 25.0)
        n_traced = len(traced)
        assert n_traced > 0

        s, _ = calculate_max_step_size(state, step, 0.1)
        calculate_max_step_size(2.0 * state, -step, 5e-4)
        assert len(traced) == n_traced
        np.testing.assert_allclose(s, 0.45, atol=1e-12)


class TestScaleStep:
    def test_scales_primal_and_dual_blocks_separately(self):
        step = initial_state(2, 3) + BlockState.zeros(2, 3).replace_blocks(
            displacement=jnp.ones(3), displacement_multiplier=jnp.ones(3)
        )
        scaled = scale_step(step, 0.5, 0.25)
        for name in PRIMAL_STEP_BLOCKS:
            np.testing.assert_allclose(scaled.block(name), 0.5 * step.block(name))
        for name in DUAL_STEP_BLOCKS:
            np.testing.assert_allclose(scaled.block(name), 0.25 * step.block(name))
