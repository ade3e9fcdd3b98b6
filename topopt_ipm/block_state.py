"""Block-partitioned state vector for the SAND interior-point method.

Every primal, dual and slack variable of the problem lives in one of nine
named segments. The segments are stored as fields of an ``eqx.Module``, so a
``BlockState`` is an immutable JAX PyTree: arithmetic returns new states and
snapshots taken by the line search never alias the current iterate.
"""

from collections.abc import Iterable

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Float

from topopt_ipm.types import InfeasibleStateError, Scalar

SEGMENTS = (
    "density",
    "displacement",
    "unfiltered_density",
    "displacement_multiplier",
    "unfiltered_density_multiplier",
    "density_lower_slack",
    "density_lower_slack_multiplier",
    "density_upper_slack",
    "density_upper_slack_multiplier",
)

# Primal decision variables of the optimization problem
DECISION_VARIABLES = ("density", "displacement", "unfiltered_density")

# Residual blocks holding the equality constraints (elasticity, filter and
# the two slack definitions)
EQUALITY_CONSTRAINTS = (
    "displacement_multiplier",
    "unfiltered_density_multiplier",
    "density_lower_slack_multiplier",
    "density_upper_slack_multiplier",
)

SLACKS = ("density_lower_slack", "density_upper_slack")
SLACK_MULTIPLIERS = ("density_lower_slack_multiplier", "density_upper_slack_multiplier")

# Blocks scaled by the primal (s) and dual (z) fraction-to-boundary lengths
PRIMAL_STEP_BLOCKS = DECISION_VARIABLES + SLACKS
DUAL_STEP_BLOCKS = EQUALITY_CONSTRAINTS

# Segments sized by the number of displacement degrees of freedom
_DISPLACEMENT_LIKE = ("displacement", "displacement_multiplier")


class BlockState(eqx.Module):
    """All variables of the SAND problem, split into named segments.

    Density-like segments have one entry per design cell; the displacement
    and its multiplier have one entry per displacement degree of freedom.

    Attributes:
        density: Filtered density.
        displacement: Displacement field.
        unfiltered_density: Density before the filter is applied.
        displacement_multiplier: Multiplier of the elasticity equation.
        unfiltered_density_multiplier: Multiplier of the filter equation.
        density_lower_slack: Slack of the lower density bound.
        density_lower_slack_multiplier: Multiplier of the lower slack.
        density_upper_slack: Slack of the upper density bound.
        density_upper_slack_multiplier: Multiplier of the upper slack.
    """

    density: Float[Array, " n_density"]
    displacement: Float[Array, " n_displacement"]
    unfiltered_density: Float[Array, " n_density"]
    displacement_multiplier: Float[Array, " n_displacement"]
    unfiltered_density_multiplier: Float[Array, " n_density"]
    density_lower_slack: Float[Array, " n_density"]
    density_lower_slack_multiplier: Float[Array, " n_density"]
    density_upper_slack: Float[Array, " n_density"]
    density_upper_slack_multiplier: Float[Array, " n_density"]

    @classmethod
    def zeros(cls, n_density: int, n_displacement: int, dtype=None) -> "BlockState":
        """Create a state with every segment set to zero."""
        blocks = {}
        for name in SEGMENTS:
            size = n_displacement if name in _DISPLACEMENT_LIKE else n_density
            blocks[name] = jnp.zeros((size,), dtype=dtype)
        return cls(**blocks)

    def block(self, name: str) -> Float[Array, " m"]:
        """Return the segment called ``name``."""
        if name not in SEGMENTS:
            raise KeyError(f"Unknown block {name!r}; expected one of {SEGMENTS}")
        return getattr(self, name)

    def blocks(self) -> dict[str, Float[Array, " m"]]:
        return {name: getattr(self, name) for name in SEGMENTS}

    def replace_blocks(self, **blocks: Float[Array, " m"]) -> "BlockState":
        """Return a copy with the given segments replaced."""
        values = self.blocks()
        for name, value in blocks.items():
            if name not in SEGMENTS:
                raise KeyError(f"Unknown block {name!r}")
            values[name] = jnp.asarray(value)
        return BlockState(**values)

    # Arithmetic -----------------------------------------------------------

    def __add__(self, other: "BlockState") -> "BlockState":
        return jax.tree_util.tree_map(jnp.add, self, other)

    def __sub__(self, other: "BlockState") -> "BlockState":
        return jax.tree_util.tree_map(jnp.subtract, self, other)

    def __neg__(self) -> "BlockState":
        return jax.tree_util.tree_map(jnp.negative, self)

    def __mul__(self, factor) -> "BlockState":
        return jax.tree_util.tree_map(lambda x: factor * x, self)

    __rmul__ = __mul__

    def zeros_like(self) -> "BlockState":
        return jax.tree_util.tree_map(jnp.zeros_like, self)

    def restrict(self, names: Iterable[str]) -> "BlockState":
        """Keep the segments in ``names`` and zero out all others."""
        keep = set(names)
        return BlockState(
            **{
                name: value if name in keep else jnp.zeros_like(value)
                for name, value in self.blocks().items()
            }
        )

    def scale_blocks(self, factor, names: Iterable[str]) -> "BlockState":
        """Multiply the segments in ``names`` by ``factor``."""
        scaled = {name: factor * self.block(name) for name in names}
        return self.replace_blocks(**scaled)

    # Reductions -----------------------------------------------------------

    def dot(self, other: "BlockState", names: Iterable[str] | None = None) -> Scalar:
        """Inner product, optionally restricted to the segments in ``names``."""
        if names is None:
            names = SEGMENTS
        return sum(
            (jnp.dot(self.block(name), other.block(name)) for name in names),
            start=jnp.array(0.0),
        )

    def block_l1_norm(self, name: str) -> Scalar:
        return jnp.sum(jnp.abs(self.block(name)))

    def block_linfty_norm(self, name: str) -> Scalar:
        value = self.block(name)
        if value.size == 0:
            return jnp.array(0.0)
        return jnp.max(jnp.abs(value))

    def l1_norm(self) -> Scalar:
        return sum((self.block_l1_norm(name) for name in SEGMENTS), start=jnp.array(0.0))

    def linfty_norm(self) -> Scalar:
        return jnp.max(jnp.stack([self.block_linfty_norm(name) for name in SEGMENTS]))

    def is_non_negative(self, name: str) -> Bool[Array, ""]:
        """Whether every entry of the segment ``name`` is >= 0."""
        return jnp.all(self.block(name) >= 0)

    def is_strictly_interior(self) -> Bool[Array, ""]:
        """Whether all slacks and slack multipliers are strictly positive."""
        checks = [jnp.all(self.block(name) > 0) for name in SLACKS + SLACK_MULTIPLIERS]
        return jnp.all(jnp.stack(checks))

    def check_interior(self) -> "BlockState":
        """Raise ``InfeasibleStateError`` unless the state is strictly interior."""
        for name in SLACKS + SLACK_MULTIPLIERS:
            if not bool(jnp.all(self.block(name) > 0)):
                raise InfeasibleStateError(
                    f"Block {name!r} must be strictly positive, "
                    f"found minimum {float(jnp.min(self.block(name)))}"
                )
        return self


def initial_state(
    n_density: int,
    n_displacement: int,
    density_ratio: float = 0.5,
    slack_multiplier: float = 50.0,
    dtype=None,
) -> BlockState:
    """Build the standard starting point of the SAND iteration.

    The design starts uniform at ``density_ratio`` with zero displacement.
    The slack multipliers start at ``slack_multiplier``; with the default
    values the products ``s * z`` equal the initial barrier size of 25.

    Args:
        n_density: Number of design cells.
        n_displacement: Number of displacement degrees of freedom.
        density_ratio: Initial mean density.
        slack_multiplier: Initial value of both slack multipliers.
        dtype: Optional floating point dtype.

    Returns:
        A strictly interior ``BlockState``.
    """
    density = jnp.full((n_density,), density_ratio, dtype=dtype)
    zeros_u = jnp.zeros((n_displacement,), dtype=density.dtype)
    return BlockState(
        density=density,
        displacement=zeros_u,
        unfiltered_density=density,
        displacement_multiplier=zeros_u,
        unfiltered_density_multiplier=density,
        density_lower_slack=density,
        density_lower_slack_multiplier=jnp.full_like(density, slack_multiplier),
        density_upper_slack=1.0 - density,
        density_upper_slack_multiplier=jnp.full_like(density, slack_multiplier),
    )
