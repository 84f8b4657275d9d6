"""
Input designs: candidate input vectors inside the discovered ranges.

Each equation gets its own numpy Generator seeded from the global seed and a
stable digest of the equation id, so results do not depend on the order in
which equations are processed. The whole attempt budget of candidates is
drawn up front; which candidates converge never changes the sequence.
"""

from __future__ import annotations

import math
import zlib
from typing import Callable, Dict, List, Sequence

import numpy as np

from nlsurrogate.domain.models import VariableRange

DesignFn = Callable[[np.random.Generator, np.ndarray, np.ndarray, int, int], np.ndarray]


def equation_seed_sequence(seed: int, equation_id: int) -> np.random.SeedSequence:
    """Seed sequence for one equation; crc32 keeps it stable across processes."""
    return np.random.SeedSequence([int(seed), zlib.crc32(str(equation_id).encode("utf-8"))])


def equation_seed(seed: int, equation_id: int) -> int:
    """Derived per-equation seed; `default_rng(equation_seed(...))` replays the draws."""
    return int(equation_seed_sequence(seed, equation_id).generate_state(1, dtype=np.uint64)[0])


def equation_rng(seed: int, equation_id: int) -> np.random.Generator:
    return np.random.default_rng(equation_seed(seed, equation_id))


def bounds(ranges: Sequence[VariableRange]) -> tuple[np.ndarray, np.ndarray]:
    lower = np.array([r.min for r in ranges], dtype=np.float64)
    upper = np.array([r.max for r in ranges], dtype=np.float64)
    return lower, upper


def uniform_design(
    rng: np.random.Generator, lower: np.ndarray, upper: np.ndarray, sample_count: int, budget: int
) -> np.ndarray:
    """Independent uniform draws per dimension."""
    return rng.uniform(lower, upper, size=(budget, lower.shape[0]))


def latin_hypercube_design(
    rng: np.random.Generator, lower: np.ndarray, upper: np.ndarray, sample_count: int, budget: int
) -> np.ndarray:
    """
    Consecutive Latin hypercube blocks of `sample_count` points.

    The first block is a full design over the ranges; later blocks only
    serve as replacements for attempts that did not converge.
    """
    dims = lower.shape[0]
    blocks: List[np.ndarray] = []
    drawn = 0
    while drawn < budget:
        n = sample_count
        strata = np.empty((n, dims), dtype=np.float64)
        for d in range(dims):
            strata[:, d] = (rng.permutation(n) + rng.random(n)) / n
        blocks.append(lower + strata * (upper - lower))
        drawn += n
    if not blocks:
        return np.empty((0, dims), dtype=np.float64)
    return np.vstack(blocks)[:budget]


def grid_design(
    rng: np.random.Generator, lower: np.ndarray, upper: np.ndarray, sample_count: int, budget: int
) -> np.ndarray:
    """
    Full-factorial grid with the largest per-axis resolution that fits in
    `sample_count`, followed by uniform draws for the remaining budget.
    """
    dims = lower.shape[0]
    if dims == 0:
        return np.empty((budget, 0), dtype=np.float64)
    per_axis = max(int(math.floor(sample_count ** (1.0 / dims) + 1e-9)), 1)
    if per_axis == 1:
        axes = [np.array([(lo + hi) / 2.0]) for lo, hi in zip(lower, upper)]
    else:
        axes = [np.linspace(lo, hi, per_axis) for lo, hi in zip(lower, upper)]
    mesh = np.meshgrid(*axes, indexing="ij")
    grid = np.stack([m.ravel() for m in mesh], axis=1)[:budget]
    rest = budget - grid.shape[0]
    if rest <= 0:
        return grid
    return np.vstack([grid, rng.uniform(lower, upper, size=(rest, dims))])


DESIGNS: Dict[str, DesignFn] = {
    "uniform": uniform_design,
    "latin_hypercube": latin_hypercube_design,
    "grid": grid_design,
}


def available_designs() -> List[str]:
    return sorted(DESIGNS)


def candidate_inputs(
    design: str,
    rng: np.random.Generator,
    ranges: Sequence[VariableRange],
    sample_count: int,
    budget: int,
) -> np.ndarray:
    """
    Draw the `(budget, len(ranges))` candidate matrix for one equation.
    """
    if design not in DESIGNS:
        raise ValueError(f"Unknown sampling design '{design}'. Available: {', '.join(DESIGNS)}")
    if sample_count < 1 or budget < 1:
        raise ValueError("sample_count and budget must be positive")
    lower, upper = bounds(ranges)
    candidates = DESIGNS[design](rng, lower, upper, sample_count, budget)
    return np.ascontiguousarray(candidates, dtype=np.float64).reshape(budget, len(ranges))


__all__ = [
    "DESIGNS",
    "available_designs",
    "bounds",
    "candidate_inputs",
    "equation_rng",
    "equation_seed",
    "equation_seed_sequence",
    "grid_design",
    "latin_hypercube_design",
    "uniform_design",
]
