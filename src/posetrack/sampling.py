from __future__ import annotations

"""Sampling blocks: index ranges into the flat joint state, one per object or part."""

from typing import Sequence

SamplingBlock = range


def create_sampling_blocks(blocks: int, block_size: int) -> tuple[SamplingBlock, ...]:
    """Contiguous, disjoint blocks covering ``[0, blocks * block_size)`` in object order.

    Example: ``create_sampling_blocks(3, 6)`` -> ``(range(0, 6), range(6, 12), range(12, 18))``.
    """
    if blocks <= 0:
        raise ValueError("blocks must be > 0")
    if block_size <= 0:
        raise ValueError("block_size must be > 0")
    return tuple(range(index * block_size, (index + 1) * block_size) for index in range(blocks))


def validate_sampling_blocks(blocks: Sequence[Sequence[int]], dimension: int) -> None:
    """Raise ValueError unless the blocks partition ``[0, dimension)`` exactly."""
    if not blocks:
        raise ValueError("at least one sampling block is required")

    seen = [False] * dimension
    for block_index, block in enumerate(blocks):
        if len(block) == 0:
            raise ValueError(f"sampling block {block_index} is empty")
        for index in block:
            if not 0 <= index < dimension:
                raise ValueError(
                    f"sampling block {block_index} index {index} outside state range [0, {dimension})"
                )
            if seen[index]:
                raise ValueError(f"state index {index} appears in more than one sampling block")
            seen[index] = True

    missing = [index for index, covered in enumerate(seen) if not covered]
    if missing:
        raise ValueError(f"sampling blocks do not cover state indices {missing}")


def block_columns(block: Sequence[int]) -> slice | list[int]:
    """Column selector for a block: a slice for contiguous ranges, else an index list."""
    if isinstance(block, range) and block.step == 1:
        return slice(block.start, block.stop)
    return list(block)
