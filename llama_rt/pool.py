"""
Size-class buffer pool for kernel scratch space.

Every decode step needs the same handful of scratch tensors (attention
scores, FFN intermediates, normalized activations). Allocating them fresh
each step puts pressure on the allocator and, for large contexts, dominates
the cost of a single-token forward pass. The pool keeps released buffers
around and hands them back out on the next request of the same size class.

SIZE CLASSES:
  Buffers are flat 1-D float32 tensors whose length is a power of two
  between min_size and max_size (default 64 .. 524288, 14 classes). A
  request for n elements is served from the smallest class >= n; the caller
  takes a view of the first n elements.

      class      64  128  256  512  1K  2K  4K  8K  16K  32K  64K  128K  256K  512K
      capacity   32   32   32   32  16  16   8   8    4    4    2     2     1     1

  Small buffers are cheap to hold and are requested often, so more of them
  are retained. Requests above max_size get an exact-size allocation that
  is never pooled.

OWNERSHIP:
  rent() transfers exclusive ownership to the caller until give_back().
  give_back() ignores buffers whose length is not a standard class, so one-off
  irregular allocations cannot grow the pool, and refuses a buffer that is
  already pooled. borrow() is the preferred entry point: it returns the buffer
  on scope exit, including exceptional exits.

There is no module-level pool. The engine owns one and passes it down;
tests build their own.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import torch

from llama_rt.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MIN_SIZE = 64
DEFAULT_MAX_SIZE = 524288
DEFAULT_CAPACITIES = (32, 32, 32, 32, 16, 16, 8, 8, 4, 4, 2, 2, 1, 1)


@dataclass(frozen=True)
class PoolStats:
    """Counter snapshot returned by BufferPool.stats()."""

    rents: int
    returns: int
    allocations: int
    hits: int
    misses: int
    pooled_buffers: int
    pooled_bytes: int

    @property
    def hit_rate(self) -> float:
        return self.hits / self.rents if self.rents else 0.0


class BufferPool:
    """Thread-safe pool of float32 scratch buffers bucketed by size class."""

    def __init__(
        self,
        min_size: int = DEFAULT_MIN_SIZE,
        max_size: int = DEFAULT_MAX_SIZE,
        bucket_capacity: Optional[Sequence[int]] = None,
        clear_on_return: bool = False,
        dtype: torch.dtype = torch.float32,
    ):
        if min_size <= 0 or min_size & (min_size - 1):
            raise ValidationError(f"min_size must be a power of two, got {min_size}", field="min_size")
        if max_size < min_size or max_size & (max_size - 1):
            raise ValidationError(
                f"max_size must be a power of two >= min_size, got {max_size}", field="max_size"
            )
        self.sizes = []
        size = min_size
        while size <= max_size:
            self.sizes.append(size)
            size *= 2

        if bucket_capacity is None:
            # Default ladder is defined for 64..524288; extend/trim for others.
            caps = list(DEFAULT_CAPACITIES[: len(self.sizes)])
            caps += [1] * (len(self.sizes) - len(caps))
        else:
            caps = list(bucket_capacity)
            if len(caps) != len(self.sizes):
                raise ValidationError(
                    f"bucket_capacity needs {len(self.sizes)} entries, got {len(caps)}",
                    field="bucket_capacity",
                )

        self.min_size = min_size
        self.max_size = max_size
        self.clear_on_return = clear_on_return
        self.dtype = dtype
        self._capacity = dict(zip(self.sizes, caps))
        self._buckets = {s: deque() for s in self.sizes}
        self._pooled_ptrs = set()
        self._lock = threading.Lock()
        self._rents = 0
        self._returns = 0
        self._allocations = 0
        self._hits = 0
        self._misses = 0

    def size_class(self, size: int) -> Optional[int]:
        """Smallest standard size >= size, or None when above max_size."""
        if size <= self.min_size:
            return self.min_size
        if size > self.max_size:
            return None
        return 1 << (size - 1).bit_length()

    def rent(self, size: int) -> torch.Tensor:
        """
        Take a buffer of at least `size` elements.

        The returned tensor is 1-D with length equal to the size class (or
        exactly `size` for oversized requests). Contents are unspecified
        unless the pool was built with clear_on_return=True.
        """
        if size <= 0:
            raise ValidationError(f"rent size must be positive, got {size}", field="size")
        cls = self.size_class(size)
        with self._lock:
            self._rents += 1
            if cls is not None and self._buckets[cls]:
                buf = self._buckets[cls].pop()
                self._pooled_ptrs.discard(buf.data_ptr())
                self._hits += 1
                return buf
            self._misses += 1
            self._allocations += 1
        logger.debug("pool miss: size=%d class=%s", size, cls)
        # Normal (non-inference) tensors, so a buffer first rented inside
        # torch.inference_mode() can still be written outside it later.
        with torch.inference_mode(False):
            return torch.empty(cls if cls is not None else size, dtype=self.dtype)

    def give_back(self, buf: torch.Tensor) -> bool:
        """
        Return a rented buffer. Returns True when the buffer was pooled.

        Non-standard lengths, foreign dtypes, full buckets and buffers that
        are already in the pool are all dropped silently.
        """
        n = buf.numel()
        if n not in self._capacity or buf.dtype != self.dtype or buf.dim() != 1:
            return False
        if self.clear_on_return:
            buf.zero_()
        ptr = buf.data_ptr()
        with self._lock:
            if ptr in self._pooled_ptrs:
                logger.debug("pool: ignoring double return of buffer size=%d", n)
                return False
            bucket = self._buckets[n]
            if len(bucket) >= self._capacity[n]:
                return False
            bucket.append(buf)
            self._pooled_ptrs.add(ptr)
            self._returns += 1
        return True

    @contextmanager
    def borrow(self, size: int, shape: Optional[Sequence[int]] = None) -> Iterator[torch.Tensor]:
        """
        Rent for the duration of a with-block.

        Yields a view of exactly `size` elements, reshaped to `shape` when
        given. The backing buffer goes back to the pool on exit.
        """
        if shape is not None:
            expected = 1
            for d in shape:
                expected *= d
            if expected != size:
                raise ValidationError(
                    f"borrow: shape {tuple(shape)} does not hold {size} elements",
                    field="shape",
                )
        buf = self.rent(size)
        try:
            view = buf[:size]
            yield view.view(*shape) if shape is not None else view
        finally:
            self.give_back(buf)

    def stats(self) -> PoolStats:
        with self._lock:
            pooled = sum(len(b) for b in self._buckets.values())
            pooled_bytes = sum(
                size * len(b) * self._element_size() for size, b in self._buckets.items()
            )
            return PoolStats(
                rents=self._rents,
                returns=self._returns,
                allocations=self._allocations,
                hits=self._hits,
                misses=self._misses,
                pooled_buffers=pooled,
                pooled_bytes=pooled_bytes,
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._rents = self._returns = self._allocations = 0
            self._hits = self._misses = 0

    def clear(self) -> None:
        """Drop every pooled buffer."""
        with self._lock:
            for bucket in self._buckets.values():
                bucket.clear()
            self._pooled_ptrs.clear()

    def _element_size(self) -> int:
        return torch.empty((), dtype=self.dtype).element_size()

    def __repr__(self) -> str:
        s = self.stats()
        return (
            f"BufferPool(classes={len(self.sizes)}, pooled={s.pooled_buffers}, "
            f"rents={s.rents}, hit_rate={s.hit_rate:.2f})"
        )


class Scratch:
    """
    Scope that rents views from a pool and gives every one back on exit.

        with Scratch(pool) as scratch:
            q = kernels.linear(x, wq, out=scratch.take(b, t, n))

    Without a pool, take() returns None; kernels then allocate their own
    result, which is the path autograd needs.
    """

    def __init__(self, pool: Optional[BufferPool]):
        self.pool = pool
        self._held = []

    def take(self, *shape: int) -> Optional[torch.Tensor]:
        if self.pool is None:
            return None
        n = 1
        for d in shape:
            n *= d
        buf = self.pool.rent(n)
        self._held.append(buf)
        return buf[:n].view(*shape)

    def release(self) -> None:
        while self._held:
            self.pool.give_back(self._held.pop())

    def __enter__(self) -> "Scratch":
        return self

    def __exit__(self, *exc) -> None:
        self.release()
