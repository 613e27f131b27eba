# SPDX-License-Identifier: MIT
"""
Uniform bucket hash grid over a toroidal plane.

The grid is rebuilt from the authoritative agent positions once per tick and
only stores row indices into that tick's position array. Queries visit the
buckets around the center (wrapping at the edges) and then filter candidates
by wrap-aware distance, so results match a brute-force scan exactly.
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import DefaultDict, Iterable, List, NamedTuple, Optional, Tuple

import numpy as np

BUCKET_SIZE = 100.0

Bucket = Tuple[int, int]


def wrap(v: float, length: float) -> float:
    v = v % length
    # float modulo can land exactly on `length` for tiny negative inputs
    return 0.0 if v >= length else v


def torus_delta(d: float, length: float) -> float:
    """Shorter signed offset along one axis of a wrapping world."""
    d = math.fmod(d, length)
    if d > length / 2:
        d -= length
    elif d < -length / 2:
        d += length
    return d


class Neighbor(NamedTuple):
    index: int
    dx: float
    dy: float
    distance: float


class SpatialIndex:
    def __init__(self, width: float, height: float, bucket_size: float = BUCKET_SIZE) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"world size must be positive, got {width}x{height}")
        if bucket_size <= 0:
            raise ValueError(f"bucket size must be positive, got {bucket_size}")
        self.width = float(width)
        self.height = float(height)
        self.bucket_size = float(bucket_size)
        self.grid_width = max(1, int(math.ceil(self.width / self.bucket_size)))
        self.grid_height = max(1, int(math.ceil(self.height / self.bucket_size)))
        self.buckets: DefaultDict[Bucket, List[int]] = defaultdict(list)
        self._positions: np.ndarray = np.zeros((0, 2), dtype=np.float64)

    def __len__(self) -> int:
        return len(self._positions)

    # ---------- build ----------
    def clear(self) -> None:
        self.buckets.clear()
        self._positions = np.zeros((0, 2), dtype=np.float64)

    def bucket_of(self, x: float, y: float) -> Bucket:
        gx = int(math.floor(wrap(x, self.width) / self.bucket_size)) % self.grid_width
        gy = int(math.floor(wrap(y, self.height) / self.bucket_size)) % self.grid_height
        return gx, gy

    def rebuild(self, positions: np.ndarray) -> None:
        """Clear and reinsert every row of an (n, 2) position array."""
        pos = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        self.buckets.clear()
        self._positions = pos
        if len(pos) == 0:
            return
        xs = np.mod(pos[:, 0], self.width)
        ys = np.mod(pos[:, 1], self.height)
        gxs = np.floor(xs / self.bucket_size).astype(np.int64) % self.grid_width
        gys = np.floor(ys / self.bucket_size).astype(np.int64) % self.grid_height
        for i, (gx, gy) in enumerate(zip(gxs.tolist(), gys.tolist())):
            self.buckets[(gx, gy)].append(i)

    def position(self, index: int) -> Tuple[float, float]:
        x, y = self._positions[index]
        return float(x), float(y)

    # ---------- queries ----------
    def _nearby_buckets(self, x: float, y: float, radius: float) -> Iterable[Bucket]:
        cx, cy = self.bucket_of(x, y)
        # +1 covers the narrower last bucket when the world is not a multiple of the bucket size
        reach = int(math.ceil(radius / self.bucket_size)) + 1
        seen = set()
        for dy in range(-reach, reach + 1):
            for dx in range(-reach, reach + 1):
                key = ((cx + dx) % self.grid_width, (cy + dy) % self.grid_height)
                if key in seen:
                    continue
                seen.add(key)
                yield key

    def candidates(self, center: Tuple[float, float], radius: float) -> List[int]:
        """Every index stored in the buckets around ``center``, unfiltered."""
        out: List[int] = []
        for key in self._nearby_buckets(center[0], center[1], radius):
            bucket = self.buckets.get(key)
            if bucket:
                out.extend(bucket)
        return out

    def neighbors(
        self,
        center: Tuple[float, float],
        radius: float,
        exclude: Optional[int] = None,
    ) -> List[Neighbor]:
        x, y = center
        r2 = radius * radius
        out: List[Neighbor] = []
        for idx in self.candidates(center, radius):
            if idx == exclude:
                continue
            px, py = self._positions[idx]
            dx = torus_delta(float(px) - x, self.width)
            dy = torus_delta(float(py) - y, self.height)
            d2 = dx * dx + dy * dy
            if d2 <= r2:
                out.append(Neighbor(idx, dx, dy, math.sqrt(d2)))
        return out

    def query(self, center: Tuple[float, float], radius: float) -> List[int]:
        return [n.index for n in self.neighbors(center, radius)]

    def brute_force(self, center: Tuple[float, float], radius: float) -> List[int]:
        """O(n) reference scan with the same wrap-aware distance test."""
        x, y = center
        r2 = radius * radius
        out: List[int] = []
        for idx, (px, py) in enumerate(self._positions.tolist()):
            dx = torus_delta(px - x, self.width)
            dy = torus_delta(py - y, self.height)
            if dx * dx + dy * dy <= r2:
                out.append(idx)
        return out
