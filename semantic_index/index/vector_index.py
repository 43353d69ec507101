"""
Vector Index: approximate nearest-neighbour search over span embeddings.

Nodes live in an arena: a dense float32 matrix of unit-normalised
vectors plus parallel Python lists holding each slot's entry, level and
per-level neighbour tuples.  Neighbours are integer slot indices, so
there are no object cycles and removal is a tombstone.

Search is a layered navigable small-world walk (HNSW).  Below
``brute_force_threshold`` live entries, and before the graph has been
built, search is an exact scan instead.

Concurrency
-----------
Writers serialise on one lock.  Readers take no lock: a search captures
the current arena once and only reads from it.  Writers publish a new
node in this order: vector row, entry, own links, neighbour back-links,
size.  Neighbour tuples are replaced with a single assignment, never
mutated.  Growth and compaction build a fresh arena and swap it in with
one reference assignment, so an in-flight search keeps a consistent
view of the arena it started with.
"""

from __future__ import annotations

import hashlib
import heapq
import logging
import math
import threading
from typing import Callable, Optional, Sequence

import numpy as np

from ..models import IndexEntry, SpanKind, as_vector

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BRUTE_FORCE_THRESHOLD = 2048
DEFAULT_M = 16
DEFAULT_EF_CONSTRUCTION = 64
DEFAULT_EF_SEARCH = 64
DEFAULT_COMPACT_RATIO = 0.25
MAX_LEVEL = 16
_INITIAL_CAPACITY = 256

SearchFilter = Callable[[str, SpanKind], bool]


def _normalize(vec: np.ndarray) -> np.ndarray:
    """Return *vec* scaled to unit length (zero vectors stay zero)."""
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec.astype(np.float32, copy=True)
    return (vec / norm).astype(np.float32)


def _clamp(score: float) -> float:
    return min(1.0, max(-1.0, score))


def _rank_key(hit: tuple[str, float]) -> tuple[float, str]:
    return (-hit[1], hit[0])


# ---------------------------------------------------------------------------
# Arena
# ---------------------------------------------------------------------------

class _Arena:
    """Append-only node storage.  Removed slots hold ``None``."""

    __slots__ = ("vectors", "entries", "levels", "links", "slots", "size", "live", "top", "warm")

    def __init__(self, dimension: int, capacity: int) -> None:
        self.vectors = np.zeros((capacity, dimension), dtype=np.float32)
        self.entries: list[Optional[IndexEntry]] = []
        self.levels: list[int] = []
        self.links: list[list[tuple[int, ...]]] = []
        self.slots: dict[str, int] = {}
        self.size = 0
        self.live = 0
        self.top: tuple[int, int] = (-1, -1)  # (entry point slot, max level)
        self.warm = False

    @property
    def capacity(self) -> int:
        return self.vectors.shape[0]

    def grown(self, capacity: int) -> "_Arena":
        """Copy of this arena with room for *capacity* slots."""
        new = _Arena(self.vectors.shape[1], capacity)
        new.vectors[: self.size] = self.vectors[: self.size]
        new.entries = list(self.entries)
        new.levels = list(self.levels)
        new.links = [list(node) for node in self.links]
        new.slots = dict(self.slots)
        new.size = self.size
        new.live = self.live
        new.top = self.top
        new.warm = self.warm
        return new


# ---------------------------------------------------------------------------
# VectorIndex
# ---------------------------------------------------------------------------

class VectorIndex:
    """
    HNSW index keyed by ``IndexEntry.entry_id``.

    Parameters
    ----------
    dimension:
        Fixed vector dimension for this index.
    model_version:
        Embedding model the stored vectors came from.
    brute_force_threshold:
        Below this many live entries search is an exact scan, and the
        graph is not built until the index first reaches this size.
    m:
        Neighbours linked per node on each level (``2 * m`` on level 0).
    ef_construction:
        Beam width while linking a new node.
    ef_search:
        Minimum beam width at query time.
    compact_ratio:
        Tombstone fraction that triggers an arena rebuild.
    """

    def __init__(
        self,
        dimension: int,
        model_version: str = "",
        brute_force_threshold: int = DEFAULT_BRUTE_FORCE_THRESHOLD,
        m: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_search: int = DEFAULT_EF_SEARCH,
        compact_ratio: float = DEFAULT_COMPACT_RATIO,
    ) -> None:
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        if m < 2:
            raise ValueError("m must be >= 2")
        self._dimension = dimension
        self.model_version = model_version
        self._threshold = max(0, brute_force_threshold)
        self._m = m
        self._m0 = 2 * m
        self._ml = 1.0 / math.log(m)
        self._ef_construction = max(ef_construction, m)
        self._ef_search = max(1, ef_search)
        self._compact_ratio = compact_ratio
        self._arena = _Arena(dimension, _INITIAL_CAPACITY)
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_warm(self) -> bool:
        return self._arena.warm

    def __len__(self) -> int:
        return self._arena.live

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._arena.slots

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def insert(self, entry: IndexEntry) -> None:
        """
        Insert *entry*, replacing any live entry with the same id.

        Raises
        ------
        ValueError
            If the vector's dimension differs from the index dimension.
        """
        unit = _normalize(self._checked(entry.vector))
        with self._write_lock:
            arena = self._arena
            previous = arena.slots.get(entry.entry_id)
            if previous is not None:
                self._tombstone(arena, entry.entry_id, previous)
            if arena.size == arena.capacity:
                arena = arena.grown(arena.capacity * 2)
                self._arena = arena
            self._append(arena, entry, unit)
            if not arena.warm and arena.live >= max(self._threshold, 1):
                self._build(arena)
            if previous is not None and self._needs_compaction(arena):
                self._compact()

    def remove(self, entry_id: str) -> bool:
        """Remove *entry_id*.  Returns False (no error) if it is absent."""
        with self._write_lock:
            arena = self._arena
            slot = arena.slots.get(entry_id)
            if slot is None:
                return False
            self._tombstone(arena, entry_id, slot)
            if self._needs_compaction(arena):
                self._compact()
        return True

    def warm_up(self) -> None:
        """Build the graph now regardless of the brute-force threshold."""
        with self._write_lock:
            if not self._arena.warm:
                self._build(self._arena)

    def _append(self, arena: _Arena, entry: IndexEntry, unit: np.ndarray) -> None:
        slot = arena.size
        level = self._level_for(entry.entry_id)
        arena.vectors[slot] = unit
        arena.entries.append(entry)
        arena.levels.append(level)
        arena.links.append([()] * (level + 1))
        arena.slots[entry.entry_id] = slot
        if arena.warm:
            self._link(arena, slot)
        arena.live += 1
        arena.size = slot + 1

    def _tombstone(self, arena: _Arena, entry_id: str, slot: int) -> None:
        del arena.slots[entry_id]
        arena.entries[slot] = None
        arena.live -= 1

    def _needs_compaction(self, arena: _Arena) -> bool:
        dead = arena.size - arena.live
        return dead > 0 and dead > self._compact_ratio * arena.size

    def _compact(self) -> None:
        """Rebuild the arena from live entries and swap it in."""
        old = self._arena
        live = [
            (slot, entry) for slot, entry in enumerate(old.entries[: old.size])
            if entry is not None
        ]
        new = _Arena(self._dimension, max(_INITIAL_CAPACITY, 2 * len(live)))
        for old_slot, entry in live:
            slot = new.size
            new.vectors[slot] = old.vectors[old_slot]
            new.entries.append(entry)
            new.levels.append(old.levels[old_slot])
            new.links.append([()] * (old.levels[old_slot] + 1))
            new.slots[entry.entry_id] = slot
            new.size += 1
            new.live += 1
        if new.live and new.live >= self._threshold:
            self._build(new)
        self._arena = new
        logger.debug(
            "[vector index] Compacted %d slots down to %d", old.size, new.size
        )

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def _level_for(self, entry_id: str) -> int:
        digest = hashlib.blake2b(entry_id.encode("utf-8"), digest_size=8).digest()
        u = (int.from_bytes(digest, "big") + 1) / float(2 ** 64 + 1)
        return min(MAX_LEVEL, int(-math.log(u) * self._ml))

    def _build(self, arena: _Arena) -> None:
        for slot in range(arena.size):
            if arena.entries[slot] is not None:
                self._link(arena, slot)
        arena.warm = True
        logger.debug("[vector index] Graph built over %d entries", arena.live)

    def _link(self, arena: _Arena, slot: int) -> None:
        query = arena.vectors[slot]
        level = arena.levels[slot]
        entry_point, top = arena.top
        if entry_point < 0:
            arena.top = (slot, level)
            return

        current = entry_point
        for lvl in range(top, level, -1):
            current = self._search_layer(arena, query, [current], 1, lvl)[0][1]

        entry_points = [current]
        for lvl in range(min(level, top), -1, -1):
            found = self._search_layer(arena, query, entry_points, self._ef_construction, lvl)
            neighbours = [
                s for _, s in found
                if s != slot and arena.entries[s] is not None
            ][: self._m]
            arena.links[slot][lvl] = tuple(neighbours)
            cap = self._m0 if lvl == 0 else self._m
            for neighbour in neighbours:
                self._connect(arena, neighbour, slot, lvl, cap)
            entry_points = [s for _, s in found]

        if level > top:
            arena.top = (slot, level)

    def _connect(self, arena: _Arena, node: int, new: int, lvl: int, cap: int) -> None:
        current = arena.links[node][lvl]
        if new in current:
            return
        candidates = current + (new,)
        if len(candidates) > cap:
            sims = arena.vectors[list(candidates)] @ arena.vectors[node]
            order = sorted(
                range(len(candidates)),
                key=lambda i: (
                    arena.entries[candidates[i]] is None,
                    -float(sims[i]),
                    candidates[i],
                ),
            )
            candidates = tuple(candidates[i] for i in order[:cap])
        arena.links[node][lvl] = candidates

    def _search_layer(
        self,
        arena: _Arena,
        query: np.ndarray,
        entry_points: Sequence[int],
        ef: int,
        lvl: int,
    ) -> list[tuple[float, int]]:
        """Beam search on one layer; returns ``(similarity, slot)`` best first."""
        visited = set(entry_points)
        start = list(visited)
        sims = arena.vectors[start] @ query
        candidates = [(-float(s), e) for s, e in zip(sims, start)]
        heapq.heapify(candidates)
        # min-heap of (sim, -slot): weakest result on top, lower slots win ties
        results = [(float(s), -e) for s, e in zip(sims, start)]
        heapq.heapify(results)
        while len(results) > ef:
            heapq.heappop(results)

        while candidates:
            neg_sim, node = heapq.heappop(candidates)
            if len(results) >= ef and -neg_sim < results[0][0]:
                break
            links = arena.links[node]
            if lvl >= len(links):
                continue
            fresh = [n for n in links[lvl] if n not in visited]
            if not fresh:
                continue
            visited.update(fresh)
            fresh_sims = arena.vectors[fresh] @ query
            for n, s in zip(fresh, fresh_sims):
                s = float(s)
                if len(results) < ef or s > results[0][0]:
                    heapq.heappush(candidates, (-s, n))
                    heapq.heappush(results, (s, -n))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted(((s, -neg) for s, neg in results), key=lambda t: (-t[0], t[1]))

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: Sequence[float],
        k: int,
        filter: Optional[SearchFilter] = None,
    ) -> list[tuple[str, float]]:
        """
        Return up to *k* ``(entry_id, cosine_similarity)`` pairs.

        Results are ordered by non-increasing score, ties broken by
        ascending entry id.  *filter* is applied to ``(file_path,
        span_kind)`` before ranking.
        """
        if k <= 0:
            return []
        arena = self._arena
        if arena.live == 0:
            return []
        query = _normalize(self._checked(query_vector))

        if arena.warm and arena.live >= self._threshold:
            ef = max(self._ef_search, k if filter is None else 4 * k)
            hits = self._collect(arena, self._graph_search(arena, query, ef), filter)
            if len(hits) < min(k, arena.live):
                hits = self._exact(arena, query, filter)
        else:
            hits = self._exact(arena, query, filter)
        return heapq.nsmallest(k, hits, key=_rank_key)

    def _graph_search(self, arena: _Arena, query: np.ndarray, ef: int) -> list[tuple[float, int]]:
        entry_point, top = arena.top
        if entry_point < 0:
            return []
        current = entry_point
        for lvl in range(top, 0, -1):
            current = self._search_layer(arena, query, [current], 1, lvl)[0][1]
        return self._search_layer(arena, query, [current], ef, 0)

    @staticmethod
    def _collect(
        arena: _Arena,
        found: list[tuple[float, int]],
        filter: Optional[SearchFilter],
    ) -> list[tuple[str, float]]:
        hits: list[tuple[str, float]] = []
        for sim, slot in found:
            entry = arena.entries[slot]
            if entry is None:
                continue
            if filter is not None and not filter(entry.file_path, entry.span_kind):
                continue
            hits.append((entry.entry_id, _clamp(sim)))
        return hits

    @staticmethod
    def _exact(
        arena: _Arena,
        query: np.ndarray,
        filter: Optional[SearchFilter],
    ) -> list[tuple[str, float]]:
        size = arena.size
        if size == 0:
            return []
        sims = arena.vectors[:size] @ query
        hits: list[tuple[str, float]] = []
        for slot in range(size):
            entry = arena.entries[slot]
            if entry is None:
                continue
            if filter is not None and not filter(entry.file_path, entry.span_kind):
                continue
            hits.append((entry.entry_id, _clamp(float(sims[slot]))))
        return hits

    # ------------------------------------------------------------------
    # Lookup and maintenance
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[IndexEntry]:
        arena = self._arena
        slot = arena.slots.get(entry_id)
        if slot is None:
            return None
        return arena.entries[slot]

    def entries(self) -> list[IndexEntry]:
        """Live entries in slot order."""
        arena = self._arena
        return [e for e in arena.entries[: arena.size] if e is not None]

    def entries_for_file(self, file_path: str) -> list[IndexEntry]:
        return [e for e in self.entries() if e.file_path == file_path]

    def verify(self, is_referenced: Optional[Callable[[IndexEntry], bool]] = None) -> list[str]:
        """
        Return ids of entries that violate an index invariant.

        An entry is reported when its slot mapping is inconsistent or when
        *is_referenced* says nothing owns it any more.
        """
        with self._write_lock:
            arena = self._arena
            mapping = list(arena.slots.items())
        bad: list[str] = []
        for entry_id, slot in mapping:
            entry = arena.entries[slot] if slot < len(arena.entries) else None
            if entry is None or entry.entry_id != entry_id:
                bad.append(entry_id)
            elif is_referenced is not None and not is_referenced(entry):
                bad.append(entry_id)
        return sorted(bad)

    def _checked(self, vector: Sequence[float]) -> np.ndarray:
        arr = as_vector(vector)
        if arr.shape[0] != self._dimension:
            raise ValueError(
                f"Vector dimension {arr.shape[0]} does not match index dimension "
                f"{self._dimension}"
            )
        return arr
