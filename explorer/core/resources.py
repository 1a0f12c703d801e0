"""Port, CPU and memory allocation for parallel worktrees.

Allocations live in memory only. They matter for as long as the containers
they were handed to are running, so losing them on restart is acceptable.
"""

from __future__ import annotations

import logging
import re
import threading

from pydantic import BaseModel

from explorer.core.errors import ResourceExhaustionError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PORT_RANGE_START = 3000
DEFAULT_PORT_RANGE_END = 3100
MAX_CPU_CORES = 64

_MEMORY_LIMIT = re.compile(r"^(\d+)([mg])$", re.IGNORECASE)


class ResourceAllocation(BaseModel):
    """Resources assigned to one (exploration, worktree) pair."""

    exploration_id: str
    worktree_index: int
    container_name: str
    port: int
    cpu_limit: str
    memory_limit: str


class AllocationRequest(BaseModel):
    """One worktree's request. A port range here overrides the allocator's."""

    exploration_id: str
    worktree_index: int
    cpu_limit: str
    memory_limit: str
    port_range_start: int | None = None
    port_range_end: int | None = None


def validate_port_range(start: int, end: int) -> tuple[int, int]:
    if not (0 < start < end <= 65535):
        raise ValidationError(f"Invalid port range {start}-{end}")
    return start, end


def container_name_for(exploration_id: str, worktree_index: int) -> str:
    return f"exploration-{exploration_id}-worktree-{worktree_index}"


def validate_cpu_limit(cpu_limit: str) -> str:
    """Accept "1.5", "2" ... up to 64 cores."""
    try:
        cores = float(cpu_limit)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid CPU limit: {cpu_limit!r}")
    if not 0 < cores <= MAX_CPU_CORES:
        raise ValidationError(f"CPU limit must be in (0, {MAX_CPU_CORES}]: {cpu_limit!r}")
    return str(cpu_limit)


def validate_memory_limit(memory_limit: str) -> str:
    """Accept "<n>m" (256-32768) or "<n>g" (1-32)."""
    match = _MEMORY_LIMIT.match(str(memory_limit))
    if not match:
        raise ValidationError(f"Invalid memory limit format (expected e.g. 512m or 2g): {memory_limit!r}")
    value = int(match.group(1))
    unit = match.group(2).lower()
    if unit == "m" and not 256 <= value <= 32768:
        raise ValidationError(f"Memory limit must be between 256m and 32768m: {memory_limit!r}")
    if unit == "g" and not 1 <= value <= 32:
        raise ValidationError(f"Memory limit must be between 1g and 32g: {memory_limit!r}")
    return str(memory_limit)


def memory_limit_to_bytes(memory_limit: str) -> int:
    match = _MEMORY_LIMIT.match(str(memory_limit))
    if not match:
        raise ValidationError(f"Invalid memory limit format: {memory_limit!r}")
    value = int(match.group(1))
    if match.group(2).lower() == "g":
        return value * 1024 * 1024 * 1024
    return value * 1024 * 1024


def memory_limit_to_mb(memory_limit: str) -> float:
    return memory_limit_to_bytes(memory_limit) / (1024 * 1024)


class ResourceAllocator:
    """Hand out non-conflicting ports per (exploration, worktree index).

    The first candidate port is derived from the range start and the
    worktree index; on collision the allocator probes forward, wrapping
    within the range. Ports are unique across every exploration held by
    this allocator, which is stronger than per-exploration uniqueness.

    Thread-safe: parallel worktree setup may allocate concurrently.
    """

    def __init__(
        self,
        port_range_start: int = DEFAULT_PORT_RANGE_START,
        port_range_end: int = DEFAULT_PORT_RANGE_END,
    ):
        validate_port_range(port_range_start, port_range_end)
        self.port_range_start = port_range_start
        self.port_range_end = port_range_end
        self._allocations: dict[tuple[str, int], ResourceAllocation] = {}
        self._reserved: set[int] = set()
        self._lock = threading.Lock()

    @property
    def total_ports(self) -> int:
        return self.port_range_end - self.port_range_start + 1

    def allocate(self, request: AllocationRequest) -> ResourceAllocation:
        """Allocate a port plus limits for one worktree.

        Re-allocating a key that is already held returns the existing
        allocation rather than consuming a second port.

        Raises:
            ValidationError: Bad index, limits or port range.
            ResourceExhaustionError: Every port in range is taken.
        """
        if request.worktree_index < 1:
            raise ValidationError(f"Worktree index must be >= 1: {request.worktree_index}")
        validate_cpu_limit(request.cpu_limit)
        validate_memory_limit(request.memory_limit)
        start = request.port_range_start or self.port_range_start
        end = request.port_range_end or self.port_range_end
        validate_port_range(start, end)

        key = (request.exploration_id, request.worktree_index)
        with self._lock:
            existing = self._allocations.get(key)
            if existing is not None:
                return existing

            port = self._find_port(request.worktree_index, start, end)
            allocation = ResourceAllocation(
                exploration_id=request.exploration_id,
                worktree_index=request.worktree_index,
                container_name=container_name_for(request.exploration_id, request.worktree_index),
                port=port,
                cpu_limit=request.cpu_limit,
                memory_limit=request.memory_limit,
            )
            self._allocations[key] = allocation

        logger.debug(
            f"Allocated port {port} to {request.exploration_id} worktree {request.worktree_index}"
        )
        return allocation

    def allocate_multiple(self, requests: list[AllocationRequest]) -> list[ResourceAllocation]:
        """Allocate for every request or for none of them."""
        allocated: list[ResourceAllocation] = []
        try:
            for request in requests:
                allocated.append(self.allocate(request))
        except Exception:
            for allocation in allocated:
                self.release(allocation.exploration_id, allocation.worktree_index)
            raise
        return allocated

    def release(self, exploration_id: str, worktree_index: int) -> None:
        with self._lock:
            self._allocations.pop((exploration_id, worktree_index), None)

    def release_all(self, exploration_id: str) -> int:
        """Release every allocation of an exploration. Returns how many."""
        with self._lock:
            keys = [key for key in self._allocations if key[0] == exploration_id]
            for key in keys:
                del self._allocations[key]
        return len(keys)

    def get_allocated(self, exploration_id: str, worktree_index: int) -> ResourceAllocation | None:
        with self._lock:
            return self._allocations.get((exploration_id, worktree_index))

    def get_all_allocated(self, exploration_id: str) -> list[ResourceAllocation]:
        with self._lock:
            return sorted(
                (a for (eid, _), a in self._allocations.items() if eid == exploration_id),
                key=lambda a: a.worktree_index,
            )

    def can_allocate(self, branches: int) -> bool:
        return self.available_port_count() >= branches

    def available_port_count(self) -> int:
        with self._lock:
            return self.total_ports - len(self._used_ports())

    def allocated_ports(self) -> list[int]:
        with self._lock:
            return sorted(self._used_ports())

    def is_port_available(self, port: int) -> bool:
        with self._lock:
            return port not in self._used_ports()

    def reserve_port(self, port: int) -> bool:
        """Take ``port`` out of the pool. Returns False if already in use."""
        if not self.port_range_start <= port <= self.port_range_end:
            raise ValidationError(
                f"Port {port} is outside the allowed range "
                f"{self.port_range_start}-{self.port_range_end}"
            )
        with self._lock:
            if port in self._used_ports():
                return False
            self._reserved.add(port)
            return True

    def stats(self) -> dict[str, int]:
        with self._lock:
            used = len(self._used_ports())
            return {
                "active_allocations": len(self._allocations),
                "allocated_ports": used,
                "available_ports": self.total_ports - used,
                "total_ports": self.total_ports,
            }

    def reset(self) -> None:
        with self._lock:
            self._allocations.clear()
            self._reserved.clear()

    def _used_ports(self) -> set[int]:
        return {a.port for a in self._allocations.values()} | self._reserved

    def _find_port(self, worktree_index: int, start: int, end: int) -> int:
        """Probe from the index-derived candidate. Caller holds the lock."""
        used = self._used_ports()
        total = end - start + 1
        offset = (worktree_index - 1) % total
        for step in range(total):
            port = start + (offset + step) % total
            if port not in used:
                return port
        raise ResourceExhaustionError(
            f"No available ports in range {start}-{end}. "
            f"All {len(used)} ports are allocated."
        )
