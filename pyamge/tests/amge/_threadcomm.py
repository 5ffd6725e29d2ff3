"""In-process stand-in for an MPI communicator, one thread per rank.

Implements the subset of the mpi4py lowercase API used by
`DistributedContext` (`Get_rank`, `Get_size`, `allgather`, `alltoall`,
`barrier`) so multi-rank behaviour can be tested without `mpiexec`.
"""

from __future__ import annotations

import threading

from pyamge.amge.distributed import DistributedContext


class _Shared:
    def __init__(self, size: int, timeout: float) -> None:
        self.size = size
        self.slots = [None] * size
        self.barrier = threading.Barrier(size, timeout=timeout)


class ThreadComm:
    """Communicator endpoint of one rank."""

    def __init__(self, shared: _Shared, rank: int) -> None:
        self._shared = shared
        self._rank = rank

    def Get_rank(self) -> int:
        return self._rank

    def Get_size(self) -> int:
        return self._shared.size

    def _exchange(self, obj):
        sh = self._shared
        sh.slots[self._rank] = obj
        sh.barrier.wait()
        out = list(sh.slots)
        sh.barrier.wait()
        return out

    def allgather(self, obj):
        return self._exchange(obj)

    def alltoall(self, objs):
        gathered = self._exchange(list(objs))
        return [gathered[r][self._rank] for r in range(self._shared.size)]

    def barrier(self) -> None:
        self._shared.barrier.wait()


def run_on_ranks(size: int, fn, *, timeout: float = 60.0) -> list:
    """Run `fn(ctx)` on `size` thread-ranks; return the per-rank results.

    The first exception raised on any rank is re-raised in the caller after
    the other ranks have been released.
    """
    shared = _Shared(size, timeout)
    results: list = [None] * size
    errors: list = [None] * size

    def _target(rank: int) -> None:
        ctx = DistributedContext.from_comm(ThreadComm(shared, rank))
        try:
            results[rank] = fn(ctx)
        except threading.BrokenBarrierError as e:
            errors[rank] = e
        except Exception as e:  # noqa: BLE001
            errors[rank] = e
            shared.barrier.abort()

    threads = [threading.Thread(target=_target, args=(r,)) for r in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    primary = [e for e in errors if e is not None and not isinstance(e, threading.BrokenBarrierError)]
    if primary:
        raise primary[0]
    if any(e is not None for e in errors):
        raise next(e for e in errors if e is not None)
    return results
