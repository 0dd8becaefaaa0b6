"""A worker pool that caps how many protocol requests run at once."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from modproxy.protocol import Protocol, RevInfo, Wrapper

_T = TypeVar("_T")


class PooledProtocol(Protocol):
    """Runs every call of the wrapped protocol on a fixed set of workers."""

    def __init__(self, dp: Protocol, workers: int) -> None:
        if workers < 1:
            raise ValueError("a pool needs at least one worker")
        self._dp = dp
        self._executor = ThreadPoolExecutor(max_workers=workers,
                                            thread_name_prefix="protocol-pool")

    def _run(self, fn: Callable[..., _T], *args: Any) -> _T:
        return self._executor.submit(fn, *args).result()

    def list(self, mod: str) -> list[str]:
        return self._run(self._dp.list, mod)

    def info(self, mod: str, ver: str) -> bytes:
        return self._run(self._dp.info, mod, ver)

    def latest(self, mod: str) -> RevInfo | None:
        return self._run(self._dp.latest, mod)

    def go_mod(self, mod: str, ver: str) -> bytes:
        return self._run(self._dp.go_mod, mod, ver)

    def zip(self, mod: str, ver: str) -> Any:
        return self._run(self._dp.zip, mod, ver)

    def close(self) -> None:
        """Stop accepting work; queued calls are cancelled."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> PooledProtocol:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def with_pool(workers: int) -> Wrapper:
    """Return a wrapper that runs a protocol on *workers* shared workers."""
    def wrap(dp: Protocol) -> Protocol:
        return PooledProtocol(dp, workers)

    return wrap