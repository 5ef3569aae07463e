from __future__ import annotations

import errno
import fcntl
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple, Type, TypeVar

from .exceptions import ResourceBusyError

LOG = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_ATTEMPTS = 10
LOCK_DELAY = 0.5


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (ResourceBusyError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or ``attempts`` calls have failed.

    ``delay`` seconds pass between attempts, never after the last one.  The
    last exception is re-raised once the attempts are exhausted; exceptions
    outside ``retry_on`` propagate immediately.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt == attempts:
                raise
            LOG.debug("attempt %d/%d failed (%s), retrying in %ss", attempt, attempts, exc, delay)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


@contextmanager
def vrf_lock(
    lock_dir: Optional[Path],
    vrf: str,
    *,
    attempts: int = LOCK_ATTEMPTS,
    delay: float = LOCK_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[None]:
    """Hold an exclusive advisory lock for ``vrf`` across one invocation.

    Two runs mutating the same VRF serialise on ``<lock_dir>/<vrf>.lock``.
    ``lock_dir=None`` disables locking.
    """

    if lock_dir is None:
        yield
        return

    lock_dir.mkdir(parents=True, exist_ok=True)
    path = lock_dir / f"{vrf}.lock"
    with path.open("a") as fh:

        def _acquire() -> None:
            try:
                fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                if exc.errno in (errno.EAGAIN, errno.EACCES):
                    raise ResourceBusyError(
                        f"VRF {vrf} is locked by another invocation"
                    ) from exc
                raise

        retry_call(_acquire, attempts=attempts, delay=delay, sleep=sleep)
        LOG.debug("acquired lock %s", path)
        try:
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)
