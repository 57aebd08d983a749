"""
Run independent tape machines side by side
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from tapegrad import machine

logger = logging.getLogger(__name__)


def run_concurrently(machines: Sequence[machine.TapeMachine], max_workers: int | None = None) -> None:
    """
    Run every machine's pass on its own thread and wait for all of them.
    Machines must not share graphs. The first failure is re-raised once all passes ended.
    """
    if len({id(m.graph) for m in machines}) != len(machines):
        raise ValueError("concurrent machines must each own their graph")
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers or len(machines) or None) as pool:
        futures = [pool.submit(m.run_all) for m in machines]
        concurrent.futures.wait(futures)
    for m, future in zip(machines, futures):
        if (exc := future.exception()) is not None:
            logger.error("%s failed: %s", m, exc)
            raise exc
