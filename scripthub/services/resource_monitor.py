"""
Resource Monitor - CPU, memory, swap and load sampling through psutil.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, List, Optional

import psutil

from scripthub.errors import ValidationError
from scripthub.schemas.models import CheckStatus, ResourceSample

logger = logging.getLogger("scripthub.resources")

COLUMNS = ["timestamp", "cpu_percent", "memory_percent", "memory_used", "memory_total", "swap_percent", "load_1m", "status"]


def take_sample(interval: float, cpu_threshold: float, mem_threshold: float) -> ResourceSample:
    """Blocking sample; cpu_percent measures over the whole interval."""
    cpu = psutil.cpu_percent(interval=interval)
    memory = psutil.virtual_memory()
    swap = psutil.swap_memory()
    load = os.getloadavg()[0] if hasattr(os, "getloadavg") else 0.0

    sample = ResourceSample(
        timestamp=datetime.now(),
        cpu_percent=round(cpu, 1),
        memory_percent=round(memory.percent, 1),
        memory_used=memory.used,
        memory_total=memory.total,
        swap_percent=round(swap.percent, 1),
        load_1m=round(load, 2),
    )
    if sample.cpu_percent >= cpu_threshold or sample.memory_percent >= mem_threshold:
        sample.status = CheckStatus.CRITICAL
    return sample


class ResourceMonitor:
    def __init__(
        self,
        interval: float = 5.0,
        cpu_threshold: float = 80.0,
        mem_threshold: float = 80.0,
        sampler: Callable[[float, float, float], ResourceSample] = take_sample,
    ):
        if interval <= 0:
            raise ValidationError("--interval must be greater than 0")
        for name, value in (("cpu", cpu_threshold), ("memory", mem_threshold)):
            if not 0 < value <= 100:
                raise ValidationError(f"The {name} threshold must be between 1 and 100")
        self.interval = interval
        self.cpu_threshold = cpu_threshold
        self.mem_threshold = mem_threshold
        self.sampler = sampler
        self.samples: List[ResourceSample] = []

    async def run(self, count: Optional[int] = None, on_sample: Optional[Callable[[ResourceSample], None]] = None) -> List[ResourceSample]:
        """Take count samples (forever when None); each one spans one interval."""
        loop = asyncio.get_running_loop()
        taken = 0
        while count is None or taken < count:
            sample = await loop.run_in_executor(None, self.sampler, self.interval, self.cpu_threshold, self.mem_threshold)
            taken += 1
            self.samples.append(sample)
            if sample.status != CheckStatus.OK:
                logger.warning(
                    f"Resource usage high: CPU {sample.cpu_percent}% (threshold {self.cpu_threshold:g}%), "
                    f"memory {sample.memory_percent}% (threshold {self.mem_threshold:g}%)"
                )
            if on_sample:
                on_sample(sample)
        return self.samples

    @property
    def alerted(self) -> bool:
        return any(s.status != CheckStatus.OK for s in self.samples)
