"""
Bandwidth Monitor - per-interface throughput from kernel counters.

Reads psutil.net_io_counters(pernic=True) every interval, turns counter
deltas into bytes/s and Mbps, and tracks totals and peaks for the final
report. A counter that goes backwards (interface reset) counts as zero.
"""

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from scripthub.errors import ValidationError
from scripthub.schemas.models import BandwidthReport, InterfaceSample
from scripthub.services.helpers.units import bps_to_mbps, bytes_per_second, format_bytes
from scripthub.services.notifier import Notifier
from scripthub.shared.logging_utils import render_bar

logger = logging.getLogger("scripthub.bandwidth")

STATS = ("rx", "tx", "both")
CSV_HEADER = "Timestamp,Interface,RX_bytes,TX_bytes,RX_bps,TX_bps,RX_Mbps,TX_Mbps"

Counters = Dict[str, Tuple[int, int]]


def read_counters(interfaces: Optional[List[str]] = None) -> Counters:
    """Current (bytes_recv, bytes_sent) per interface."""
    stats = psutil.net_io_counters(pernic=True)
    return {
        name: (counters.bytes_recv, counters.bytes_sent)
        for name, counters in stats.items()
        if interfaces is None or name in interfaces
    }


def resolve_interfaces(requested: Optional[str], available: List[str]) -> List[str]:
    if requested:
        if requested not in available:
            raise ValidationError(
                f"Interface '{requested}' not found. Available: {', '.join(sorted(available))}"
            )
        return [requested]
    interfaces = sorted(name for name in available if name != "lo")
    if not interfaces:
        raise ValidationError("No network interfaces to monitor")
    return interfaces


def compute_samples(previous: Counters, current: Counters, interval: float, now: Optional[datetime] = None) -> List[InterfaceSample]:
    now = now or datetime.now()
    samples = []
    for name in sorted(current):
        if name not in previous:
            continue
        rx_prev, tx_prev = previous[name]
        rx_curr, tx_curr = current[name]
        rx_bps = bytes_per_second(rx_prev, rx_curr, interval)
        tx_bps = bytes_per_second(tx_prev, tx_curr, interval)
        samples.append(InterfaceSample(
            timestamp=now,
            interface=name,
            rx_bytes=rx_curr,
            tx_bytes=tx_curr,
            rx_bps=rx_bps,
            tx_bps=tx_bps,
            rx_mbps=bps_to_mbps(rx_bps),
            tx_mbps=bps_to_mbps(tx_bps),
        ))
    return samples


def selected_mbps(sample: InterfaceSample, stat: str) -> float:
    if stat == "rx":
        return sample.rx_mbps
    if stat == "tx":
        return sample.tx_mbps
    return sample.rx_mbps + sample.tx_mbps


def csv_row(sample: InterfaceSample) -> str:
    return ",".join([
        sample.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        sample.interface,
        str(sample.rx_bytes),
        str(sample.tx_bytes),
        f"{sample.rx_bps:.0f}",
        f"{sample.tx_bps:.0f}",
        f"{sample.rx_mbps:.2f}",
        f"{sample.tx_mbps:.2f}",
    ])


def format_sample(sample: InterfaceSample, stat: str = "both", unit: str = "auto", bar_peak: Optional[float] = None) -> str:
    parts = [f"{sample.interface:<10}"]
    if stat in ("rx", "both"):
        parts.append(f"RX: {format_bytes(sample.rx_bps, unit)}/s ({sample.rx_mbps:.2f} Mbps)")
    if stat in ("tx", "both"):
        parts.append(f"TX: {format_bytes(sample.tx_bps, unit)}/s ({sample.tx_mbps:.2f} Mbps)")
    if bar_peak is not None:
        current = selected_mbps(sample, stat)
        parts.append(render_bar(current / bar_peak if bar_peak > 0 else 0.0))
    return "  ".join(parts)


class BandwidthTracker:
    """Accumulates totals, averages and peaks for one interface."""

    def __init__(self, interface: str, start_counters: Tuple[int, int]):
        self.interface = interface
        self.start_rx, self.start_tx = start_counters
        self.last_rx, self.last_tx = start_counters
        self.samples = 0
        self.sum_rx_mbps = 0.0
        self.sum_tx_mbps = 0.0
        self.peak_rx_mbps = 0.0
        self.peak_tx_mbps = 0.0
        self.total_rx = 0
        self.total_tx = 0

    def add(self, sample: InterfaceSample) -> None:
        self.samples += 1
        self.sum_rx_mbps += sample.rx_mbps
        self.sum_tx_mbps += sample.tx_mbps
        self.peak_rx_mbps = max(self.peak_rx_mbps, sample.rx_mbps)
        self.peak_tx_mbps = max(self.peak_tx_mbps, sample.tx_mbps)
        self.total_rx += max(0, sample.rx_bytes - self.last_rx)
        self.total_tx += max(0, sample.tx_bytes - self.last_tx)
        self.last_rx, self.last_tx = sample.rx_bytes, sample.tx_bytes

    def report(self, duration: float) -> BandwidthReport:
        count = self.samples or 1
        return BandwidthReport(
            interface=self.interface,
            duration=round(duration, 1),
            samples=self.samples,
            total_rx_bytes=self.total_rx,
            total_tx_bytes=self.total_tx,
            avg_rx_mbps=round(self.sum_rx_mbps / count, 2),
            avg_tx_mbps=round(self.sum_tx_mbps / count, 2),
            peak_rx_mbps=round(self.peak_rx_mbps, 2),
            peak_tx_mbps=round(self.peak_tx_mbps, 2),
        )


def format_report(reports: List[BandwidthReport], show_peak: bool = False) -> str:
    lines = ["Bandwidth Usage Report", "=" * 40]
    for report in reports:
        lines.append(f"Interface:        {report.interface}")
        lines.append(f"Duration:         {report.duration:.0f}s ({report.samples} samples)")
        lines.append(f"Total received:   {format_bytes(report.total_rx_bytes)}")
        lines.append(f"Total sent:       {format_bytes(report.total_tx_bytes)}")
        lines.append(f"Average RX:       {report.avg_rx_mbps:.2f} Mbps")
        lines.append(f"Average TX:       {report.avg_tx_mbps:.2f} Mbps")
        if show_peak:
            lines.append(f"Peak RX:          {report.peak_rx_mbps:.2f} Mbps")
            lines.append(f"Peak TX:          {report.peak_tx_mbps:.2f} Mbps")
        lines.append("")
    return "\n".join(lines).rstrip()


class BandwidthMonitor:
    """Samples interface counters until the duration elapses or the task is cancelled."""

    def __init__(
        self,
        interfaces: List[str],
        interval: float = 1.0,
        stat: str = "both",
        alert_mbps: Optional[float] = None,
        notifier: Optional[Notifier] = None,
        log_file: Optional[str] = None,
        counter_reader: Callable[[Optional[List[str]]], Counters] = read_counters,
    ):
        if interval <= 0:
            raise ValidationError("--time must be greater than 0")
        if stat not in STATS:
            raise ValidationError(f"Unknown stat '{stat}' (use rx, tx or both)")
        self.interfaces = interfaces
        self.interval = interval
        self.stat = stat
        self.alert_mbps = alert_mbps
        self.notifier = notifier
        self.log_file = Path(log_file) if log_file else None
        self.read_counters = counter_reader
        self.trackers: Dict[str, BandwidthTracker] = {}
        self.alerts = 0
        self.started = 0.0

    def _log(self, samples: List[InterfaceSample]) -> None:
        if not self.log_file:
            return
        new_file = not self.log_file.exists() or self.log_file.stat().st_size == 0
        with self.log_file.open("a", encoding="utf-8") as handle:
            if new_file:
                handle.write(CSV_HEADER + "\n")
            for sample in samples:
                handle.write(csv_row(sample) + "\n")

    async def _check_alert(self, sample: InterfaceSample) -> None:
        """Each selected direction is compared with the threshold on its own."""
        if self.alert_mbps is None:
            return
        directions = []
        if self.stat in ("rx", "both"):
            directions.append(("Download", sample.rx_mbps))
        if self.stat in ("tx", "both"):
            directions.append(("Upload", sample.tx_mbps))

        for direction, value in directions:
            if value <= self.alert_mbps:
                continue
            self.alerts += 1
            subject = f"Bandwidth Alert: {sample.interface} {direction} exceeded {self.alert_mbps:g} Mbps"
            body = (
                f"Interface {sample.interface} {direction} bandwidth is {value:.2f} Mbps "
                f"(threshold {self.alert_mbps:g} Mbps) at {sample.timestamp:%Y-%m-%d %H:%M:%S}"
            )
            logger.warning(body)
            if self.notifier:
                await self.notifier.send(subject, body)

    async def run(
        self,
        duration: Optional[float] = None,
        on_sample: Optional[Callable[[InterfaceSample, "BandwidthTracker"], None]] = None,
    ) -> List[BandwidthReport]:
        """
        Sample every interval for duration seconds (forever when None).

        After an interrupt, reports() still gives the totals so far.
        """
        previous = self.read_counters(self.interfaces)
        self.trackers = {name: BandwidthTracker(name, previous[name]) for name in self.interfaces if name in previous}
        self.started = time.monotonic()
        last = self.started

        remaining = None if duration is None else max(1, int(duration // self.interval))
        while remaining is None or remaining > 0:
            if remaining is not None:
                remaining -= 1
            await asyncio.sleep(self.interval)
            current = self.read_counters(self.interfaces)
            now = time.monotonic()
            samples = compute_samples(previous, current, now - last or self.interval)
            previous, last = current, now

            self._log(samples)
            for sample in samples:
                tracker = self.trackers.get(sample.interface)
                if tracker is not None:
                    tracker.add(sample)
                if on_sample:
                    on_sample(sample, tracker)
                await self._check_alert(sample)
        return self.reports()

    def reports(self) -> List[BandwidthReport]:
        elapsed = time.monotonic() - self.started if self.started else 0.0
        return [tracker.report(elapsed) for tracker in self.trackers.values()]
