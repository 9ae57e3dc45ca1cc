from __future__ import annotations

import platform
from collections.abc import Iterable

import psutil

from userapi.observability.instruments import MetricFamily, Sample


class ProcessCollector:
    """Process and interpreter facts, read through psutil at scrape time.

    ``process_open_fds`` is omitted where psutil cannot count descriptors (Windows).
    """

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()

    def describe(self) -> Iterable[str]:
        return (
            "process_cpu_seconds_total",
            "process_open_fds",
            "process_resident_memory_bytes",
            "process_start_time_seconds",
            "python_info",
        )

    def _open_fds(self) -> float | None:
        num_fds = getattr(self._process, "num_fds", None)
        if num_fds is None:
            return None
        return float(num_fds())

    def collect(self) -> Iterable[MetricFamily]:
        with self._process.oneshot():
            cpu = self._process.cpu_times()
            rss = self._process.memory_info().rss
            start_time = self._process.create_time()
            fds = self._open_fds()

        yield MetricFamily(
            "process_cpu_seconds_total",
            "counter",
            "Total user and system CPU time spent in seconds.",
            (Sample("process_cpu_seconds_total", (), cpu.user + cpu.system),),
        )

        if fds is not None:
            yield MetricFamily(
                "process_open_fds",
                "gauge",
                "Number of open file descriptors.",
                (Sample("process_open_fds", (), fds),),
            )

        yield MetricFamily(
            "process_resident_memory_bytes",
            "gauge",
            "Resident memory size in bytes.",
            (Sample("process_resident_memory_bytes", (), float(rss)),),
        )

        yield MetricFamily(
            "process_start_time_seconds",
            "gauge",
            "Start time of the process since unix epoch in seconds.",
            (Sample("process_start_time_seconds", (), start_time),),
        )

        major, minor, patchlevel = platform.python_version_tuple()
        labels = (
            ("implementation", platform.python_implementation()),
            ("major", major),
            ("minor", minor),
            ("patchlevel", patchlevel),
        )
        yield MetricFamily(
            "python_info",
            "gauge",
            "Python platform information.",
            (Sample("python_info", labels, 1.0),),
        )
