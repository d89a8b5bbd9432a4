"""
Log aggregation and tailing for services.
"""
import queue
import threading
from typing import Callable, Iterator, List, Optional, Tuple

from loguru import logger

from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.base_runtime import ServiceRuntime


class LogAggregator:
    """
    Streams logs from several services at once, each stream on its own thread.
    """
    def __init__(self, runtime: ServiceRuntime):
        """
        Initializes the log aggregator.

        :param runtime: Runtime that knows where each service's output lives.
        """
        self.runtime = runtime
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def stream(self, services: List[ServiceDefinition], follow: bool = True) -> Iterator[Tuple[str, str]]:
        """
        Yields (service name, line) pairs from all given services, interleaved
        in arrival order, until every stream ends or stop() is called.
        """
        lines: "queue.Queue[Optional[Tuple[str, str]]]" = queue.Queue()
        self._stop.clear()
        self._threads = []
        for service in services:
            thread = threading.Thread(
                target=self._pump, args=(service, follow, lines),
                name=f"logs-{service.name}", daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        remaining = len(self._threads)
        while remaining:
            try:
                item = lines.get(timeout=0.2)
            except queue.Empty:
                if self._stop.is_set():
                    return
                continue
            if item is None:
                remaining -= 1
                continue
            yield item

    def _pump(self, service: ServiceDefinition, follow: bool,
              lines: "queue.Queue[Optional[Tuple[str, str]]]") -> None:
        try:
            for line in self.runtime.stream_logs(service, follow=follow, stop_event=self._stop):
                lines.put((service.name, line))
        except OSError as e:
            logger.error("Cannot read logs of {}: {}", service.name, e)
        finally:
            lines.put(None)

    def tail_logs(self, services: List[ServiceDefinition], follow: bool = True,
                  echo: Callable[[str], None] = print) -> None:
        """
        Writes prefixed log lines for the given services until interrupted.
        """
        width = max((len(s.name) for s in services), default=10)
        try:
            for name, line in self.stream(services, follow=follow):
                echo(f"{name:{width}} | {line}")
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=1)
