"""Push sink contract for online mode."""

from __future__ import annotations

import abc
import logging

from ..collector.base import MetricSample

logger = logging.getLogger(__name__)


class BaseExporter(abc.ABC):
    """A sink fed with every completed scrape by the orchestrator.

    Instances are callable so they can be registered directly with
    ``CollectionOrchestrator.add_sink``. Empty scrapes (cancelled cycles)
    are never forwarded to :meth:`export`.
    """

    def __call__(self, samples: list[MetricSample]) -> None:
        if not samples:
            logger.debug("%s: nothing to push", type(self).__name__)
            return
        self.export(samples)

    @abc.abstractmethod
    def export(self, samples: list[MetricSample]) -> None:
        """Push one scrape's samples."""

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Flush pending data and close the transport."""
