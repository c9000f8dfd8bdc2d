"""Selects adapter variants by configured system id."""

import logging
from typing import Callable, Dict, Optional

import config
from surveillance.adapters.arbonet import ArboretAdapter
from surveillance.adapters.base import AbstractSinkAdapter, AbstractSourceAdapter, UnknownAdapter
from surveillance.adapters.labware import LabwareAdapter
from surveillance.adapters.nedss import NedssAdapter

logger = logging.getLogger(__name__)

SOURCE_VARIANTS = {
    "labware": lambda system_id: LabwareAdapter(source_id=system_id),
}  # type: Dict[str, Callable[[str], AbstractSourceAdapter]]

SINK_VARIANTS = {
    "nedss": lambda system_id: NedssAdapter(destination_system=system_id),
    "arbonet": lambda system_id: ArboretAdapter(destination_system=system_id),
}  # type: Dict[str, Callable[[str], AbstractSinkAdapter]]


class AdapterRegistry:
    """
    Adapters keyed by sourceId / destinationSystem.

    Instances are created lazily from the configured variant names, or can be
    supplied up front (tests pass fakes this way).
    """

    def __init__(
        self,
        sources: Optional[Dict[str, AbstractSourceAdapter]] = None,
        sinks: Optional[Dict[str, AbstractSinkAdapter]] = None,
        source_mapping: Optional[Dict[str, str]] = None,
        sink_mapping: Optional[Dict[str, str]] = None,
    ):
        self._sources = dict(sources or {})
        self._sinks = dict(sinks or {})
        self.source_mapping = source_mapping if source_mapping is not None else config.get_source_adapters()
        self.sink_mapping = sink_mapping if sink_mapping is not None else config.get_sink_adapters()

    def source(self, source_id: str) -> AbstractSourceAdapter:
        if source_id not in self._sources:
            variant = self.source_mapping.get(source_id)
            if variant not in SOURCE_VARIANTS:
                raise UnknownAdapter(f"No source adapter configured for {source_id!r}")
            logger.info(f"Creating {variant} source adapter for {source_id}")
            self._sources[source_id] = SOURCE_VARIANTS[variant](source_id)
        return self._sources[source_id]

    def sink(self, destination_system: str) -> AbstractSinkAdapter:
        if destination_system not in self._sinks:
            variant = self.sink_mapping.get(destination_system)
            if variant not in SINK_VARIANTS:
                raise UnknownAdapter(f"No sink adapter configured for {destination_system!r}")
            logger.info(f"Creating {variant} sink adapter for {destination_system}")
            self._sinks[destination_system] = SINK_VARIANTS[variant](destination_system)
        return self._sinks[destination_system]
