"""Composition root — wire bus, facts, engine and hooks from a config."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from cadence.automations.engine import AutomationEngine
from cadence.automations.events import EventBus
from cadence.automations.facts import (
    DomainDataSource,
    FactRegistry,
    register_domain_facts,
    register_time_facts,
)
from cadence.automations.hooks import LifecycleHooks
from cadence.config.schema import CadenceConfig

logger = logging.getLogger(__name__)


@dataclass
class AutomationRuntime:
    """Everything a host needs to run automations, built by :func:`create_automation`."""

    config: CadenceConfig
    bus: EventBus
    registry: FactRegistry
    engine: AutomationEngine
    hooks: LifecycleHooks

    async def start(self) -> None:
        await self.engine.start()

    async def stop(self) -> None:
        """Stop the engine and silence the bus."""
        await self.engine.stop()
        self.bus.set_enabled(False)


def create_automation(
    config: CadenceConfig | None = None,
    data_source: DomainDataSource | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AutomationRuntime:
    """Build a runtime with time facts, plus domain facts when *data_source* is given."""
    config = config or CadenceConfig()
    bus = EventBus(enabled=config.events.enabled)

    registry = FactRegistry()
    register_time_facts(registry, clock)
    if data_source is not None:
        register_domain_facts(registry, data_source, clock)

    engine = AutomationEngine(
        bus,
        registry,
        cache_ttl_ms=config.engine.fact_cache_ttl_ms,
        allow_undefined_facts=config.engine.allow_undefined_facts,
        clear_cache_default=config.engine.clear_cache_default,
        poll_interval_seconds=config.scheduler.poll_interval_seconds,
        scheduler_enabled=config.scheduler.enabled,
        clock=clock,
    )
    logger.debug("Automation runtime created with %d fact resolvers", len(registry))
    return AutomationRuntime(
        config=config,
        bus=bus,
        registry=registry,
        engine=engine,
        hooks=LifecycleHooks(bus),
    )
