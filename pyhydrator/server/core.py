"""
Orchestrator Manager - owns the server's single Orchestrator.

Architecture:
    - Singleton pattern (single orchestrator_manager instance)
    - initialize() builds and starts the Orchestrator from Settings and attaches
      the WebSocket transport, so every outbound signal reaches connected clients
    - shutdown() destroys it (background tasks, in-flight fetches, handlers)

API endpoints never construct orchestrators themselves; they read
``orchestrator_manager.orchestrator``.
"""
import logging
from typing import List, Optional

from pyhydrator.bus import Transport
from pyhydrator.config import Settings
from pyhydrator.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class OrchestratorManager:

    def __init__(self):
        self.orchestrator: Optional[Orchestrator] = None

    @property
    def ready(self) -> bool:
        return self.orchestrator is not None and self.orchestrator.running

    async def initialize(self, settings: Settings, transports: Optional[List[Transport]] = None,
                         **kwargs) -> Orchestrator:
        if self.orchestrator is not None:
            await self.shutdown()
        self.orchestrator = Orchestrator(settings, transports=transports, **kwargs)
        await self.orchestrator.init()
        logger.info(f"Orchestrator started (credentials configured: {settings.has_credentials})")
        return self.orchestrator

    async def shutdown(self):
        if self.orchestrator is None:
            return
        await self.orchestrator.destroy()
        self.orchestrator = None
        logger.info("Orchestrator manager shutdown complete")

    def get(self) -> Orchestrator:
        if self.orchestrator is None:
            raise RuntimeError("Orchestrator not initialized")
        return self.orchestrator


orchestrator_manager = OrchestratorManager()
