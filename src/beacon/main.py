"""
Beacon Main Application Entry Point

Loads configuration, sets up logging and storage, wires the dispatch
services around one process-scoped PushGateway and serves the API.
"""

import asyncio
import signal
import sys
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Optional

from beacon.core.config import ConfigurationManager
from beacon.core.database import DatabaseManager, initialize_database
from beacon.core.logging import get_logger, initialize_logging
from beacon.services.emergency.dispatch_engine import DispatchEngine
from beacon.services.emergency.emergency_store import EmergencyStore
from beacon.services.emergency.geo_index import GeoIndex
from beacon.services.emergency.notification_store import NotificationStore
from beacon.services.emergency.state_machine import ResponderStateMachine
from beacon.services.emergency.voice_classifier import VoiceIncidentClassifier
from beacon.services.lookup.best_effort import BestEffort
from beacon.services.lookup.mapbox_client import MapboxClient
from beacon.services.realtime.presence import PresenceLayer
from beacon.services.realtime.push_gateway import PushGateway
from beacon.services.web.api_service import WebAPIService
from beacon.services.web.auth import TokenVerifier


@dataclass
class ServiceContainer:
    """Every long-lived service of one process"""
    gateway: PushGateway
    geo_index: GeoIndex
    emergency_store: EmergencyStore
    notification_store: NotificationStore
    dispatch_engine: DispatchEngine
    state_machine: ResponderStateMachine
    presence: PresenceLayer
    verifier: TokenVerifier
    web: WebAPIService
    mapbox: Optional[MapboxClient] = None


def build_services(config: Dict[str, Any], db: DatabaseManager,
                   mapbox: Optional[MapboxClient] = None) -> ServiceContainer:
    """
    Wire the dispatch services together

    Args:
        config: Merged configuration dictionary
        db: Open database manager
        mapbox: Geocoding/routing client; lookups degrade to absent results without one

    Returns:
        ServiceContainer holding the wired services
    """
    lookup_timeout = config.get('lookup', {}).get('timeout_seconds', 5.0)
    auth_config = config.get('auth', {})

    gateway = PushGateway()
    geo_index = GeoIndex(db)
    emergency_store = EmergencyStore(db)
    notification_store = NotificationStore(db)

    dispatch_engine = DispatchEngine(
        emergency_store,
        notification_store,
        geo_index,
        gateway,
        geocoder=mapbox,
        lookup=BestEffort("geocode", lookup_timeout),
        classifier=VoiceIncidentClassifier(),
        config=config.get('dispatch', {})
    )
    state_machine = ResponderStateMachine(
        emergency_store,
        notification_store,
        geo_index,
        gateway,
        router=mapbox,
        lookup=BestEffort("routing", lookup_timeout)
    )
    verifier = TokenVerifier(
        auth_config.get('jwt_secret', 'change-me'),
        geo_index,
        algorithm=auth_config.get('algorithm', 'HS256')
    )
    presence = PresenceLayer(gateway, geo_index, verifier, dispatch_engine)
    web = WebAPIService(
        config,
        emergency_store,
        notification_store,
        geo_index,
        dispatch_engine,
        state_machine,
        presence,
        verifier
    )

    return ServiceContainer(
        gateway=gateway,
        geo_index=geo_index,
        emergency_store=emergency_store,
        notification_store=notification_store,
        dispatch_engine=dispatch_engine,
        state_machine=state_machine,
        presence=presence,
        verifier=verifier,
        web=web,
        mapbox=mapbox
    )


class BeaconApplication:
    """Main Beacon application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.db_manager: Optional[DatabaseManager] = None
        self.services: Optional[ServiceContainer] = None
        self.logger = None

        self.running = False
        self.shutdown_event = asyncio.Event()

    async def initialize(self):
        """Initialize all application components"""
        print("Initializing Beacon...")

        try:
            self.config_manager = ConfigurationManager(self.config_dir)
            self.config_manager.load_config()

            initialize_logging(self.config_manager.config)
            self.logger = get_logger('main')

            self.logger.info("Beacon starting up...")
            self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
            self.logger.info(f"Debug mode: {self.config_manager.get('app.debug', False)}")

            self.db_manager = initialize_database(
                self.config_manager.get('database.path', 'data/beacon.db'),
                self.config_manager.get('database.max_connections', 10)
            )

            lookup = self.config_manager.get_section('lookup')
            if not lookup.get('mapbox_access_token'):
                self.logger.warning("No Mapbox access token configured; addresses and ETAs will be unavailable")
            mapbox = MapboxClient(
                lookup.get('mapbox_access_token', ''),
                base_url=lookup.get('base_url', 'https://api.mapbox.com'),
                routing_profile=lookup.get('routing_profile', 'driving'),
                timeout=lookup.get('timeout_seconds', 5.0)
            )
            await mapbox.start()

            self.services = build_services(self.config_manager.config, self.db_manager, mapbox)
            self.logger.info("Core systems initialized successfully")

        except Exception as e:
            if self.logger:
                self.logger.error(f"Failed to initialize application: {e}", exc_info=True)
            else:
                print(f"Failed to initialize application: {e}")
                traceback.print_exc()
            raise

    async def start(self):
        """Start the application and block until a shutdown signal arrives"""
        await self.initialize()

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.running = True
        try:
            if not await self.services.web.start():
                raise RuntimeError("Web API service failed to start")

            await self.shutdown_event.wait()
            self.logger.info("Shutdown signal received")

        except Exception as e:
            self.logger.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self):
        """Shutdown the application gracefully"""
        if not self.running:
            return

        self.logger.info("Shutting down Beacon...")
        self.running = False

        if self.services:
            await self.services.gateway.close()
            await self.services.web.stop()
            if self.services.mapbox:
                await self.services.mapbox.close()

        if self.db_manager:
            self.db_manager.close()

        self.logger.info("Beacon shutdown complete")


async def main():
    """Main entry point"""
    app = BeaconApplication()

    try:
        await app.start()
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
    except Exception as e:
        print(f"Application failed to start: {e}")
        sys.exit(1)


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nApplication interrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
