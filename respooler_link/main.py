"""Main entry point for the respooler link."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .ble_handler import SubsystemUnavailable, TransportError
from .config import Config, load_config
from .events import Event, LogEvent
from .mqtt_handler import MqttHandler
from .session import DeviceSession

logger = logging.getLogger(__name__)
protocol_logger = logging.getLogger("respooler_link.traffic")

# Connection retry settings
RETRY_DELAY = 5  # seconds


def main() -> None:
    """Entry point for respooler-link command."""
    parser = argparse.ArgumentParser(
        description="BLE controller and MQTT bridge for the LTS Respooler board"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: built-in BLE defaults)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging, including protocol traffic",
    )
    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.config is None:
        config = Config.default()
    else:
        try:
            config = load_config(args.config)
        except FileNotFoundError:
            logger.error("Configuration file not found: %s", args.config)
            sys.exit(1)
        except ValueError as e:
            logger.error("Configuration error: %s", e)
            sys.exit(1)

    sys.exit(asyncio.run(run(config)))


def _trace(event: LogEvent) -> None:
    protocol_logger.debug("%s %s", event.direction, event.message)


async def _wait_any(*events: asyncio.Event, timeout: float | None = None) -> None:
    waiters = [asyncio.create_task(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()


async def run(config: Config) -> int:
    """Run the session with loaded configuration, returning an exit code."""
    loop = asyncio.get_running_loop()
    session = DeviceSession(config)
    session.on(Event.LOG, _trace)

    mqtt_handler = None
    if config.mqtt is not None:
        mqtt_handler = MqttHandler(config.mqtt, session, loop)

    # Graceful shutdown
    shutdown_requested = asyncio.Event()
    link_lost = asyncio.Event()
    session.on(Event.DISCONNECTED, lambda _: link_lost.set())

    def handle_signal(signum, frame):
        logger.info("Shutdown requested")
        loop.call_soon_threadsafe(shutdown_requested.set)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        if mqtt_handler is not None:
            mqtt_handler.connect()

        while not shutdown_requested.is_set():
            link_lost.clear()
            try:
                connected = await session.connect()
            except SubsystemUnavailable as e:
                logger.error("Bluetooth is not available: %s", e)
                return 1
            except TransportError as e:
                logger.error("Failed to connect: %s (retrying in %ds)", e, RETRY_DELAY)
                connected = False

            if not connected:
                await _wait_any(shutdown_requested, timeout=RETRY_DELAY)
                continue

            state = session.get_state()
            logger.info("Session running: %s (firmware %s)", state.name, state.firmware)
            await _wait_any(shutdown_requested, link_lost)
            if link_lost.is_set() and not shutdown_requested.is_set():
                logger.warning("Board disconnected, will attempt reconnection")

    except Exception as e:
        logger.error("Unexpected error: %s", e)
        return 1
    finally:
        await session.disconnect()
        if mqtt_handler is not None:
            mqtt_handler.disconnect()
        logger.info("Session stopped")

    return 0


if __name__ == "__main__":
    main()
