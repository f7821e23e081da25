import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Dict

import uvicorn

from .core.config import Settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("mesflow.main")


async def shutdown(shutdown_event: asyncio.Event, sig=None):
    """Perform graceful shutdown"""
    if sig:
        logger.info(f"Received exit signal {sig.name}...")
    logger.info("Shutting down...")
    shutdown_event.set()


def setup_signal_handlers() -> asyncio.Event:
    """Setup signal handlers for graceful shutdown; returns the event they set"""
    shutdown_event = asyncio.Event()
    signals = (signal.SIGINT, signal.SIGTERM) if sys.platform != "win32" else (signal.SIGINT,)
    loop = asyncio.get_running_loop()
    for s in signals:
        loop.add_signal_handler(s, lambda s=s: asyncio.create_task(shutdown(shutdown_event, s)))
    return shutdown_event


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration file

    Args:
        config_path: Path to a JSON file whose keys match ``Settings`` fields

    Returns:
        Configuration dictionary; empty when the file is missing or unreadable
    """
    if not os.path.exists(config_path):
        logger.warning(f"Configuration file {config_path} not found. Using defaults.")
        return {}

    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return {}

    if not isinstance(config, dict):
        logger.error(f"Configuration file {config_path} must contain a JSON object")
        return {}
    logger.info(f"Loaded configuration from {config_path}")
    return config


def build_settings(config_path: str) -> Settings:
    """Environment settings overlaid with the configuration file"""
    return Settings.from_env().merged(load_config(config_path))


async def start_api_server(
    settings: Settings, shutdown_event: asyncio.Event, host: str = "0.0.0.0", port: int = 8000
):
    """
    Start API server and run it until a shutdown signal arrives

    Args:
        settings: Application settings
        shutdown_event: Set when the process should stop
        host: Host to bind to
        port: Port to bind to
    """
    from .api.main import create_app

    app = create_app(settings)
    config = uvicorn.Config(app=app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)

    api_task = asyncio.create_task(server.serve())
    stop_task = asyncio.create_task(shutdown_event.wait())
    await asyncio.wait({api_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if not api_task.done():
        logger.info("Stopping API server...")
        server.should_exit = True
        await api_task
    stop_task.cancel()


async def main_async() -> int:
    """Main async function"""
    parser = argparse.ArgumentParser(description="MesFlow workflow execution server")
    parser.add_argument(
        "--config", "-c", default="config/config.json", help="Path to configuration file"
    )
    parser.add_argument("--host", "-H", default="0.0.0.0", help="API server host")
    parser.add_argument("--port", "-p", type=int, default=8000, help="API server port")
    args = parser.parse_args()

    shutdown_event = setup_signal_handlers()
    logger.info("Starting MesFlow")

    settings = build_settings(args.config)
    try:
        await start_api_server(settings, shutdown_event, host=args.host, port=args.port)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1

    logger.info("Shutdown complete")
    return 0


def main():
    """Main entry point"""
    try:
        exit_code = asyncio.run(main_async())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
