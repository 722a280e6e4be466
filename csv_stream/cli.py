"""
Command-line interface for the CSV streaming service and its client.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

import httpx
import uvicorn

from .api import create_app
from .config import Settings, load_config
from .delivery import TextPainter
from .supervisor import TransportSupervisor

logger = logging.getLogger(__name__)

def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

def handle_serve(args: argparse.Namespace, settings: Settings) -> None:
    """Handle the serve command.

    Args:
        args: Command line arguments
        settings: Loaded settings
    """
    settings.server.storage_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Serving uploads from {settings.server.storage_dir}")
    uvicorn.run(create_app(settings.server), host=args.host, port=args.port)

async def run_load(path: Path, settings: Settings) -> int:
    """Upload a file and fetch all of its rows through the client pipeline.

    Returns:
        Number of rows delivered
    """
    client_settings = settings.client
    painter = TextPainter()
    alerts = []

    async with httpx.AsyncClient(base_url=client_settings.base_url,
                                 timeout=client_settings.request_timeout) as client:
        supervisor = TransportSupervisor(
            client,
            client_settings,
            painter=painter,
            on_alert=alerts.append,
            on_progress=lambda pct: logger.debug(f"Upload progress {pct}%")
        )
        try:
            await supervisor.load_file(path)
            state = await supervisor.wait_until_complete()
        finally:
            await supervisor.close()

    if alerts:
        raise RuntimeError(alerts[-1])

    print(painter.text())
    print(f"\n{len(state.rows)} rows, {len(state.headers)} columns, upload {state.upload_id}")
    return len(state.rows)

def handle_load(args: argparse.Namespace, settings: Settings) -> None:
    """Handle the load command.

    Args:
        args: Command line arguments
        settings: Loaded settings
    """
    if args.url:
        settings.client.base_url = args.url
    if args.poll:
        settings.client.prefer_stream = False
    asyncio.run(run_load(Path(args.file), settings))

def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="CSV upload and row streaming CLI")
    parser.add_argument('-v', '--verbose', action='store_true',
                       help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                       help="Path to config file")

    subparsers = parser.add_subparsers(dest='command', required=True)

    # Serve command
    serve_parser = subparsers.add_parser('serve',
                                        help="Run the HTTP server")
    serve_parser.add_argument('--host', type=str, default="127.0.0.1",
                            help="Bind address")
    serve_parser.add_argument('--port', type=int, default=8000,
                            help="Bind port")

    # Load command
    load_parser = subparsers.add_parser('load',
                                       help="Upload a CSV and fetch its rows")
    load_parser.add_argument('file', type=str,
                           help="Local CSV file")
    load_parser.add_argument('--url', type=str,
                           help="Server base URL")
    load_parser.add_argument('--poll', action='store_true',
                           help="Fetch rows by polling instead of streaming")

    args = parser.parse_args()
    setup_logging(args.verbose)
    settings = load_config(args.config)

    try:
        if args.command == 'serve':
            handle_serve(args, settings)
        elif args.command == 'load':
            handle_load(args, settings)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")

    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

if __name__ == '__main__':
    main()
