#!/usr/bin/env python3
"""
torrentwire - announce a torrent to its tracker and hold handshaken peer
connections open until interrupted.
"""

import asyncio
import argparse
import signal
import sys
from pathlib import Path
from torrentwire.common.config import ClientConfig
from torrentwire.common.errors import ListenPortUnavailable, MetadataError
from torrentwire.common.identity import derive_peer_id, find_listen_port
from torrentwire.common.logging import config_logging
from torrentwire.eventloop.session import TorrentSession
from torrentwire.torrent.parser import parse_torrent_file
import logging

logger = logging.getLogger(__name__)


async def run_session(torrent_path: Path, config: ClientConfig, port: int | None, listen: bool) -> int:
    try:
        metadata = parse_torrent_file(torrent_path)
    except MetadataError as e:
        logger.error(f"Cannot parse {torrent_path}: {e}")
        return 1

    print(f"\n{'='*60}")
    print(f"Torrent:   {metadata.name}")
    print(f"InfoHash:  {metadata.info_hash.hex()}")
    print(f"Size:      {metadata.total_length / (1024*1024):.2f} MB")
    print(f"Pieces:    {len(metadata.pieces)} x {metadata.piece_length / 1024:.0f} KB")
    print(f"Tracker:   {metadata.tracker_url or '(none)'}")
    print(f"{'='*60}\n")

    if not metadata.tracker_url:
        logger.error("Torrent has no announce URL")
        return 1

    try:
        if port is None:
            port = find_listen_port(config.listen_host, *config.port_range)
        session = TorrentSession(metadata, derive_peer_id(config.peer_id_prefix), port, config)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:  # Windows
                pass

        await session.run(stop, listen=listen)
    except ListenPortUnavailable as e:
        logger.error(f"Cannot start: {e}")
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="torrentwire - BitTorrent tracker announce and peer handshake client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ubuntu.torrent
  %(prog)s file.torrent -p 6885 -v
        """,
    )
    parser.add_argument("torrent", type=Path, help="Path to the .torrent file")
    parser.add_argument(
        "-p", "--port", type=int, default=None,
        help="Listen port (default: first free port in 6881-6889)",
    )
    parser.add_argument("--no-listen", action="store_true", help="Do not accept inbound peers")
    parser.add_argument(
        "--no-compact", action="store_true", help="Ask the tracker for a dictionary peer list"
    )
    parser.add_argument("--max-peers", type=int, default=None, help="Maximum peer connections")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--log-file",
        type=Path,
        default=Path("data") / "logs" / "torrentwire.log.jsonl",
        help="Path to JSON log file (default: data/logs/torrentwire.log.jsonl)",
    )
    args = parser.parse_args()

    if not args.torrent.exists():
        print(f"Error: Torrent file '{args.torrent}' not found")
        sys.exit(1)

    config_logging(args.log_file, args.verbose)
    config = ClientConfig.from_env(
        compact=False if args.no_compact else None,
        max_peers=args.max_peers,
    )
    sys.exit(asyncio.run(run_session(args.torrent, config, args.port, not args.no_listen)))


if __name__ == "__main__":
    main()
