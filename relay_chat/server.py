"""
Relay Chat — Server
~~~~~~~~~~~~~~~~~~~~
Multi-client TCP chat server with threading support.
Relays newline-delimited messages between clients, keeps a shared
history log and a small task list, and answers slash commands.

Usage:
    python -m relay_chat.server [--host HOST] [--port PORT] [--history-file PATH]
"""

import socket
import threading
import argparse
import logging
import signal
import sys

from relay_chat.commands import CommandDispatcher
from relay_chat.history import DEFAULT_HISTORY_FILE, DEFAULT_REPLAY_DELAY, HistoryStore
from relay_chat.registry import SessionRegistry
from relay_chat.tasks import TaskLedger

# ──────────────────────────────────────────────
#  Logging
# ──────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
#  Defaults
# ──────────────────────────────────────────────
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9090
MAX_LINE_BYTES = 4096


class LineTooLong(Exception):
    """A client sent more than the configured line bound without a newline."""


class ChatServer:
    """
    TCP chat server and the context object every session works against.

    The registry and the task ledger share ``self.lock``; history
    appends and replays run outside it.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        history_file: str = DEFAULT_HISTORY_FILE,
        replay_delay: float = DEFAULT_REPLAY_DELAY,
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self.host = host
        self.port = port
        self.max_line_bytes = max_line_bytes

        self.server_socket: socket.socket | None = None

        self.lock = threading.RLock()          # registry + tasks
        self.registry = SessionRegistry(self.lock)
        self.tasks = TaskLedger(self.lock)
        self.history = HistoryStore(history_file, replay_delay)
        self.dispatcher = CommandDispatcher(self)
        self.running = False

    # ── broadcast ────────────────────────────
    def broadcast(self, message: str, exclude: socket.socket | None = None) -> int:
        """Send *message* to every registered client, optionally skipping one."""
        recipients = [s for s in self.registry.list_sessions() if s.handle is not exclude]

        delivered = 0
        for session in recipients:
            if session.send(message):
                delivered += 1
        return delivered

    # ── per-client handler ───────────────────
    def _read_line(self, reader) -> str | None:
        """Read one newline-terminated line, or None when the peer is gone."""
        raw = reader.readline(self.max_line_bytes + 1)
        if not raw:
            return None
        if not raw.endswith(b"\n"):
            if len(raw) > self.max_line_bytes:
                raise LineTooLong(len(raw))
            return None  # peer closed mid-line
        return raw.decode("utf-8", errors="replace")

    def _handle_client(self, client: socket.socket, address: str) -> None:
        """Listen loop for a single client; runs in its own thread."""
        session = self.registry.register(client, address)
        history = self.history.open_writer()
        reader = client.makefile("rb")

        logger.info("Client %s (%s) connected.", address, session.nickname)

        try:
            while self.running:
                try:
                    line = self._read_line(reader)
                except OSError:
                    break
                if line is None:
                    break
                if not self.dispatcher.dispatch(session, line.strip(), history):
                    break
        except LineTooLong as exc:
            logger.warning("Client %s sent a line over %d bytes (%s read), closing",
                           address, self.max_line_bytes, exc)
        finally:
            self.registry.deregister(client)
            history.close()
            try:
                reader.close()
            except OSError:
                pass
            session.close()

            logger.info("Client %s (%s) disconnected.", address, session.nickname)
            self.broadcast(f"{session.nickname} disconnected from the chat!\n")

    # ── accept loop ──────────────────────────
    def serve_forever(self) -> None:
        """Main loop: accept new connections and spin up handler threads."""
        while self.running:
            try:
                client, address = self.server_socket.accept()
            except OSError as exc:
                if not self.running:
                    break
                logger.error("Error accepting connection: %s", exc)
                continue

            peer = f"{address[0]}:{address[1]}"
            logger.info("Connection from %s", peer)

            thread = threading.Thread(
                target=self._handle_client,
                args=(client, peer),
                daemon=True,
            )
            thread.start()

    # ── start / stop ─────────────────────────
    def bind(self) -> None:
        """Bind and listen. Port 0 picks a free port, recorded in ``self.port``."""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen()
        except OSError:
            self.server_socket.close()
            self.server_socket = None
            raise
        self.port = self.server_socket.getsockname()[1]
        self.running = True

        logger.info("Server listening on %s:%d", self.host, self.port)

    def start(self) -> None:
        """Bind, listen, and begin accepting clients."""
        self.bind()
        self.serve_forever()

    def shutdown(self) -> None:
        """Gracefully close all connections and the server socket."""
        self.running = False
        logger.info("Shutting down…")

        for session in self.registry.list_sessions():
            session.close()

        if self.server_socket is not None:
            try:
                self.server_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.server_socket.close()
        logger.info("Server stopped.")


# ──────────────────────────────────────────────
#  Entry point
# ──────────────────────────────────────────────
def main() -> None:
    parser = argparse.ArgumentParser(description="Relay Chat — Server")
    parser.add_argument("--host", default=DEFAULT_HOST, help="bind address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="bind port")
    parser.add_argument("--history-file", default=DEFAULT_HISTORY_FILE,
                        help="append-only message log")
    parser.add_argument("--replay-delay", type=float, default=DEFAULT_REPLAY_DELAY,
                        help="seconds between lines sent by /history")
    parser.add_argument("--max-line-bytes", type=int, default=MAX_LINE_BYTES,
                        help="longest accepted client line")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    server = ChatServer(
        host=args.host,
        port=args.port,
        history_file=args.history_file,
        replay_delay=args.replay_delay,
        max_line_bytes=args.max_line_bytes,
    )

    # Handle Ctrl+C gracefully
    def _signal_handler(sig, frame):
        server.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, _signal_handler)

    try:
        server.bind()
    except OSError as exc:
        logger.critical("Error starting TCP server on %s:%d: %s", args.host, args.port, exc)
        sys.exit(1)

    server.serve_forever()


if __name__ == "__main__":
    main()
