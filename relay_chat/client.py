"""
Relay Chat — Client
~~~~~~~~~~~~~~~~~~~~
CLI chat client. Sends the chosen nickname once connected, forwards
keyboard lines to the server and prints everything the server sends.

Usage:
    python -m relay_chat.client [--host HOST] [--port PORT]
"""

import socket
import threading
import argparse
import sys

# ──────────────────────────────────────────────
#  Defaults
# ──────────────────────────────────────────────
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9090
QUIT_COMMAND = "/quit"
SERVER_PREFIX = "Server: "


class ChatClient:
    """Line-based TCP chat client."""

    def __init__(self, host: str, port: int, stdin=None, stdout=None) -> None:
        self.host = host
        self.port = port
        self.nickname = None
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.running = False

    # ── connection ───────────────────────────
    def connect(self) -> None:
        """Establish a TCP connection to the chat server."""
        try:
            self.sock.connect((self.host, self.port))
        except OSError as exc:
            print(f"Error connecting to server: {exc}", file=self.stdout)
            sys.exit(1)

        self.running = True

    def announce(self, nickname: str) -> None:
        """Tell the server which nickname to use before chatting starts."""
        self.nickname = nickname
        self._send(f"/nickname {nickname}\n")

    def _send(self, line: str) -> bool:
        """Write a raw line; False if the socket is closed."""
        try:
            self.sock.sendall(line.encode("utf-8"))
        except OSError:
            return False
        return True

    # ── receive loop ─────────────────────────
    def _receive_loop(self) -> None:
        """Continuously read lines from the socket and display them."""
        reader = self.sock.makefile("r", encoding="utf-8", errors="replace", newline="\n")
        while self.running:
            try:
                line = reader.readline()
            except (OSError, ValueError):
                line = ""
            if not line:
                if self.running:
                    print("Disconnected from the server.", file=self.stdout)
                break
            self.stdout.write(SERVER_PREFIX + line)
            self.stdout.flush()

        reader.close()
        self._disconnect()

    # ── send loop ────────────────────────────
    def _send_loop(self) -> None:
        """Read user input and forward it verbatim."""
        while self.running:
            try:
                text = self.stdin.readline()
            except KeyboardInterrupt:
                break
            if not text:
                break

            if text.strip() == QUIT_COMMAND:
                print("Disconnecting from server...", file=self.stdout)
                self._send(QUIT_COMMAND + "\n")
                break

            if not text.endswith("\n"):
                text += "\n"
            if not self._send(text):
                break

        self._disconnect()

    # ── lifecycle ────────────────────────────
    def _disconnect(self) -> None:
        """Close the socket and flip the running flag."""
        self.running = False
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.sock.close()
        except OSError:
            pass

    def run(self) -> None:
        """Start the receive thread and run the send loop."""
        recv_thread = threading.Thread(target=self._receive_loop, daemon=True)
        recv_thread.start()

        # send loop runs on the main thread so Ctrl+C works
        self._send_loop()


# ──────────────────────────────────────────────
#  Entry point
# ──────────────────────────────────────────────
def main() -> None:
    parser = argparse.ArgumentParser(description="Relay Chat — Client")
    parser.add_argument("--host", default=DEFAULT_HOST, help="server address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="server port")
    args = parser.parse_args()

    client = ChatClient(host=args.host, port=args.port)
    client.connect()

    nickname = input("Enter your nickname: ").strip()
    client.announce(nickname)
    client.run()
    sys.exit(0)


if __name__ == "__main__":
    main()
