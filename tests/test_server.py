"""End-to-end tests against a real server on a loopback port."""

import os
import socket
import struct
import sys
import tempfile
import threading
import time
import unittest
from email.utils import parsedate_to_datetime
from unittest import mock

from relay_chat.history import parse_entry
from relay_chat.server import ChatServer, main

TIMEOUT = 3


class Peer:
    """A bare TCP client that speaks the line protocol."""

    def __init__(self, port: int) -> None:
        self.sock = socket.create_connection(("127.0.0.1", port), timeout=TIMEOUT)
        self.reader = self.sock.makefile("r", encoding="utf-8", newline="\n")

    def send(self, line: str) -> None:
        self.sock.sendall((line + "\n").encode("utf-8"))

    def read(self) -> str:
        return self.reader.readline()

    def login(self, nickname: str) -> None:
        """
        Rename, then wait until the rename notice has gone out.

        A session handles its lines one at a time and the notice is sent
        after the reply, so the /users answer only arrives once the
        notice broadcast is done. A peer connected afterwards never sees it.
        """
        self.send(f"/nickname {nickname}")
        assert self.read() == f"Nickname changed to {nickname}\n"
        self.send("/users")
        assert self.read().startswith("Connected users: ")

    def reset(self) -> None:
        """Abort the connection with an RST instead of a FIN."""
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        self.close()

    def close(self) -> None:
        try:
            self.reader.close()
        finally:
            self.sock.close()


class ServerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.server = ChatServer(
            host="127.0.0.1",
            port=0,
            history_file=os.path.join(self.tmpdir.name, "history.log"),
            replay_delay=0,
            max_line_bytes=256,
        )
        self.server.bind()
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.peers = []

    def tearDown(self):
        for peer in self.peers:
            try:
                peer.close()
            except OSError:
                pass
        self.server.shutdown()
        self.thread.join(TIMEOUT)
        self.tmpdir.cleanup()

    def connect(self, nickname=None) -> Peer:
        peer = Peer(self.server.port)
        self.peers.append(peer)
        if nickname is not None:
            peer.login(nickname)
        return peer

    def wait_for(self, predicate, timeout=TIMEOUT):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False


class TestScenarios(ServerTestCase):

    def test_hello_reaches_others_only(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        self.assertEqual(alice.read(), "'Anonymous' changed nickname to 'Bob'\n")

        alice.send("hello")
        self.assertEqual(bob.read(), "Alice: hello\n")

        # The next thing Alice sees is her own /users reply, not her message.
        alice.send("/users")
        self.assertTrue(alice.read().startswith("Connected users: "))

    def test_users_reflect_nickname_change(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()

        alice.send("/nickname Alicia")
        self.assertEqual(alice.read(), "Nickname changed to Alicia\n")
        self.assertEqual(bob.read(), "'Alice' changed nickname to 'Alicia'\n")

        bob.send("/users")
        names = set(bob.read()[len("Connected users: "):].rstrip("\n").split(", "))
        self.assertEqual(names, {"Alicia", "Bob"})

    def test_tasks_shared_between_sessions(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()

        alice.send("/task add fix bug")
        self.assertEqual(alice.read(), "Task added with ID 1\n")

        bob.send("/task list")
        self.assertEqual(bob.read(), "ID: 1, Owner: Alice, Description: fix bug\n")

        alice.send("/task delete 1")
        self.assertEqual(alice.read(), "Task deleted successfully.\n")

        bob.send("/task list")
        self.assertEqual(bob.read(), "No tasks found.\n")

    def test_history_round_trip(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()

        for text in ("one", "two", "three"):
            alice.send(text)
            self.assertEqual(bob.read(), f"Alice: {text}\n")
        bob.send("ack")
        self.assertEqual(alice.read(), "Bob: ack\n")

        carol = self.connect("Carol")
        carol.send("/history")
        entries = [parse_entry(carol.read()) for _ in range(4)]

        self.assertEqual(
            [(e.nickname, e.message) for e in entries],
            [("Alice", "one"), ("Alice", "two"), ("Alice", "three"), ("Bob", "ack")],
        )
        with open(self.server.history.path, encoding="utf-8") as log:
            stamp = log.readline().split(" GMT: ", 1)[0] + " GMT"
        self.assertIsNotNone(parsedate_to_datetime(stamp))

    def test_quit_says_goodbye_and_notifies(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()

        alice.send("/quit")
        self.assertEqual(alice.read(), "Goodbye!\n")
        self.assertEqual(alice.read(), "")
        self.assertEqual(bob.read(), "Alice disconnected from the chat!\n")

    def test_abrupt_disconnect_notifies_with_current_nickname(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()
        alice.send("/nickname Ally")
        alice.read()
        bob.read()

        alice.reset()

        self.assertEqual(bob.read(), "Ally disconnected from the chat!\n")
        self.assertTrue(self.wait_for(lambda: len(self.server.registry) == 1))

    def test_oversized_line_closes_session(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()

        alice.sock.sendall(b"x" * 1024)

        self.assertEqual(bob.read(), "Alice disconnected from the chat!\n")
        self.assertTrue(self.wait_for(lambda: len(self.server.registry) == 1))

    def test_line_at_the_limit_is_accepted(self):
        alice = self.connect("Alice")
        bob = self.connect("Bob")
        alice.read()

        text = "x" * self.server.max_line_bytes
        alice.send(text)

        self.assertEqual(bob.read(), f"Alice: {text}\n")
        self.assertEqual(len(self.server.registry), 2)

    def test_many_clients_all_receive(self):
        sender = self.connect("Sender")
        others = [self.connect(f"user{i}") for i in range(5)]
        self.assertEqual(len(self.server.registry), 6)

        sender.send("hi all")
        for peer in others:
            line = peer.read()
            # Rename notices from the clients that joined later come first.
            while "changed nickname" in line:
                line = peer.read()
            self.assertEqual(line, "Sender: hi all\n")

        sender.send("/users")
        line = sender.read()
        while not line.startswith("Connected users: "):
            line = sender.read()
        names = set(line[len("Connected users: "):].rstrip("\n").split(", "))
        self.assertEqual(names, {"Sender"} | {f"user{i}" for i in range(5)})


class TestLifecycle(unittest.TestCase):

    def test_bind_failure_raises(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        try:
            server = ChatServer(host="127.0.0.1", port=blocker.getsockname()[1])
            # SO_REUSEADDR does not allow two listeners on one port.
            with self.assertRaises(OSError):
                server.bind()
            self.assertFalse(server.running)
        finally:
            blocker.close()

    def test_shutdown_stops_accept_loop(self):
        with tempfile.TemporaryDirectory() as tmp:
            server = ChatServer(host="127.0.0.1", port=0,
                                history_file=os.path.join(tmp, "history.log"))
            server.bind()
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()

            server.shutdown()
            thread.join(TIMEOUT)
            self.assertFalse(thread.is_alive())

    def test_accept_error_is_logged_and_loop_continues(self):
        server = ChatServer(host="127.0.0.1", port=0)
        server.running = True
        calls = []

        def accept():
            calls.append(len(calls))
            if len(calls) == 1:
                raise OSError("too many open files")
            server.running = False
            raise OSError("listener closed")

        server.server_socket = mock.Mock(accept=accept)
        with self.assertLogs("relay_chat.server", level="ERROR") as logs:
            server.serve_forever()

        self.assertEqual(len(calls), 2)
        self.assertEqual(len(logs.output), 1)
        self.assertIn("too many open files", logs.output[0])

    def test_main_exits_when_bind_fails(self):
        argv = ["relay-chat-server", "--port", "9090"]
        with mock.patch.object(sys, "argv", argv), \
                mock.patch("relay_chat.server.signal.signal"), \
                mock.patch.object(ChatServer, "bind", side_effect=OSError("address in use")), \
                mock.patch.object(ChatServer, "serve_forever") as serve:
            with self.assertLogs("relay_chat.server", level="CRITICAL"):
                with self.assertRaises(SystemExit) as ctx:
                    main()

        self.assertEqual(ctx.exception.code, 1)
        serve.assert_not_called()


if __name__ == "__main__":
    unittest.main()
