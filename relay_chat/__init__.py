"""
Relay Chat package.

Contains the chat server and its console client:
- Session registry and broadcast fan-out
- Slash-command dispatch
- Shared message history log
- Task ledger
"""
