"""Relay host, control channel and connection management.

- **server**: handler registry and invocation routing (host only)
- **connection**: host election (probe -> host or remote)
- **remote**: control-channel client used by remote handlers
- **registry**: in-memory sessions and cancellation handles
- **app** / **routers**: HTTP + WebSocket surface
"""
