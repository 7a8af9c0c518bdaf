"""HTTP and WebSocket routes of the relay host."""
