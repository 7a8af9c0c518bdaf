"""Wire and domain models for the relay.

- **messages**: ``AgentMessage`` (status / error / done)
- **protocol**: control-channel frames exchanged between host and remotes
- **api**: HTTP request / response schemas
- **browser**: frames of the browser WebSocket channel
"""
