"""Bitcoin SV blockchain indexer with REST, GraphQL, WebSocket and metrics endpoints."""

__version__ = "0.1.4"