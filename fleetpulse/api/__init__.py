"""REST and WebSocket routers."""
