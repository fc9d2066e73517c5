"""Subscriptions to external endpoints over RPC polling and WebSocket."""