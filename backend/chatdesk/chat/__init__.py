"""Real-time customer support chat.

Modules:
    - gateway: connection lifecycle, join/send/read/list handling
    - store: DuckDB Room Store and Message Store
    - registry: process-local presence tracking
    - access: per-role capabilities (Customer, Agent)
    - router: /ws/chat WebSocket channel and HTTP history/presence endpoints
"""
