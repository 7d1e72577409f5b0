"""Messaging relay (WebSocket).

Components:
    - ConnectionRegistry: live connections per user
    - PresenceTracker: online/offline edges, persisted and broadcast
    - ConversationStore: 1:1 conversations and messages in DuckDB
    - BroadcastRouter: fan-out to live connections
    - RelaySession: per-connection protocol state machine
"""
