# app/core/dispatch/__init__.py
"""
Scheduled push notification dispatch.

This package holds the transport-agnostic pipeline:
- ``domain``: rows, transient results, cycle summary
- ``payloads``: pure kind → platform payload mapping
- ``services``: fetcher, grouper, resolver, fan-out, batched writes
- ``engine``: ``DispatchEngine`` entry points and ``DispatchContext``

Stores and the FCM transport are injected through ``ports`` protocols;
asyncpg / firebase-admin implementations live in ``app.infra``.
"""
