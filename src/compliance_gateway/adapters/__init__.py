"""Adapters - external integrations for the compliance gateway.

Contains:
- repositories.py   - SQLAlchemy repositories for the primary DB
- audit_store.py    - Append-only AuditLogRepository on the audit DB
- opa_client.py     - OPA REST API client
- notifications.py  - Notification service and bounded dispatcher
"""

__all__: list[str] = []
