"""
Database module - Persistent identity and session state.

Security Considerations:
- Session tokens are stored locally only, never logged
- Multi-key identity updates are written in one transaction
"""

from deviceauth.db.kv_store import KeyValueStore, StoreError

__all__ = ["KeyValueStore", "StoreError"]
