"""Pooled, usage-capped API secrets.

Modules
-------
pool  — CredentialPool: transactional LRU acquire + reconcile
sync  — Mirror <SERVICE>_API_KEYS from the environment into the pool
"""
