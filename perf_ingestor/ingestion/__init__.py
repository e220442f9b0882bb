"""Report service access.

Modules
-------
token_cache    — Single-slot access-token cache (refresh-token grant)
report_client  — Submit / poll / download / parse one report job
"""
