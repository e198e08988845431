"""
Invites module.

- Single and bulk (CSV) invites with hashed, expiring tokens
- Public accept flow that creates or activates the account
- Batch sender with retries (see scripts/process_invites.py)
- Campaigns: throttled sending with per-domain limits and jitter
"""
