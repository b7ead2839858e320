"""
auth — Request authentication.

Provides:
  • HMAC-signed bearer token creation & verification
  • ``get_current_user_id`` FastAPI dependency
  • ``require_cron_secret`` for the internal job trigger
"""
