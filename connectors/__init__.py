"""
connectors — provider integrations for the sync engine.

Provides a generic connector framework that handles:
  • OAuth2 authorization URLs, code exchange and token refresh (broker)
  • Per-owner credential storage with versioned token writes
  • Fernet encryption of tokens at rest
  • Provider adapters: paged fetch, webhook translation, signature checks

Each provider (Fireflies, Linear, Slack, Google Drive) is a subclass of
BaseConnector.
"""
