"""
ConnectorRegistry — dispatches a ``Provider`` to its adapter.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from connectors.base import BaseConnector
from connectors.fireflies import FirefliesConnector
from connectors.google_drive import GoogleDriveConnector
from connectors.linear import LinearConnector
from connectors.schemas import Provider
from connectors.slack import SlackConnector

logger = logging.getLogger(__name__)


def default_connectors() -> List[BaseConnector]:
    # ── All known adapters; add new ones here ──────────────────────────
    return [
        FirefliesConnector(),
        LinearConnector(),
        SlackConnector(),
        GoogleDriveConnector(),
    ]


def parse_provider(value: str) -> Optional[Provider]:
    try:
        return Provider(value)
    except ValueError:
        return None


class ConnectorRegistry:
    """Registry of provider adapters, one per ``Provider``."""

    def __init__(self, connectors: Optional[Iterable[BaseConnector]] = None):
        self._connectors: Dict[Provider, BaseConnector] = {}
        for conn in connectors if connectors is not None else default_connectors():
            self._connectors[conn.provider] = conn

    def log_configuration(self) -> None:
        for conn in self._connectors.values():
            if conn.is_configured():
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider.value)
            else:
                logger.warning(
                    "Connector %s has no OAuth client — only API keys and webhooks will work",
                    conn.provider.value,
                )

    def get(self, provider: Provider | str) -> Optional[BaseConnector]:
        if isinstance(provider, str) and not isinstance(provider, Provider):
            provider = parse_provider(provider)
            if provider is None:
                return None
        return self._connectors.get(provider)

    def list_providers(self) -> List[Dict[str, object]]:
        return [
            {
                "provider": c.provider.value,
                "display_name": c.display_name,
                "configured": c.is_configured(),
                "supports_api_key": c.supports_api_key,
            }
            for c in self._connectors.values()
        ]


_default_registry: Optional[ConnectorRegistry] = None


def get_registry() -> ConnectorRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = ConnectorRegistry()
    return _default_registry
