"""
connectors — third-party integration framework.

Provides a generic connector engine that handles:
  • OAuth2 authorization URLs with state and optional PKCE
  • Callback handling (code → token exchange)
  • Single-flight token refresh and authenticated requests
  • Webhook registration and HMAC verification
  • Fernet encryption of secrets at rest

Each provider (HubSpot, GA4, …) is a subclass of BaseConnector and is
listed in ``connectors.catalog``.
"""
