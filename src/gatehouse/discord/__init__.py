"""
Discord integration for external account verification.

Exports:
    DiscordClient: httpx-based implementation of VerificationClient.
    VerificationClient: Protocol the link coordinator depends on.
    ExternalAccount, DeliveryResult: Values returned by the client.
    ExternalServiceUnavailable, DiscordAPIError: Raised on service failures.
"""

from gatehouse.discord.client import (
    DeliveryResult,
    DiscordAPIError,
    DiscordClient,
    ExternalAccount,
    ExternalServiceUnavailable,
    VerificationClient,
)

__all__ = [
    "DeliveryResult",
    "DiscordAPIError",
    "DiscordClient",
    "ExternalAccount",
    "ExternalServiceUnavailable",
    "VerificationClient",
]
