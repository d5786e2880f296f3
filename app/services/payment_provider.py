"""
Payment Provider Protocol - Provider-agnostic interface.

Payloads cross this boundary as plain dicts (already converted from SDK
objects); the normalization adapter is the only reader of their shape.
"""

from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class FetchedSession:
    """
    Checkout session retrieved from the provider.

    api_key is the account key that found the session; follow-up calls for
    the same purchase (subscription, invoices) must use it.
    """

    payload: Mapping[str, Any]
    api_key: str = field(repr=False)

    @property
    def session_id(self) -> str:
        return str(self.payload.get("id") or "")


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider must implement this interface; Stripe is the only
    implementation today.
    """

    @property
    def api_keys(self) -> Sequence[str]:
        """Configured account keys, in lookup order."""
        ...

    async def fetch_session(self, session_id: str, api_key: str | None = None) -> FetchedSession:
        """
        Retrieve a checkout session with line items, customer and subscription expanded.

        Without api_key every configured key is tried in order.

        Raises:
            ResourceNotFoundError: No configured account knows the session
            PaymentProviderError: Provider call failed
        """
        ...

    def list_sessions(
        self,
        api_key: str,
        created_from: int | None = None,
        created_to: int | None = None,
        page_size: int = 100,
    ) -> AsyncIterator[Mapping[str, Any]]:
        """Iterate all sessions of one account (all pages), newest first."""
        ...

    async def fetch_subscription(self, subscription_id: str, api_key: str) -> Mapping[str, Any]:
        ...

    async def list_invoices(self, subscription_id: str, api_key: str) -> list[Mapping[str, Any]]:
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        """
        Verify a webhook signature against every configured secret.

        Raises:
            WebhookVerificationError: No secret validates the signature
            MalformedPayloadError: Payload is not a parseable event
        """
        ...
