"""
Stripe Payment Provider Implementation.

Uses the SDK's async request methods (httpx transport). Every object leaving
this module is a plain dict produced by to_plain().
"""

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import stripe
from structlog import get_logger

from app.exceptions import (
    MalformedPayloadError,
    PaymentProviderError,
    ResourceNotFoundError,
    TransientProviderError,
    WebhookVerificationError,
)
from app.services.normalization import to_plain
from app.services.payment_provider import FetchedSession

logger = get_logger(__name__)

SESSION_EXPAND = ["line_items.data.price.product", "customer", "subscription"]
LINE_ITEMS_EXPAND = ["data.price.product"]


def _key_hint(api_key: str) -> str:
    """Loggable identification of an account key."""
    return f"{api_key[:8]}…{api_key[-4:]}" if len(api_key) > 12 else "***"


def _provider_error(exc: stripe.StripeError, message: str) -> PaymentProviderError:
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientProviderError(f"{message}: {exc}")
    return PaymentProviderError(f"{message}: {exc}")


def _is_missing(exc: stripe.StripeError) -> bool:
    return isinstance(exc, stripe.InvalidRequestError) and (
        exc.http_status == 404 or exc.code == "resource_missing"
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for one or more Stripe accounts.
    """

    def __init__(
        self,
        api_keys: Sequence[str],
        webhook_secrets: Sequence[str],
        max_network_retries: int = 2,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_keys: Stripe secret API keys, tried in order
            webhook_secrets: Stripe webhook signing secrets, tried in order
            max_network_retries: SDK-level retries for idempotent requests
        """
        self._api_keys = tuple(api_keys)
        self.webhook_secrets = tuple(webhook_secrets)
        stripe.max_network_retries = max_network_retries

    @property
    def api_keys(self) -> Sequence[str]:
        return self._api_keys

    # ========================================================================
    # Checkout sessions
    # ========================================================================

    async def _retrieve_session(self, session_id: str, api_key: str) -> dict[str, Any]:
        try:
            session = await stripe.checkout.Session.retrieve_async(
                session_id, api_key=api_key, expand=SESSION_EXPAND
            )
        except stripe.InvalidRequestError as exc:
            if _is_missing(exc):
                raise
            # Retry without expansion.
            logger.warning(
                "stripe_session_expand_failed", session_id=session_id, error=str(exc)
            )
            session = await stripe.checkout.Session.retrieve_async(session_id, api_key=api_key)

        payload: dict[str, Any] = to_plain(session)
        line_items = payload.get("line_items")
        if not isinstance(line_items, Mapping) or not line_items.get("data"):
            payload["line_items"] = await self._list_line_items(session_id, api_key)
        return payload

    async def _list_line_items(self, session_id: str, api_key: str) -> dict[str, Any]:
        items = await stripe.checkout.Session.list_line_items_async(
            session_id, api_key=api_key, limit=100, expand=LINE_ITEMS_EXPAND
        )
        return to_plain(items)  # type: ignore[no-any-return]

    async def fetch_session(self, session_id: str, api_key: str | None = None) -> FetchedSession:
        """
        Retrieve an expanded checkout session.

        Raises:
            ResourceNotFoundError: No configured account knows the session
            PaymentProviderError: Stripe API call failed
        """
        keys = (api_key,) if api_key else self._api_keys
        if not keys:
            raise PaymentProviderError("No Stripe API keys configured")

        for key in keys:
            try:
                logger.info(
                    "retrieving_stripe_session", session_id=session_id, key=_key_hint(key)
                )
                payload = await self._retrieve_session(session_id, key)
            except stripe.StripeError as exc:
                if _is_missing(exc) or isinstance(exc, stripe.AuthenticationError):
                    logger.info(
                        "stripe_session_not_on_account",
                        session_id=session_id,
                        key=_key_hint(key),
                        error_type=type(exc).__name__,
                    )
                    continue
                logger.error(
                    "stripe_session_retrieval_failed",
                    session_id=session_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise _provider_error(exc, f"Failed to retrieve session {session_id}") from exc

            logger.info(
                "stripe_session_retrieved",
                session_id=session_id,
                payment_status=payload.get("payment_status"),
            )
            return FetchedSession(payload=payload, api_key=key)

        raise ResourceNotFoundError("Checkout session", session_id)

    async def list_sessions(
        self,
        api_key: str,
        created_from: int | None = None,
        created_to: int | None = None,
        page_size: int = 100,
    ) -> AsyncIterator[Mapping[str, Any]]:
        """Iterate every session of one account, following has_more / starting_after."""
        params: dict[str, Any] = {"limit": page_size}
        created: dict[str, int] = {}
        if created_from:
            created["gte"] = created_from
        if created_to:
            created["lte"] = created_to
        if created:
            params["created"] = created

        starting_after: str | None = None
        while True:
            page_params = dict(params)
            if starting_after:
                page_params["starting_after"] = starting_after
            try:
                page = to_plain(await stripe.checkout.Session.list_async(api_key=api_key, **page_params))
            except stripe.StripeError as exc:
                logger.error(
                    "stripe_session_listing_failed",
                    key=_key_hint(api_key),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise _provider_error(exc, "Failed to list checkout sessions") from exc

            data = page.get("data") or []
            for session in data:
                yield session

            if not page.get("has_more") or not data:
                return
            starting_after = data[-1]["id"]

    # ========================================================================
    # Subscriptions and invoices
    # ========================================================================

    async def fetch_subscription(self, subscription_id: str, api_key: str) -> Mapping[str, Any]:
        try:
            subscription = await stripe.Subscription.retrieve_async(
                subscription_id, api_key=api_key
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_retrieval_failed",
                subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if _is_missing(exc):
                raise ResourceNotFoundError("Subscription", subscription_id) from exc
            raise _provider_error(exc, f"Failed to retrieve subscription {subscription_id}") from exc
        return to_plain(subscription)  # type: ignore[no-any-return]

    async def list_invoices(self, subscription_id: str, api_key: str) -> list[Mapping[str, Any]]:
        """All invoices of a subscription, oldest first."""
        invoices: list[Mapping[str, Any]] = []
        starting_after: str | None = None
        while True:
            params: dict[str, Any] = {"subscription": subscription_id, "limit": 100}
            if starting_after:
                params["starting_after"] = starting_after
            try:
                page = to_plain(await stripe.Invoice.list_async(api_key=api_key, **params))
            except stripe.StripeError as exc:
                logger.error(
                    "stripe_invoice_listing_failed",
                    subscription_id=subscription_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise _provider_error(exc, f"Failed to list invoices of {subscription_id}") from exc

            data = page.get("data") or []
            invoices.extend(data)
            if not page.get("has_more") or not data:
                break
            starting_after = data[-1]["id"]

        invoices.sort(key=lambda invoice: invoice.get("created") or 0)
        return invoices

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def verify_webhook(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        """
        Verify and parse a Stripe webhook notification.

        Each configured secret is tried in order; a payload that cannot be
        parsed stops the search immediately.

        Raises:
            WebhookVerificationError: No secret validates the signature
            MalformedPayloadError: Payload is not valid JSON
        """
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        if not self.webhook_secrets:
            raise WebhookVerificationError("No webhook secrets configured")

        for index, secret in enumerate(self.webhook_secrets):
            try:
                event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                    payload, signature, secret
                )
            except stripe.SignatureVerificationError:
                logger.debug("stripe_webhook_secret_mismatch", secret_index=index)
                continue
            except ValueError as exc:
                logger.error("stripe_webhook_parsing_failed", error=str(exc))
                raise MalformedPayloadError(f"Invalid webhook payload: {exc}") from exc

            plain: dict[str, Any] = to_plain(event)
            logger.info(
                "stripe_webhook_verified",
                event_id=plain.get("id"),
                event_type=plain.get("type"),
                secret_index=index,
            )
            return plain

        logger.error("stripe_webhook_verification_failed", secrets_tried=len(self.webhook_secrets))
        raise WebhookVerificationError("Invalid Stripe webhook signature")
