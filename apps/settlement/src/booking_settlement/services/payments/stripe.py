"""Stripe implementation of the settlement payment provider."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

import stripe
from loguru import logger

from booking_settlement.core.settings import get_settings

from .provider import PaymentProviderError, ProviderRefund, ProviderTransfer


class StripePaymentProvider:
    """Thin asynchronous wrapper around the official Stripe SDK."""

    def __init__(self, secret_key: str, *, request_timeout_seconds: int | None = None) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key must be provided")
        self._secret_key = secret_key
        stripe.api_key = secret_key
        if request_timeout_seconds:
            stripe.default_http_client = stripe.RequestsClient(timeout=request_timeout_seconds)

    @classmethod
    def from_settings(cls) -> "StripePaymentProvider":
        """Build the provider using application settings."""

        settings = get_settings()
        return cls(
            settings.stripe_secret_key,
            request_timeout_seconds=settings.stripe_request_timeout_seconds,
        )

    async def _run(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute blocking Stripe SDK calls in a worker thread."""

        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.APIConnectionError as exc:
            logger.warning("Stripe call outcome unknown", operation=operation, error=str(exc))
            raise PaymentProviderError(str(exc), operation=operation, outcome_unknown=True) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe call failed", operation=operation, error=str(exc))
            raise PaymentProviderError(str(exc), operation=operation) from exc

    @staticmethod
    def _to_cents(amount: Decimal) -> int:
        """Normalize decimal currency amounts to Stripe-compatible cents."""

        quantized = amount.quantize(Decimal("0.01"))
        return int((quantized * 100).to_integral_value())

    @staticmethod
    def _from_cents(amount: int) -> Decimal:
        """Convert Stripe integer cents into Decimal amounts."""

        return (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"))

    @staticmethod
    def _timestamp(value: Any) -> datetime:
        return datetime.fromtimestamp(int(value or 0), tz=timezone.utc)

    def _transfer(self, payload: Mapping[str, Any]) -> ProviderTransfer:
        metadata = payload.get("metadata") or {}
        return ProviderTransfer(
            transfer_id=str(payload["id"]),
            destination=str(payload.get("destination") or ""),
            amount=self._from_cents(int(payload.get("amount", 0))),
            currency=str(payload.get("currency", "usd")).upper(),
            status="reversed" if payload.get("reversed") else "paid",
            created_at=self._timestamp(payload.get("created")),
            metadata={str(key): str(value) for key, value in dict(metadata).items()},
        )

    def _refund(self, payload: Mapping[str, Any], payment_ref: str) -> ProviderRefund:
        return ProviderRefund(
            refund_id=str(payload["id"]),
            payment_ref=str(payload.get("payment_intent") or payment_ref),
            amount=self._from_cents(int(payload.get("amount", 0))),
            currency=str(payload.get("currency", "usd")).upper(),
            status=str(payload.get("status") or "pending"),
            failure_reason=payload.get("failure_reason"),
            created_at=self._timestamp(payload.get("created")),
        )

    async def create_transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderTransfer:
        """Move funds from the platform balance to a connected account."""

        transfer = await self._run(
            "create_transfer",
            stripe.Transfer.create,
            amount=self._to_cents(amount),
            currency=currency.lower(),
            destination=destination,
            metadata=dict(metadata or {}),
            idempotency_key=idempotency_key,
        )
        return self._transfer(transfer)

    async def retrieve_transfer(self, transfer_id: str) -> ProviderTransfer:
        if not transfer_id:
            raise ValueError("transfer_id is required")
        transfer = await self._run("retrieve_transfer", stripe.Transfer.retrieve, transfer_id)
        return self._transfer(transfer)

    async def list_transfers(self, *, destination: str, limit: int = 100) -> list[ProviderTransfer]:
        """Return the most recent transfers to ``destination``, newest first."""

        response = await self._run("list_transfers", stripe.Transfer.list, destination=destination, limit=limit)
        return [self._transfer(item) for item in response.get("data", [])]

    async def create_refund(
        self,
        *,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderRefund:
        """Issue a refund against the payment intent ``payment_ref``."""

        refund = await self._run(
            "create_refund",
            stripe.Refund.create,
            payment_intent=payment_ref,
            amount=self._to_cents(amount),
            metadata=dict(metadata or {}),
            idempotency_key=idempotency_key,
        )
        return self._refund(refund, payment_ref)

    async def list_refunds(self, *, payment_ref: str, limit: int = 10) -> list[ProviderRefund]:
        response = await self._run("list_refunds", stripe.Refund.list, payment_intent=payment_ref, limit=limit)
        return [self._refund(item, payment_ref) for item in response.get("data", [])]

    async def retrieve_capture_status(self, payment_ref: str) -> str:
        """Return the payment intent status, ``succeeded`` once funds are captured."""

        if not payment_ref:
            raise ValueError("payment_ref is required")
        intent = await self._run("retrieve_capture_status", stripe.PaymentIntent.retrieve, payment_ref)
        return str(intent.get("status") or "unknown")


__all__ = ["StripePaymentProvider"]
