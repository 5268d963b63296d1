"""
Payment rails — one gateway per payment method.

Each gateway turns ``transfer(amount, currency, beneficiary, reference)``
into a call on its rail and reports the rail's reference, estimated
completion and fee. Failures are mapped onto the payment taxonomy:

    GatewayUnavailable   timeout, connection error, 5xx, 429   (retryable)
    InvalidBeneficiary   400, 404, 422                         (permanent)
    InsufficientFunds    402                                   (permanent)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from subsidy_engine.domain.schema import PaymentMethod, TransferReceipt, utcnow
from subsidy_engine.errors import (
    GatewayUnavailable,
    InsufficientFunds,
    InvalidBeneficiary,
    SubsidyError,
)

logger = logging.getLogger(__name__)


def mask_account(account: str) -> str:
    """Keep only the last 4 characters of an account reference."""
    if len(account) <= 4:
        return "****"
    return "*" * (len(account) - 4) + account[-4:]


class PaymentGateway(ABC):
    """A single payment rail."""

    method: PaymentMethod

    @abstractmethod
    async def transfer(
        self,
        amount: Decimal,
        currency: str,
        beneficiary: str,
        reference: str,
    ) -> TransferReceipt: ...

    async def aclose(self) -> None:
        """Release connections. Default: nothing to release."""


@dataclass(frozen=True)
class RailProfile:
    """Wire format of one rail's transfer endpoint."""

    path: str
    beneficiary_field: str
    reference_key: str
    fee_key: str
    default_fee: Decimal
    settlement: timedelta
    extra: tuple[tuple[str, str], ...] = ()
    minor_units: bool = False


RAIL_PROFILES: dict[PaymentMethod, RailProfile] = {
    PaymentMethod.BANK_TRANSFER: RailProfile(
        path="/transfers/ach",
        beneficiary_field="recipient_account",
        reference_key="transfer_id",
        fee_key="fees",
        default_fee=Decimal("0.25"),
        settlement=timedelta(days=1),
        extra=(("type", "credit"),),
    ),
    PaymentMethod.CARD: RailProfile(
        path="/transfers",
        beneficiary_field="destination",
        reference_key="id",
        fee_key="fees",
        default_fee=Decimal("0"),
        settlement=timedelta(days=2),
        minor_units=True,
    ),
    PaymentMethod.WIRE: RailProfile(
        path="/transfers/wire",
        beneficiary_field="beneficiary_account",
        reference_key="wire_id",
        fee_key="fees",
        default_fee=Decimal("25"),
        settlement=timedelta(days=2),
        extra=(("type", "outbound"),),
    ),
    PaymentMethod.CRYPTO: RailProfile(
        path="/transfers/crypto",
        beneficiary_field="destination_address",
        reference_key="transaction_hash",
        fee_key="network_fee",
        default_fee=Decimal("0.001"),
        settlement=timedelta(minutes=10),
        extra=(("network", "ethereum"),),
    ),
}


class HttpPaymentGateway(PaymentGateway):
    """
    Async REST client for one payment rail.

    Uses httpx for async HTTP. The client is created lazily and reused
    across transfers.
    """

    def __init__(
        self,
        method: PaymentMethod,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock=utcnow,
    ) -> None:
        self.method = method
        self.profile = RAIL_PROFILES[method]
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.clock = clock
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _payload(
        self, amount: Decimal, currency: str, beneficiary: str, reference: str
    ) -> dict[str, Any]:
        profile = self.profile
        if profile.minor_units:
            payload: dict[str, Any] = {
                "amount": int((amount * 100).to_integral_value()),
                "currency": currency.lower(),
                "description": reference,
            }
        else:
            payload = {
                "amount": str(amount),
                "currency": currency,
                "reference": reference,
            }
        payload[profile.beneficiary_field] = beneficiary
        payload.update(dict(profile.extra))
        return payload

    async def transfer(
        self,
        amount: Decimal,
        currency: str,
        beneficiary: str,
        reference: str,
    ) -> TransferReceipt:
        client = await self._ensure_client()
        payload = self._payload(amount, currency, beneficiary, reference)
        rail = self.method.value

        try:
            resp = await client.post(self.profile.path, json=payload)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(f"{rail} rail timed out") from exc
        except httpx.HTTPError as exc:
            raise GatewayUnavailable(
                f"{rail} rail unreachable: {type(exc).__name__}"
            ) from exc

        self._raise_for_status(resp, beneficiary)

        try:
            data = resp.json()
            gateway_reference = str(data[self.profile.reference_key])
            fee = Decimal(str(data.get(self.profile.fee_key) or self.profile.default_fee))
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise GatewayUnavailable(f"{rail} rail returned a malformed receipt") from exc

        logger.info(
            "Transfer accepted: rail=%s ref=%s amount=%s %s to=%s",
            rail, gateway_reference, amount, currency, mask_account(beneficiary),
        )
        return TransferReceipt(
            reference=gateway_reference,
            estimated_completion=self.clock() + self.profile.settlement,
            fee=fee,
        )

    def _raise_for_status(self, resp: httpx.Response, beneficiary: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        rail = self.method.value
        if status == 402:
            raise InsufficientFunds(f"{rail} rail reported insufficient funds")
        if status in (400, 404, 422):
            raise InvalidBeneficiary(
                f"{rail} rail rejected beneficiary {mask_account(beneficiary)}"
            )
        raise GatewayUnavailable(f"{rail} rail returned HTTP {status}")


class InMemoryPaymentGateway(PaymentGateway):
    """
    Rail that settles instantly in memory.

    ``failures`` is a script consumed one entry per call: an exception to
    raise for that call, or None to succeed. Once exhausted, every call
    succeeds.
    """

    def __init__(
        self,
        method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        failures: list[SubsidyError | None] | None = None,
        fee: Decimal = Decimal("0"),
        clock=utcnow,
    ) -> None:
        self.method = method
        self.failures = list(failures or [])
        self.fee = fee
        self.clock = clock
        self.calls: list[dict[str, Any]] = []
        self.transfers: list[dict[str, Any]] = []

    async def transfer(
        self,
        amount: Decimal,
        currency: str,
        beneficiary: str,
        reference: str,
    ) -> TransferReceipt:
        call = {
            "amount": amount,
            "currency": currency,
            "beneficiary": beneficiary,
            "reference": reference,
        }
        self.calls.append(call)
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error

        self.transfers.append(call)
        return TransferReceipt(
            reference=f"{self.method.value.upper()}-{len(self.transfers):06d}",
            estimated_completion=self.clock() + RAIL_PROFILES[self.method].settlement,
            fee=self.fee,
        )
