# src/bridgefi/adapters/payments/paystack.py
"""
Paystack Payment Gateway

Implements the PaymentGateway interface against the Paystack REST API:
hosted-page charges and verification for the on-ramp, transfer recipients
and transfers for the off-ramp, and HMAC-SHA512 webhook signatures.

Requests are made with ``requests`` in a worker thread so the event loop is
never blocked. Amounts go over the wire in kobo.

Mock mode (MOCK_PAYSTACK_TRANSFERS=true) simulates recipient creation and
transfers without touching the payout API, and keeps the simulated transfers
in memory for inspection. Charges are always real.

Files that USE this module:
- bridgefi.app (constructs the gateway)
- tests.test_paystack (unit tests)

Files that this module USES:
- bridgefi.adapters.payments.base (interface and result types)
- bridgefi.config (credentials, base URL, timeouts, mock flag)
- bridgefi.domain.errors (PaymentGatewayError)
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import requests

from bridgefi.adapters.payments.base import ChargeInit, ChargeVerification, PayoutResult
from bridgefi.config import settings
from bridgefi.domain.errors import PaymentGatewayError

log = logging.getLogger(__name__)

_KOBO = Decimal(100)


def to_kobo(amount: Decimal) -> int:
    return int((amount * _KOBO).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_kobo(amount: Any) -> Decimal:
    return Decimal(str(amount or 0)) / _KOBO


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw request body, as sent in x-paystack-signature."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


class PaystackGateway:
    """Paystack REST client implementing the PaymentGateway interface."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[int] = None,
        mock_payouts: Optional[bool] = None,
        callback_url: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.webhook_secret = webhook_secret or settings.effective_webhook_secret or self.secret_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.mock_payouts = settings.mock_payouts if mock_payouts is None else mock_payouts
        self.callback_url = callback_url if callback_url is not None else settings.paystack_callback_url
        self._mock_transfers: Dict[str, Dict[str, Any]] = {}

        if not self.secret_key:
            log.warning("PAYSTACK_SECRET_KEY not configured - Paystack calls will be rejected")
        if self.mock_payouts:
            log.warning("MOCK MODE: Paystack recipients and transfers are simulated")

    # ------------------------------------------------------------------
    # Charges (on-ramp)
    # ------------------------------------------------------------------
    async def initialize_charge(self, amount: Decimal, email: str, reference: str,
                                metadata: Optional[Dict[str, Any]] = None) -> ChargeInit:
        body: Dict[str, Any] = {
            "amount": to_kobo(amount),
            "email": email,
            "reference": reference,
            "currency": "NGN",
            "metadata": metadata or {},
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url
        data = await self._call("POST", "/transaction/initialize", json_body=body, reference=reference)
        try:
            return ChargeInit(
                reference=data.get("reference", reference),
                authorization_url=data["authorization_url"],
                access_code=data.get("access_code"),
            )
        except (KeyError, TypeError) as e:
            raise PaymentGatewayError(f"Paystack initialize response missing field: {e}", reference) from e

    async def verify_charge(self, reference: str) -> ChargeVerification:
        data = await self._call("GET", f"/transaction/verify/{reference}", reference=reference)
        try:
            return ChargeVerification(
                reference=data.get("reference", reference),
                status=str(data["status"]),
                amount=from_kobo(data.get("amount")),
                currency=data.get("currency", "NGN"),
                paid_at=data.get("paid_at"),
            )
        except (KeyError, TypeError) as e:
            raise PaymentGatewayError(f"Paystack verify response missing field: {e}", reference) from e

    # ------------------------------------------------------------------
    # Payouts (off-ramp) - single-shot, never retried here
    # ------------------------------------------------------------------
    async def create_payout_recipient(self, bank_account: str, bank_code: str, account_name: str) -> str:
        if self.mock_payouts:
            code = f"MOCK_RECIPIENT_{_millis()}_{secrets.token_hex(5)}"
            log.info("MOCK MODE: simulated transfer recipient %s (bank=%s)", code, bank_code)
            return code

        body = {
            "type": "nuban",
            "name": account_name,
            "account_number": bank_account,
            "bank_code": bank_code,
            "currency": "NGN",
        }
        try:
            data = await self._call("POST", "/transferrecipient", json_body=body)
        except PaymentGatewayError as e:
            if "resolve" in e.message.lower():
                raise PaymentGatewayError(
                    f"Cannot resolve account {bank_account} for bank {bank_code}. "
                    "Please verify the account number and bank code are correct.",
                    status_code=e.status_code,
                ) from e
            raise
        code = data.get("recipient_code") if isinstance(data, dict) else None
        if not code:
            raise PaymentGatewayError("Failed to create transfer recipient: invalid response from Paystack")
        return code

    async def initiate_payout(self, recipient_code: str, amount: Decimal, reference: str,
                              reason: str) -> PayoutResult:
        if self.mock_payouts:
            transfer_code = f"MOCK_{_millis()}_{secrets.token_hex(5)}"
            self._mock_transfers[transfer_code] = {
                "transferReference": transfer_code,
                "reference": reference,
                "recipient": recipient_code,
                "ngnAmount": float(amount),
                "reason": reason,
                "status": "pending",
                "createdAt": datetime.now(timezone.utc).isoformat(),
                "isMock": True,
            }
            log.info("MOCK MODE: simulated transfer %s of NGN %s (reference=%s)", transfer_code, amount, reference)
            return PayoutResult(
                transfer_reference=transfer_code,
                status="pending",
                amount=amount,
                recipient_code=recipient_code,
                is_mock=True,
            )

        body = {
            "source": "balance",
            "amount": to_kobo(amount),
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason,
        }
        try:
            data = await self._call("POST", "/transfer", json_body=body, reference=reference)
        except PaymentGatewayError as e:
            msg = e.message.lower()
            if "starter business" in msg or "third party payouts" in msg:
                raise PaymentGatewayError(
                    f"Paystack Account Limitation: {e.message}. The Paystack account must be upgraded "
                    "to use transfers; set MOCK_PAYSTACK_TRANSFERS=true to simulate them.",
                    reference,
                    status_code=e.status_code,
                ) from e
            raise
        if not isinstance(data, dict):
            raise PaymentGatewayError("Failed to initiate transfer: invalid response from Paystack", reference)
        transfer_ref = data.get("reference") or data.get("transfer_code")
        if not transfer_ref:
            raise PaymentGatewayError("Failed to initiate transfer: no transfer reference returned", reference)
        return PayoutResult(
            transfer_reference=transfer_ref,
            status=data.get("status", "pending"),
            amount=amount,
            recipient_code=recipient_code,
            raw=data,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.webhook_secret:
            return False
        expected = compute_signature(raw_body, self.webhook_secret)
        return hmac.compare_digest(expected, signature)

    # ------------------------------------------------------------------
    # Mock transfer registry
    # ------------------------------------------------------------------
    def get_mock_transfer(self, transfer_reference: str) -> Optional[Dict[str, Any]]:
        return self._mock_transfers.get(transfer_reference)

    def list_mock_transfers(self) -> List[Dict[str, Any]]:
        return sorted(self._mock_transfers.values(), key=lambda t: t["createdAt"], reverse=True)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    async def _call(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None,
                    reference: Optional[str] = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, json_body, reference)

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]],
                 reference: Optional[str]) -> Any:
        """
        Perform one Paystack request and unwrap ``data``.

        Raises:
            PaymentGatewayError: transient for timeouts, connection errors and 5xx;
                permanent for 4xx, invalid JSON and ``status: false`` bodies
        """
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}
        try:
            resp = requests.request(method, url, json=json_body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            log.warning("Paystack %s %s timeout after %ss", method, path, self.timeout)
            raise PaymentGatewayError(f"Paystack timeout after {self.timeout}s", reference, transient=True) from e
        except requests.exceptions.RequestException as e:
            log.warning("Paystack %s %s request failed: %s", method, path, e)
            raise PaymentGatewayError(f"Paystack request failed: {e}", reference, transient=True) from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 500:
            log.warning("Paystack %s %s returned %d", method, path, resp.status_code)
            raise PaymentGatewayError(
                f"Paystack returned {resp.status_code} (server error)", reference,
                transient=True, status_code=resp.status_code,
            )

        message = body.get("message") if isinstance(body, dict) else None
        if resp.status_code >= 400:
            log.error("Paystack %s %s error %d: %s", method, path, resp.status_code, message)
            raise PaymentGatewayError(
                message or f"Paystack returned {resp.status_code}", reference, status_code=resp.status_code,
            )
        if not isinstance(body, dict):
            raise PaymentGatewayError("Paystack returned invalid JSON", reference, status_code=resp.status_code)
        if body.get("status") is False:
            raise PaymentGatewayError(message or "Paystack request rejected", reference, status_code=resp.status_code)
        return body.get("data")


def _millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)
