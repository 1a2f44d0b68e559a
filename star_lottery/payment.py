"""Payment collaborator: entry fees, payouts and Telegram Stars top-ups."""
import json
from typing import Optional

import httpx

from .errors import LotteryError, PaymentFailed
from .ledger import BalanceLedger
from .logging_config import get_logger
from .models import PaymentResult

logger = get_logger(__name__)

STARS_CURRENCY = "XTR"


class StarsPaymentService:
    """Moves stars for the game engine through a BalanceLedger."""

    def __init__(self, ledger: BalanceLedger):
        self.ledger = ledger

    async def get_balance(self, user_id: str) -> int:
        return await self.ledger.get_balance(user_id)

    async def charge(self, user_id: str, amount: int, reference: Optional[str] = None) -> PaymentResult:
        """Collect an entry fee."""
        try:
            tx = await self.ledger.charge(user_id, amount, reference=reference)
        except PaymentFailed as exc:
            logger.info("Charge rejected user_id=%s amount=%s reason=%s", user_id, amount, exc.reason)
            return PaymentResult(success=False, error=exc.reason or exc.detail)
        return PaymentResult(success=True, transaction_id=tx.id)

    async def credit(self, user_id: str, amount: int, reference: Optional[str] = None) -> PaymentResult:
        """Transfer winnings to a winner."""
        try:
            tx = await self.ledger.credit(user_id, amount, reference=reference)
        except LotteryError as exc:
            logger.warning("Payout failed user_id=%s amount=%s error=%s", user_id, amount, exc.detail)
            return PaymentResult(success=False, error=exc.detail)
        return PaymentResult(success=True, transaction_id=tx.id)

    async def refund(self, user_id: str, amount: int, reference: Optional[str] = None) -> PaymentResult:
        """Give back an entry fee whose join could not be recorded."""
        try:
            tx = await self.ledger.refund(user_id, amount, reference=reference)
        except LotteryError as exc:
            logger.warning("Refund failed user_id=%s amount=%s error=%s", user_id, amount, exc.detail)
            return PaymentResult(success=False, error=exc.detail)
        return PaymentResult(success=True, transaction_id=tx.id)

    async def process_successful_payment(self, user_id: str, amount: int, charge_id: str) -> PaymentResult:
        """Credit a confirmed Telegram Stars payment to the participant's balance."""
        if amount <= 0:
            return PaymentResult(success=False, error="invalid amount")
        tx = await self.ledger.deposit(user_id, amount, reference=charge_id)
        logger.info("Deposit processed user_id=%s amount=%s charge_id=%s", user_id, amount, charge_id)
        return PaymentResult(success=True, transaction_id=tx.id)


class TelegramStarsClient:
    """Creates Telegram Stars invoices through the Bot API."""

    def __init__(self, bot_token: str, api_base: str = "https://api.telegram.org", client: Optional[httpx.AsyncClient] = None):
        self.bot_token = bot_token
        self.client = client or httpx.AsyncClient(base_url=f"{api_base}/bot{bot_token}", timeout=10.0)

    async def create_invoice_link(self, user_id: str, amount: int, description: str, payload: str) -> str:
        """Return an invoice URL the mini-app can open with openInvoice()."""
        invoice = {
            "title": "Star Lottery",
            "description": description,
            "payload": json.dumps({"user_id": user_id, "ref": payload}),
            "provider_token": "",  # empty for Telegram Stars
            "currency": STARS_CURRENCY,
            "prices": [{"label": "Stars", "amount": amount}],
        }
        try:
            response = await self.client.post("/createInvoiceLink", json=invoice)
        except httpx.RequestError as exc:
            raise PaymentFailed(f"telegram request error: {exc}") from exc

        data = response.json() if response.content else {}
        if response.status_code != 200 or not data.get("ok"):
            raise PaymentFailed(f"Failed to create invoice: {data.get('description', response.text)}")
        logger.info("Invoice created user_id=%s amount=%s payload=%s", user_id, amount, payload)
        return data["result"]

    async def close(self):
        await self.client.aclose()


def parse_successful_payment(update: dict) -> Optional[dict]:
    """Extract user id, amount and charge id from a Bot API update carrying successful_payment."""
    message = update.get("message") or {}
    payment = message.get("successful_payment")
    if not payment or payment.get("currency") != STARS_CURRENCY:
        return None
    try:
        payload = json.loads(payment.get("invoice_payload") or "{}")
    except ValueError:
        payload = {}
    user_id = payload.get("user_id") or str((message.get("from") or {}).get("id", ""))
    if not user_id:
        return None
    return {
        "user_id": str(user_id),
        "amount": int(payment.get("total_amount", 0)),
        "charge_id": payment.get("telegram_payment_charge_id"),
    }
