"""
Conversion and bridging collaborators.

The orchestrator only sees the two protocols below. The HTTP clients talk to
a quote/conversion service and a bridge service over JSON; a 5xx answer or a
dropped connection is transient, anything the service rejects outright is not.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

import aiohttp

from .errors import BridgeError, ConversionError, RetryBudgetExhausted

T = TypeVar("T")

log = logging.getLogger("Collaborators")


@dataclass(frozen=True)
class Conversion:
    converted_asset: str
    converted_amount: Decimal


@dataclass(frozen=True)
class BridgeReceipt:
    receipt_id: str
    asset: str
    amount: Decimal
    destination_ledger: str
    destination_identity: str


class ConversionService(Protocol):
    async def convert(self, source_asset: str, amount: Decimal) -> Conversion: ...


class BridgeService(Protocol):
    async def bridge(
        self, asset: str, amount: Decimal, destination_ledger: str, destination_identity: str
    ) -> BridgeReceipt: ...


def is_transient(error: BaseException) -> bool:
    return bool(getattr(error, "transient", False))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    what: str = "call",
) -> T:
    """Call fn until it succeeds, retrying transient errors with capped exponential backoff.

    Permanent errors propagate immediately. When the budget runs out the last
    transient error is wrapped in RetryBudgetExhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    last: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if not is_transient(e):
                raise
            last = e
            if attempt + 1 == attempts:
                break
            delay = min(max_delay, base_delay * (2 ** attempt))
            log.warning(f"{what} failed ({e}), attempt {attempt + 1}/{attempts}, retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
    raise RetryBudgetExhausted(f"{what} failed after {attempts} attempts: {last}", last)


class _JsonClient:
    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _post(self, path: str, payload: dict, error: type) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=payload) as response:
                    if response.status >= 500:
                        raise error(f"{url} returned {response.status}: {await response.text()}")
                    if response.status != 200:
                        raise error(f"{url} rejected request ({response.status}): {await response.text()}", transient=False)
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise error(f"{url} unreachable: {e}") from e


class HttpConversionClient(_JsonClient):
    """POST {base_url}/convert {"source_asset", "amount"} -> {"converted_asset", "converted_amount"}"""

    async def convert(self, source_asset: str, amount: Decimal) -> Conversion:
        body = await self._post("/convert", {"source_asset": source_asset, "amount": str(amount)}, ConversionError)
        try:
            return Conversion(converted_asset=body["converted_asset"], converted_amount=Decimal(str(body["converted_amount"])))
        except (KeyError, ArithmeticError) as e:
            raise ConversionError(f"malformed conversion response: {body}", transient=False) from e


class HttpBridgeClient(_JsonClient):
    async def bridge(
        self, asset: str, amount: Decimal, destination_ledger: str, destination_identity: str
    ) -> BridgeReceipt:
        body = await self._post(
            "/bridge",
            {
                "asset": asset,
                "amount": str(amount),
                "destination_ledger": destination_ledger,
                "destination_identity": destination_identity,
            },
            BridgeError,
        )
        try:
            return BridgeReceipt(
                receipt_id=body["receipt_id"],
                asset=body.get("asset", asset),
                amount=Decimal(str(body.get("amount", amount))),
                destination_ledger=destination_ledger,
                destination_identity=destination_identity,
            )
        except (KeyError, ArithmeticError) as e:
            raise BridgeError(f"malformed bridge response: {body}", transient=False) from e


class FixedRateConversion:
    """Converts at a constant rate. Used for LEDGER_KIND=memory deployments and tests."""

    def __init__(self, converted_asset: str, rate: Decimal = Decimal(1)):
        self.converted_asset = converted_asset
        self.rate = Decimal(rate)

    async def convert(self, source_asset: str, amount: Decimal) -> Conversion:
        return Conversion(self.converted_asset, Decimal(amount) * self.rate)


class DirectBridge:
    """No-op bridge for assets the resolver already holds on the destination ledger."""

    async def bridge(
        self, asset: str, amount: Decimal, destination_ledger: str, destination_identity: str
    ) -> BridgeReceipt:
        return BridgeReceipt(
            receipt_id=f"direct:{destination_ledger}:{asset}",
            asset=asset,
            amount=Decimal(amount),
            destination_ledger=destination_ledger,
            destination_identity=destination_identity,
        )
