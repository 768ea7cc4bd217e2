import asyncio
from decimal import Decimal

from aiohttp import web
from aiohttp import test_utils
import pytest

from swapengine.collaborators import (
    DirectBridge,
    FixedRateConversion,
    HttpBridgeClient,
    HttpConversionClient,
    is_transient,
    retry_async,
)
from swapengine.errors import BridgeError, ConversionError, LedgerUnavailable, LockNotFound, RetryBudgetExhausted


class Flaky:
    def __init__(self, failures, error=LedgerUnavailable("down")):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetry:
    def test_transient_errors_are_retried(self):
        fn = Flaky(2)
        assert asyncio.run(retry_async(fn, attempts=3, base_delay=0.001)) == "ok"
        assert fn.calls == 3

    def test_permanent_error_is_not_retried(self):
        fn = Flaky(5, LockNotFound("gone"))
        with pytest.raises(LockNotFound):
            asyncio.run(retry_async(fn, attempts=3, base_delay=0.001))
        assert fn.calls == 1

    def test_budget_exhaustion_keeps_last_error(self):
        fn = Flaky(10)
        with pytest.raises(RetryBudgetExhausted) as excinfo:
            asyncio.run(retry_async(fn, attempts=3, base_delay=0.001))
        assert fn.calls == 3
        assert isinstance(excinfo.value.last_error, LedgerUnavailable)

    def test_transient_flag(self):
        assert is_transient(LedgerUnavailable("x"))
        assert is_transient(ConversionError("x"))
        assert not is_transient(ConversionError("x", transient=False))
        assert not is_transient(ValueError("x"))


def serve(path, handler):
    app = web.Application()
    app.router.add_post(path, handler)
    return test_utils.TestServer(app)


class TestHttpClients:
    def test_conversion_success(self):
        async def handler(request):
            body = await request.json()
            assert body == {"source_asset": "sUSD", "amount": "2.5"}
            return web.json_response({"converted_asset": "dUSD", "converted_amount": "2.4"})

        async def scenario():
            async with serve("/convert", handler) as server:
                client = HttpConversionClient(str(server.make_url("/")))
                result = await client.convert("sUSD", Decimal("2.5"))
            assert result.converted_asset == "dUSD"
            assert result.converted_amount == Decimal("2.4")

        asyncio.run(scenario())

    def test_server_error_is_transient(self):
        async def handler(request):
            return web.Response(status=503, text="busy")

        async def scenario():
            async with serve("/convert", handler) as server:
                client = HttpConversionClient(str(server.make_url("/")))
                with pytest.raises(ConversionError) as excinfo:
                    await client.convert("sUSD", Decimal(1))
            assert is_transient(excinfo.value)

        asyncio.run(scenario())

    def test_rejection_is_permanent(self):
        async def handler(request):
            return web.Response(status=400, text="unsupported asset")

        async def scenario():
            async with serve("/bridge", handler) as server:
                client = HttpBridgeClient(str(server.make_url("/")))
                with pytest.raises(BridgeError) as excinfo:
                    await client.bridge("dUSD", Decimal(1), "dst", "alice")
            assert not is_transient(excinfo.value)
            assert "unsupported asset" in str(excinfo.value)

        asyncio.run(scenario())

    def test_bridge_success(self):
        async def handler(request):
            body = await request.json()
            return web.json_response({"receipt_id": "r-1", "amount": body["amount"]})

        async def scenario():
            async with serve("/bridge", handler) as server:
                client = HttpBridgeClient(str(server.make_url("/")))
                receipt = await client.bridge("dUSD", Decimal("3"), "dst", "alice")
            assert receipt.receipt_id == "r-1"
            assert receipt.asset == "dUSD"
            assert receipt.amount == Decimal("3")
            assert receipt.destination_identity == "alice"

        asyncio.run(scenario())

    def test_unreachable_service_is_transient(self):
        async def scenario():
            client = HttpConversionClient("http://127.0.0.1:9", timeout=2.0)
            with pytest.raises(ConversionError) as excinfo:
                await client.convert("sUSD", Decimal(1))
            assert is_transient(excinfo.value)

        asyncio.run(scenario())


def test_local_collaborators():
    async def scenario():
        conversion = await FixedRateConversion("dUSD", Decimal("0.5")).convert("sUSD", Decimal(4))
        assert conversion.converted_amount == Decimal(2)
        receipt = await DirectBridge().bridge("dUSD", Decimal(2), "dst", "alice")
        assert receipt.receipt_id == "direct:dst:dUSD"

    asyncio.run(scenario())
