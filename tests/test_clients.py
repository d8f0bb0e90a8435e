"""Tests for the payment and storage REST clients."""

import json

import httpx
import pytest

from marketplace_service.clients import PaymentClient, StorageClient

LINE_ITEMS = [{"name": "Sourdough", "unitAmount": 1250, "quantity": 2, "currency": "pln"}]


class TestPaymentClient:
    def test_creates_session(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"url": "https://pay.test/cs_1", "sessionId": "cs_1"})

        client = PaymentClient(base_url="https://fn.test", api_key="k", transport=httpx.MockTransport(handler))
        url = client.create_checkout_session(
            LINE_ITEMS, "https://shop.test/ok", "https://shop.test/cart", {"order_id": "o-1"}, "checkout-o-1"
        )

        assert url == "https://pay.test/cs_1"
        request = seen[0]
        assert request.url.path == "/create-payment"
        assert request.headers["idempotency-key"] == "checkout-o-1"
        body = json.loads(request.content)
        assert body["lineItems"] == LINE_ITEMS
        assert body["metadata"] == {"order_id": "o-1"}
        assert body["successUrl"] == "https://shop.test/ok"

    def test_error_status_propagates(self):
        client = PaymentClient(
            base_url="https://fn.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"errorCode": "x"})),
        )
        with pytest.raises(httpx.HTTPStatusError):
            client.create_checkout_session(LINE_ITEMS, "s", "c", {"order_id": "o-1"}, "checkout-o-1")

    def test_timeout_propagates(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = PaymentClient(base_url="https://fn.test", transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.ReadTimeout):
            client.create_checkout_session(LINE_ITEMS, "s", "c", {"order_id": "o-1"}, "checkout-o-1")


class TestStorageClient:
    def test_upload_returns_public_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"Key": "product-images/x"})

        client = StorageClient(base_url="https://db.test/", api_key="k", bucket="product-images",
                               transport=httpx.MockTransport(handler))
        url = client.upload("producer-1", "Photo.JPG", b"\xff\xd8", "image/jpeg")

        request = seen[0]
        assert request.url.path.startswith("/storage/v1/object/product-images/producer-1/")
        assert request.url.path.endswith(".jpg")
        assert request.headers["content-type"] == "image/jpeg"
        assert request.content == b"\xff\xd8"
        assert url.startswith("https://db.test/storage/v1/object/public/product-images/producer-1/")

    def test_upload_failure_propagates(self):
        client = StorageClient(base_url="https://db.test",
                               transport=httpx.MockTransport(lambda request: httpx.Response(413)))
        with pytest.raises(httpx.HTTPStatusError):
            client.upload("producer-1", "big.png", b"0" * 10, "image/png")
