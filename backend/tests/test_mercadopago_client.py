"""Mercado Pago client against an httpx.MockTransport."""
import json
from decimal import Decimal

import httpx
import pytest

from models import PaymentMethodType, PlanDefinition, SubscriberRole
from services.billing_errors import GatewayRejectedError, GatewayUnavailableError
from services.mercadopago_client import MercadoPagoClient

PLAN = PlanDefinition(
    code="PLAN_SALES_EXECUTIVE",
    role=SubscriberRole.SALES_EXECUTIVE,
    name="Plano Executivo",
    monthly_amount=Decimal("15.00"),
    trial_period_days=7,
)


def _client(handler, access_token="TEST-1234-abcd"):
    return MercadoPagoClient(
        access_token=access_token,
        base_url="https://api.mercadopago.test",
        back_url="https://app.wisesales.com.br/assinatura",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_create_plan_payload_and_headers():
    captured = {}

    def handler(request):
        captured["request"] = request
        return httpx.Response(201, json={"id": "2c9380848f2a1b3c018f2a7e1d2b0001"})

    client = _client(handler)
    remote_id = await client.create_plan(PLAN, idempotency_key="plan-PLAN_SALES_EXECUTIVE-15.00")
    await client.aclose()

    request = captured["request"]
    body = json.loads(request.content)
    assert remote_id == "2c9380848f2a1b3c018f2a7e1d2b0001"
    assert request.method == "POST"
    assert request.url.path == "/preapproval_plan"
    assert request.headers["Authorization"] == "Bearer TEST-1234-abcd"
    assert request.headers["X-Idempotency-Key"] == "plan-PLAN_SALES_EXECUTIVE-15.00"
    assert body["reason"] == "Plano Executivo"
    assert body["auto_recurring"] == {
        "frequency": 1,
        "frequency_type": "months",
        "transaction_amount": 15.0,
        "currency_id": "BRL",
    }
    assert body["back_url"] == "https://app.wisesales.com.br/assinatura"


@pytest.mark.asyncio
async def test_register_card_method():
    def handler(request):
        assert request.url.path == "/v1/customers/cards"
        assert json.loads(request.content) == {"token": "tok_4f2a", "email": "ana@wisesales.com.br"}
        return httpx.Response(200, json={"id": 9001, "payment_method": {"name": "visa"}})

    client = _client(handler)
    method = await client.register_card_method("tok_4f2a", "ana@wisesales.com.br")

    assert method.id == "9001"
    assert method.name == "visa"
    assert method.type == PaymentMethodType.CREDIT_CARD


@pytest.mark.asyncio
async def test_create_subscription_parses_gateway_response():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/preapproval"
        assert body["preapproval_plan_id"] == "plan-1"
        assert body["payment_method_id"] == "card_9f3b"
        return httpx.Response(201, json={
            "id": "2c93808490a1",
            "status": "authorized",
            "payer_email": "ana@wisesales.com.br",
            "preapproval_plan_id": "plan-1",
            "auto_recurring": {"next_payment_date": "2024-03-02T00:00:00.000-03:00"},
        })

    client = _client(handler)
    subscription = await client.create_subscription("plan-1", "ana@wisesales.com.br", "card_9f3b")

    assert subscription.subscription_id == "2c93808490a1"
    assert subscription.status == "authorized"
    assert subscription.plan_id == "plan-1"
    assert subscription.next_payment_date == "2024-03-02T00:00:00.000-03:00"


@pytest.mark.asyncio
async def test_get_subscription_status():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/preapproval/2c93808490a1"
        return httpx.Response(200, json={"id": "2c93808490a1", "status": "paused", "last_modified": "2024-03-05T10:00:00Z"})

    subscription = await _client(handler).get_subscription_status("2c93808490a1")

    assert subscription.status == "paused"
    assert subscription.last_modified == "2024-03-05T10:00:00Z"


@pytest.mark.asyncio
async def test_client_error_is_rejected_with_gateway_message():
    def handler(request):
        return httpx.Response(400, json={"message": "Invalid card_token_id", "status": 400})

    with pytest.raises(GatewayRejectedError) as exc:
        await _client(handler).register_card_method("bad", "ana@wisesales.com.br")

    assert exc.value.status_code == 422
    assert exc.value.retryable is False
    assert exc.value.gateway_status == 400
    assert exc.value.detail == "Invalid card_token_id"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [500, 502, 429])
async def test_server_errors_are_retryable(status_code):
    def handler(request):
        return httpx.Response(status_code, text="upstream error")

    with pytest.raises(GatewayUnavailableError) as exc:
        await _client(handler).get_subscription_status("2c93808490a1")
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayUnavailableError):
        await _client(handler).create_plan(PLAN)


@pytest.mark.asyncio
async def test_response_without_status_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"id": "2c93808490a1"})

    with pytest.raises(GatewayRejectedError):
        await _client(handler).get_subscription_status("2c93808490a1")


@pytest.mark.asyncio
async def test_missing_access_token_never_calls_gateway():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(GatewayUnavailableError):
        await _client(handler, access_token="").create_plan(PLAN)
    assert calls == []
