"""HTTP tests: the request -> payment -> review flow and the error contract."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime, timedelta

import pytest

REQUESTS = "/api/v1/requests"
PAYMENTS = "/api/v1/payments"


async def create_request(client, headers, client_id: str = "client-1", **body) -> dict:  # noqa: ANN001, ANN003
    body.setdefault("provider_type", "INDIVIDUAL")
    body.setdefault("provider_id", "pro-1")
    response = await client.post(REQUESTS, json=body, headers=headers.client(client_id))
    assert response.status_code == 201, response.text
    return response.json()


async def advance(client, headers, request_id: str, *steps: str, provider_id: str = "pro-1") -> dict:  # noqa: ANN001
    data = {}
    for step in steps:
        response = await client.post(
            f"{REQUESTS}/{request_id}/{step}", headers=headers.provider(provider_id)
        )
        assert response.status_code == 200, response.text
        data = response.json()
    return data


async def held_payment(client, headers, gateway, request_id: str) -> dict:  # noqa: ANN001
    response = await client.post(
        f"{PAYMENTS}/orders", json={"request_id": request_id, "amount": "1000.00"}
    )
    assert response.status_code == 201, response.text
    payment = response.json()
    signature = gateway.sign(payment["gateway_order_ref"], "pay_api_1")
    response = await client.post(
        f"{PAYMENTS}/{payment['id']}/verify",
        json={"gateway_payment_ref": "pay_api_1", "signature": signature},
    )
    assert response.status_code == 200, response.text
    return response.json()


def assert_error(response, status: int, code: str) -> dict:  # noqa: ANN001
    assert response.status_code == status, response.text
    body = response.json()
    assert set(body) == {"error", "message", "details"}
    assert body["error"] == code
    return body


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_request_to_release(self, client, headers, gateway, dispatcher) -> None:  # noqa: ANN001
        request = await create_request(client, headers, service_type="gst_filing")
        assert request["status"] == "PENDING"

        completed = await advance(client, headers, request["id"], "accept", "start", "complete")
        assert completed["status"] == "COMPLETED"
        assert completed["provider_id"] == "pro-1"

        payment = await held_payment(client, headers, gateway, request["id"])
        assert payment["status"] == "ESCROW_HELD"
        assert payment["platform_fee"] == "100.00"
        assert payment["provider_amount"] == "900.00"
        assert payment["auto_release_at"] is not None

        response = await client.post(
            "/api/v1/reviews",
            json={"request_id": request["id"], "rating": 5, "comment": "Thorough"},
            headers=headers.client(),
        )
        assert response.status_code == 201, response.text
        assert response.json()["release"] == "RELEASED"

        review = (await client.get(f"/api/v1/reviews/{request['id']}")).json()
        assert review["rating"] == 5
        assert review["comment"] == "Thorough"

        detail = (await client.get(f"{PAYMENTS}/{payment['id']}")).json()
        assert detail["payment"]["status"] == "RELEASED"
        assert detail["payment"]["release_trigger"] == "REVIEW"
        assert [(e["beneficiary_id"], e["amount"]) for e in detail["ledger_entries"]] == [
            ("pro-1", "900.00")
        ]
        assert "PaymentReleased" in dispatcher.types()

    @pytest.mark.asyncio
    async def test_status_and_audit_trail(self, client, headers) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")

        status = (await client.get(f"{REQUESTS}/{request['id']}/status")).json()
        assert status["status"] == "ACCEPTED"
        assert status["provider_id"] == "pro-1"
        assert "work_started" in status["allowed_events"]

        events = (await client.get(f"{REQUESTS}/{request['id']}/events")).json()
        assert [e["event_type"] for e in events] == ["RequestCreated", "RequestAccepted"]

    @pytest.mark.asyncio
    async def test_cancel_marks_payment_for_refund(self, client, headers, gateway) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")
        payment = await held_payment(client, headers, gateway, request["id"])

        response = await client.post(
            f"{REQUESTS}/{request['id']}/cancel",
            json={"reason": "changed plans"},
            headers=headers.client(),
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["request"]["status"] == "CANCELLED"
        assert body["refund_pending_payment_id"] == payment["id"]

        response = await client.post(f"{PAYMENTS}/{payment['id']}/refund", headers=headers.admin())
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "REFUNDED"

    @pytest.mark.asyncio
    async def test_dispute_hold_then_resolution(self, client, headers, gateway) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept", "start", "complete")
        payment = await held_payment(client, headers, gateway, request["id"])

        response = await client.post(
            f"{PAYMENTS}/{payment['id']}/dispute-hold",
            json={"reason": "Incomplete filing"},
            headers=headers.admin(),
        )
        assert response.status_code == 200, response.text
        assert response.json()["auto_release_at"] is None

        response = await client.post(
            f"{PAYMENTS}/{payment['id']}/resolve-dispute",
            json={"outcome": "REFUND"},
            headers=headers.client(),
        )
        assert_error(response, 403, "NOT_ELIGIBLE")

        response = await client.post(
            f"{PAYMENTS}/{payment['id']}/resolve-dispute",
            json={"outcome": "REFUND", "note": "Client evidence accepted"},
            headers=headers.admin(),
        )
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "REFUND_PENDING"

        response = await client.post(f"{PAYMENTS}/{payment['id']}/refund", headers=headers.admin())
        assert response.json()["status"] == "REFUNDED"


class TestErrorContract:
    @pytest.mark.asyncio
    async def test_second_accept_conflicts(self, client, headers) -> None:  # noqa: ANN001
        request = await create_request(client, headers, provider_id=None)
        await advance(client, headers, request["id"], "accept", provider_id="pro-1")

        response = await client.post(
            f"{REQUESTS}/{request['id']}/accept", headers=headers.provider("pro-2")
        )
        body = assert_error(response, 409, "ALREADY_ACCEPTED")
        assert body["details"]["bound_provider_id"] == "pro-1"

    @pytest.mark.asyncio
    async def test_pending_limit(self, client, headers) -> None:  # noqa: ANN001
        for _ in range(3):
            await create_request(client, headers, client_id="client-9")

        response = await client.post(
            REQUESTS,
            json={"provider_type": "INDIVIDUAL", "provider_id": "pro-1"},
            headers=headers.client("client-9"),
        )
        assert_error(response, 400, "REQUEST_LIMIT_EXCEEDED")

    @pytest.mark.asyncio
    async def test_unverified_provider_cannot_accept(self, client, headers) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        response = await client.post(
            f"{REQUESTS}/{request['id']}/accept",
            headers=headers.provider("pro-1", verified=False),
        )
        assert_error(response, 403, "NOT_ELIGIBLE")

    @pytest.mark.asyncio
    async def test_wrong_role(self, client, headers) -> None:  # noqa: ANN001
        response = await client.post(
            REQUESTS,
            json={"provider_type": "INDIVIDUAL", "provider_id": "pro-1"},
            headers=headers.provider(),
        )
        assert_error(response, 403, "NOT_ELIGIBLE")

        response = await client.post(
            "/api/v1/admin/auto-release/run", headers=headers.client()
        )
        assert_error(response, 403, "NOT_ELIGIBLE")

    @pytest.mark.asyncio
    async def test_missing_identity_headers(self, client) -> None:  # noqa: ANN001
        response = await client.post(REQUESTS, json={"provider_type": "INDIVIDUAL"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_request(self, client) -> None:  # noqa: ANN001
        response = await client.get(f"{REQUESTS}/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"].endswith("_NOT_FOUND")

        response = await client.get(f"/api/v1/reviews/{uuid.uuid4()}")
        assert_error(response, 404, "REVIEW_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_invalid_transition(self, client, headers) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")
        response = await client.post(
            f"{REQUESTS}/{request['id']}/complete", headers=headers.provider()
        )
        assert_error(response, 409, "INVALID_STATE_TRANSITION")

    @pytest.mark.asyncio
    async def test_bad_checkout_signature(self, client, headers) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")
        payment = (
            await client.post(
                f"{PAYMENTS}/orders", json={"request_id": request["id"], "amount": "500.00"}
            )
        ).json()

        response = await client.post(
            f"{PAYMENTS}/{payment['id']}/verify",
            json={"gateway_payment_ref": "pay_x", "signature": "deadbeef"},
        )
        assert_error(response, 400, "SIGNATURE_INVALID")

        events = (await client.get(f"{REQUESTS}/{request['id']}/events")).json()
        assert "SignatureRejected" in [e["event_type"] for e in events]

    @pytest.mark.asyncio
    async def test_duplicate_order(self, client, headers) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")
        body = {"request_id": request["id"], "amount": "500.00"}

        assert (await client.post(f"{PAYMENTS}/orders", json=body)).status_code == 201
        assert_error(await client.post(f"{PAYMENTS}/orders", json=body), 409, "DUPLICATE_PAYMENT")


    @pytest.mark.asyncio
    async def test_gateway_timeout_is_retryable(self, client, headers, gateway) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")
        body = {"request_id": request["id"], "amount": "500.00"}
        gateway.timeouts = 1

        response = await client.post(f"{PAYMENTS}/orders", json=body)
        error = assert_error(response, 504, "GATEWAY_TIMEOUT")
        assert response.headers["Retry-After"] == "5"

        retried = await client.post(f"{PAYMENTS}/orders", json=body)
        assert retried.status_code == 201, retried.text
        assert retried.json()["id"] == error["details"]["payment_id"]
        assert retried.json()["gateway_order_ref"] is not None


class TestWebhook:
    @pytest.mark.asyncio
    async def test_captured_webhook_holds_escrow(self, client, headers, gateway) -> None:  # noqa: ANN001
        request = await create_request(client, headers)
        await advance(client, headers, request["id"], "accept")
        payment = (
            await client.post(
                f"{PAYMENTS}/orders", json={"request_id": request["id"], "amount": "750.00"}
            )
        ).json()
        body = json.dumps(
            {
                "event": "payment.captured",
                "payload": {
                    "payment": {
                        "entity": {"id": "pay_hook_1", "order_id": payment["gateway_order_ref"]}
                    }
                },
            }
        ).encode()

        response = await client.post(
            f"{PAYMENTS}/webhook",
            content=body,
            headers={"X-Razorpay-Signature": gateway.sign_webhook(body)},
        )
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "applied"

        replay = await client.post(
            f"{PAYMENTS}/webhook",
            content=body,
            headers={"X-Razorpay-Signature": gateway.sign_webhook(body)},
        )
        assert replay.json()["status"] == "duplicate"

        detail = (await client.get(f"{PAYMENTS}/{payment['id']}")).json()
        assert detail["payment"]["status"] == "ESCROW_HELD"
        assert detail["payment"]["gateway_payment_ref"] == "pay_hook_1"

    @pytest.mark.asyncio
    async def test_forged_webhook(self, client) -> None:  # noqa: ANN001
        response = await client.post(
            f"{PAYMENTS}/webhook",
            content=b'{"event":"payment.captured"}',
            headers={"X-Razorpay-Signature": "forged"},
        )
        assert_error(response, 400, "SIGNATURE_INVALID")

    @pytest.mark.asyncio
    async def test_signed_body_that_is_not_an_object(self, client, gateway) -> None:  # noqa: ANN001
        body = b"[]"
        response = await client.post(
            f"{PAYMENTS}/webhook",
            content=body,
            headers={"X-Razorpay-Signature": gateway.sign_webhook(body)},
        )
        assert_error(response, 400, "VALIDATION_ERROR")


class TestSlots:
    @pytest.mark.asyncio
    async def test_book_once(self, client, headers) -> None:  # noqa: ANN001
        day = (datetime.now(UTC) + timedelta(days=30)).date().isoformat()
        response = await client.post(
            "/api/v1/slots",
            json={"date": day, "start_time": "10:00:00", "end_time": "11:00:00"},
            headers=headers.provider(),
        )
        assert response.status_code == 201, response.text
        slot = response.json()
        assert slot["is_booked"] is False

        first = await create_request(client, headers)
        second = await create_request(client, headers)
        await advance(client, headers, first["id"], "accept")
        await advance(client, headers, second["id"], "accept")

        booked = await client.post(
            f"/api/v1/slots/{slot['id']}/book", json={"request_id": first["id"]}
        )
        assert booked.status_code == 200, booked.text
        assert booked.json()["request_id"] == first["id"]

        response = await client.post(
            f"/api/v1/slots/{slot['id']}/book", json={"request_id": second["id"]}
        )
        body = assert_error(response, 409, "SLOT_ALREADY_BOOKED")
        assert body["details"]["booked_request_id"] == first["id"]


class TestOperations:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:  # noqa: ANN001
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["database"] == "healthy"
        assert body["redis"] == "disabled"
        assert body["gateway"] == "simulated"
        assert body["overdue_releases"] == 0

    @pytest.mark.asyncio
    async def test_manual_auto_release_run(self, client, headers) -> None:  # noqa: ANN001
        response = await client.post(
            "/api/v1/admin/auto-release/run", json={"batch_size": 10}, headers=headers.admin()
        )
        assert response.status_code == 200, response.text
        assert response.json() == {"scanned": 0, "released": 0, "already_done": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_request_id_header(self, client) -> None:  # noqa: ANN001
        response = await client.get("/health", headers={"X-Request-ID": "trace-1"})
        assert response.headers["X-Request-ID"] == "trace-1"
