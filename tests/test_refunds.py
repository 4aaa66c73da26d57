from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models import PaymentStatus, Refund, RefundReason, RefundStatus
from app.models.audit import AuditLog
from app.services.psp_stripe import ProcessorError, ProcessorRefund


def refund_payload(payment_id: int, **overrides) -> dict:
    return {"payment_id": payment_id, "reason": "SERVICE_ISSUE", **overrides}


@pytest.mark.anyio
async def test_owner_requests_full_refund_by_default(client, user_headers, make_payment):
    payment = make_payment(amount="120.00")

    response = await client.post(
        "/refunds",
        json={"paymentId": payment.id, "reason": "Accidental payment", "note": "  wrong card  "},
        headers=user_headers,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "REQUESTED"
    assert body["amount"] == "120.00"
    assert body["reason"] == "ACCIDENTAL_PAYMENT"
    assert body["note"] == "wrong card"
    assert body["policy_window_days"] == 30
    assert body["user_email"] == "guest@example.com"
    assert body["processor_refund_id"] is None


@pytest.mark.anyio
async def test_unknown_payment_is_404(client, user_headers):
    response = await client.post("/refunds", json=refund_payload(999_999), headers=user_headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "PAYMENT_NOT_FOUND"


@pytest.mark.anyio
async def test_non_owner_is_forbidden(client, headers_for, make_payment):
    payment = make_payment(email="owner@example.com")

    response = await client.post(
        "/refunds", json=refund_payload(payment.id), headers=headers_for("someone@example.com")
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "NOT_PAYMENT_OWNER"


@pytest.mark.anyio
async def test_admin_may_request_for_any_payment(client, admin_headers, make_payment):
    payment = make_payment(email="owner@example.com")
    response = await client.post("/refunds", json=refund_payload(payment.id), headers=admin_headers)
    assert response.status_code == 201


@pytest.mark.anyio
@pytest.mark.parametrize("status", [PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.REFUNDED])
async def test_only_paid_payments_are_refundable(client, user_headers, make_payment, status):
    payment = make_payment(status=status)

    response = await client.post("/refunds", json=refund_payload(payment.id), headers=user_headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PAYMENT_NOT_REFUNDABLE"


@pytest.mark.anyio
async def test_window_expired(client, user_headers, make_payment):
    payment = make_payment(days_ago=31)

    response = await client.post("/refunds", json=refund_payload(payment.id), headers=user_headers)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "REFUND_WINDOW_EXPIRED"
    assert error["details"]["policy_window_days"] == 30


@pytest.mark.anyio
async def test_window_is_checked_before_amount(client, user_headers, make_payment):
    payment = make_payment(days_ago=45, amount="50.00")

    response = await client.post(
        "/refunds", json=refund_payload(payment.id, amount="500"), headers=user_headers
    )

    assert response.json()["error"]["code"] == "REFUND_WINDOW_EXPIRED"


@pytest.mark.anyio
async def test_duplicate_open_request_conflicts(client, user_headers, make_payment):
    payment = make_payment()

    first = await client.post("/refunds", json=refund_payload(payment.id), headers=user_headers)
    second = await client.post("/refunds", json=refund_payload(payment.id), headers=user_headers)

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "REFUND_ALREADY_OPEN"


@pytest.mark.anyio
@pytest.mark.parametrize("amount", ["0", "-5", "100.01"])
async def test_invalid_amount(client, user_headers, make_payment, amount):
    payment = make_payment(amount="100.00")

    response = await client.post(
        "/refunds", json=refund_payload(payment.id, amount=amount), headers=user_headers
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REFUND_AMOUNT"


def test_storage_allows_one_open_refund_per_payment(db_session, make_payment):
    payment = make_payment()
    for _ in range(2):
        db_session.add(
            Refund(
                payment_id=payment.id,
                user_email=payment.email,
                amount=Decimal("10.00"),
                reason=RefundReason.OTHER,
                status=RefundStatus.REQUESTED,
            )
        )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_closed_refunds_do_not_block_storage(db_session, make_payment):
    payment = make_payment()
    db_session.add_all(
        [
            Refund(
                payment_id=payment.id,
                user_email=payment.email,
                amount=Decimal("10.00"),
                reason=RefundReason.OTHER,
                status=status,
            )
            for status in (RefundStatus.DENIED, RefundStatus.FAILED, RefundStatus.REQUESTED)
        ]
    )
    db_session.commit()


async def _open_refund(client, headers, payment, **overrides) -> int:
    response = await client.post("/refunds", json=refund_payload(payment.id, **overrides), headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


@pytest.mark.anyio
async def test_approve_full_refund(client, db_session, user_headers, admin_headers, processor, make_payment):
    payment = make_payment(amount="100.00", transaction_id="pi_full")
    refund_id = await _open_refund(client, user_headers, payment)

    response = await client.patch(f"/refunds/{refund_id}", json={"action": "approve"}, headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "REFUNDED"
    assert body["processor_refund_id"] == "re_test_1"
    assert body["decision_by"] == "admin@sathvilla.com"
    assert body["decision_at"] is not None

    call = processor.refund_calls[0]
    assert call["payment_intent_id"] == "pi_full"
    assert call["amount"] == Decimal("100.00")
    assert call["idempotency_key"] == f"refund_{refund_id}_100.00"
    assert call["metadata"]["refund_id"] == str(refund_id)

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.REFUNDED
    actions = set(db_session.scalars(select(AuditLog.action)).all())
    assert {"REFUND_REQUESTED", "REFUND_PROCESSING", "REFUND_SUCCEEDED", "PAYMENT_REFUNDED"} <= actions


@pytest.mark.anyio
async def test_pending_partial_refund_is_approved(
    client, db_session, user_headers, admin_headers, processor, make_payment
):
    payment = make_payment(amount="100.00")
    refund_id = await _open_refund(client, user_headers, payment, amount="40")
    processor.refund_status = "pending"

    response = await client.patch(f"/refunds/{refund_id}", json={"action": "approve"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "APPROVED"
    assert response.json()["amount"] == "40.00"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID


@pytest.mark.anyio
async def test_processor_failure_marks_refund_failed(
    client, db_session, user_headers, admin_headers, processor, make_payment
):
    payment = make_payment(amount="100.00")
    refund_id = await _open_refund(client, user_headers, payment)
    processor.refund_error = ProcessorError("Stripe refund.create failed: timeout", transient=True)

    response = await client.patch(f"/refunds/{refund_id}", json={"action": "approve"}, headers=admin_headers)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "REFUND_PROCESSOR_FAILED"
    refund = db_session.get(Refund, refund_id)
    db_session.refresh(refund)
    assert refund.status == RefundStatus.FAILED
    assert "timeout" in refund.failure_reason
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID

    processor.refund_error = None
    retry = await client.post("/refunds", json=refund_payload(payment.id), headers=user_headers)
    assert retry.status_code == 201


@pytest.mark.anyio
async def test_deny(client, db_session, user_headers, admin_headers, processor, make_payment):
    payment = make_payment()
    refund_id = await _open_refund(client, user_headers, payment)

    response = await client.patch(f"/refunds/{refund_id}", json={"action": "deny"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "DENIED"
    assert response.json()["decision_by"] == "admin@sathvilla.com"
    assert processor.refund_calls == []

    again = await client.patch(f"/refunds/{refund_id}", json={"action": "approve"}, headers=admin_headers)
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "REFUND_INVALID_STATE"


@pytest.mark.anyio
async def test_approve_with_larger_amount_rejected(client, user_headers, admin_headers, make_payment):
    payment = make_payment(amount="30.00")
    refund_id = await _open_refund(client, user_headers, payment)

    response = await client.patch(
        f"/refunds/{refund_id}", json={"action": "approve", "amount": "31"}, headers=admin_headers
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REFUND_AMOUNT"


@pytest.mark.anyio
async def test_users_cannot_decide(client, user_headers, make_payment):
    payment = make_payment()
    refund_id = await _open_refund(client, user_headers, payment)

    response = await client.patch(f"/refunds/{refund_id}", json={"action": "approve"}, headers=user_headers)

    assert response.status_code == 403


@pytest.mark.anyio
async def test_unknown_refund_is_404(client, admin_headers):
    response = await client.patch("/refunds/424242", json={"action": "deny"}, headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "REFUND_NOT_FOUND"


def _stuck_refund(
    db_session, payment, status=RefundStatus.PROCESSING, processor_refund_id=None, amount=None
) -> Refund:
    refund = Refund(
        payment_id=payment.id,
        user_email=payment.email,
        amount=Decimal(amount) if amount is not None else payment.amount,
        reason=RefundReason.SERVICE_ISSUE,
        status=status,
        processor_refund_id=processor_refund_id,
    )
    db_session.add(refund)
    db_session.commit()
    db_session.refresh(refund)
    return refund


@pytest.mark.anyio
async def test_reconcile_finds_refund_by_metadata(client, db_session, admin_headers, processor, make_payment):
    payment = make_payment(amount="75.00", transaction_id="pi_recon")
    refund = _stuck_refund(db_session, payment)
    processor.add_refund(
        "pi_recon",
        ProcessorRefund(id="re_found", status="succeeded", metadata={"refund_id": str(refund.id)}),
    )

    response = await client.post(f"/refunds/{refund.id}/reconcile", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "REFUNDED"
    assert response.json()["processor_refund_id"] == "re_found"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.REFUNDED
    assert processor.refund_calls == []


@pytest.mark.anyio
async def test_reconcile_without_processor_refund_fails_the_request(
    client, db_session, admin_headers, processor, make_payment
):
    payment = make_payment()
    refund = _stuck_refund(db_session, payment)

    response = await client.post(f"/refunds/{refund.id}/reconcile", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "FAILED"
    assert processor.refund_calls == []


@pytest.mark.anyio
async def test_reconcile_reverts_payment_when_refund_failed_later(
    client, db_session, admin_headers, processor, make_payment
):
    payment = make_payment(amount="60.00", status=PaymentStatus.REFUNDED, transaction_id="pi_late_fail")
    refund = _stuck_refund(db_session, payment, status=RefundStatus.APPROVED, processor_refund_id="re_late")
    processor.add_refund("pi_late_fail", ProcessorRefund(id="re_late", status="failed"))

    response = await client.post(f"/refunds/{refund.id}/reconcile", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "FAILED"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID


@pytest.mark.anyio
async def test_reconcile_requires_in_flight_refund(client, user_headers, admin_headers, make_payment):
    payment = make_payment()
    refund_id = await _open_refund(client, user_headers, payment)

    response = await client.post(f"/refunds/{refund_id}/reconcile", headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "REFUND_INVALID_STATE"


@pytest.mark.anyio
async def test_listing(client, headers_for, admin_headers, make_payment):
    mine = make_payment(email="mine@example.com")
    theirs = make_payment(email="theirs@example.com")
    my_headers = headers_for("mine@example.com")
    await _open_refund(client, my_headers, mine)
    await _open_refund(client, headers_for("theirs@example.com"), theirs)

    own = await client.get("/refunds/mine", headers=my_headers)
    assert own.status_code == 200
    assert [row["payment_id"] for row in own.json()] == [mine.id]

    everything = await client.get("/refunds", params={"status": "REQUESTED"}, headers=admin_headers)
    assert everything.status_code == 200
    assert {row["payment_id"] for row in everything.json()} == {mine.id, theirs.id}

    none_denied = await client.get("/refunds", params={"status": "DENIED"}, headers=admin_headers)
    assert none_denied.json() == []

    forbidden = await client.get("/refunds", headers=my_headers)
    assert forbidden.status_code == 403


@pytest.mark.anyio
async def test_partial_refunds_are_capped_by_remaining_amount(
    client, db_session, user_headers, admin_headers, processor, make_payment
):
    payment = make_payment(amount="100.00")
    first_id = await _open_refund(client, user_headers, payment, amount="60")
    approved = await client.patch(f"/refunds/{first_id}", json={"action": "approve"}, headers=admin_headers)
    assert approved.json()["status"] == "REFUNDED"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID

    too_much = await client.post("/refunds", json=refund_payload(payment.id, amount="60"), headers=user_headers)
    assert too_much.status_code == 400
    error = too_much.json()["error"]
    assert error["code"] == "INVALID_REFUND_AMOUNT"
    assert error["details"]["refundable_amount"] == "40.00"

    rest = await client.post("/refunds", json=refund_payload(payment.id), headers=user_headers)
    assert rest.status_code == 201
    assert rest.json()["amount"] == "40.00"

    settled = await client.patch(f"/refunds/{rest.json()['id']}", json={"action": "approve"}, headers=admin_headers)
    assert settled.json()["status"] == "REFUNDED"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.REFUNDED
    assert [call["amount"] for call in processor.refund_calls] == [Decimal("60.00"), Decimal("40.00")]


@pytest.mark.anyio
async def test_approval_amount_checked_against_earlier_refunds(
    client, db_session, user_headers, admin_headers, processor, make_payment
):
    payment = make_payment(amount="100.00")
    _stuck_refund(db_session, payment, status=RefundStatus.REFUNDED, processor_refund_id="re_earlier", amount="70.00")
    refund_id = await _open_refund(client, user_headers, payment, amount="20")

    response = await client.patch(
        f"/refunds/{refund_id}", json={"action": "approve", "amount": "40"}, headers=admin_headers
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REFUND_AMOUNT"
    assert processor.refund_calls == []
