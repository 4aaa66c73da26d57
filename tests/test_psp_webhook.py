import json

import pytest
from sqlalchemy import func, select

from app.models import Payment, PaymentStatus, PSPWebhookEvent, Refund, RefundReason, RefundStatus

VALID_SIGNATURE = "t=1,v1=valid"


def _event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


async def _post(client, body: bytes, signature: str | None = VALID_SIGNATURE):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post("/stripe/webhook", content=body, headers=headers)


@pytest.mark.anyio
async def test_missing_signature_rejected(client):
    response = await _post(client, _event("evt_1", "ping", {}), signature=None)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "STRIPE_SIGNATURE_MISSING"


@pytest.mark.anyio
async def test_bad_signature_rejected(client, db_session):
    response = await _post(client, _event("evt_1", "ping", {}), signature="t=1,v1=forged")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "STRIPE_SIGNATURE_INVALID"
    assert db_session.scalar(select(func.count(PSPWebhookEvent.id))) == 0


@pytest.mark.anyio
async def test_completed_session_confirms_payment_once(client, db_session, processor, booking_client):
    started = await client.post(
        "/stripe/checkout/booking",
        json={
            "name": "Nimal",
            "email": "nimal@example.com",
            "amount": "90",
            "packageType": "Day Pass",
            "bookingData": {"date": "2026-12-01"},
        },
    )
    assert started.status_code == 201
    payment = db_session.scalars(select(Payment)).one()
    session = processor.pay(payment.processor_session_id, payment_intent_id="pi_hook")
    body = _event("evt_done", "checkout.session.completed", {"id": session.id, "metadata": session.metadata})

    first = await _post(client, body)
    replay = await _post(client, body)

    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert replay.status_code == 200
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID
    assert payment.transaction_id == "pi_hook"
    assert booking_client.bookings == [{"date": "2026-12-01"}]
    assert db_session.scalar(select(func.count(PSPWebhookEvent.id))) == 1


@pytest.mark.anyio
async def test_expired_session_fails_pending_payment(client, db_session, make_payment):
    payment = make_payment(status=PaymentStatus.PENDING)

    response = await _post(
        client,
        _event("evt_exp", "checkout.session.expired", {"id": "cs_old", "metadata": {"payment_id": str(payment.id)}}),
    )

    assert response.status_code == 200
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.anyio
async def test_expired_session_leaves_paid_payment(client, db_session, make_payment):
    payment = make_payment(status=PaymentStatus.PAID)

    await _post(
        client,
        _event("evt_exp2", "checkout.session.expired", {"id": "cs_x", "metadata": {"payment_id": str(payment.id)}}),
    )

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID


@pytest.mark.anyio
async def test_refund_update_settles_refund(client, db_session, make_payment):
    payment = make_payment(amount="20.00")
    refund = Refund(
        payment_id=payment.id,
        user_email=payment.email,
        amount=payment.amount,
        reason=RefundReason.DUPLICATE_CHARGE,
        status=RefundStatus.APPROVED,
        processor_refund_id="re_hook",
    )
    db_session.add(refund)
    db_session.commit()

    response = await _post(
        client,
        _event("evt_ref", "refund.updated", {"id": "re_hook", "status": "succeeded", "amount": 2000}),
    )

    assert response.status_code == 200
    db_session.refresh(refund)
    db_session.refresh(payment)
    assert refund.status == RefundStatus.REFUNDED
    assert payment.status == PaymentStatus.REFUNDED


@pytest.mark.anyio
async def test_refund_update_ignored_for_denied_refund(client, db_session, make_payment):
    payment = make_payment()
    refund = Refund(
        payment_id=payment.id,
        user_email=payment.email,
        amount=payment.amount,
        reason=RefundReason.OTHER,
        status=RefundStatus.DENIED,
    )
    db_session.add(refund)
    db_session.commit()

    await _post(
        client,
        _event(
            "evt_ref2",
            "charge.refund.updated",
            {"id": "re_other", "status": "succeeded", "metadata": {"refund_id": str(refund.id)}},
        ),
    )

    db_session.refresh(refund)
    assert refund.status == RefundStatus.DENIED


@pytest.mark.anyio
async def test_unhandled_event_is_acknowledged(client, db_session):
    response = await _post(client, _event("evt_misc", "customer.created", {"id": "cus_1"}))
    assert response.status_code == 200
    stored = db_session.scalars(select(PSPWebhookEvent)).one()
    assert stored.kind == "customer.created"
    assert stored.object_id == "cus_1"
