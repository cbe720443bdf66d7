"""Integration tests for the payment reconciler."""

import json

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.channels.envelope import NotificationEnvelope
from app.database import build_engine, build_session_factory, create_tables
from app.engine import reconciler
from app.engine.errors import ConflictError, NotFoundError, StatusQueryError, SubmissionError, ValidationError
from app.gateway.mock_gateway import MockGateway
from app.models.enums import TransitionOutcome
from app.models.payment import AuditLog, Payment
from app.store import payments as store


def _ipn(tracking_id, status, **extra):
    return NotificationEnvelope.from_payload(
        {"order_tracking_id": tracking_id, "payment_status": status, **extra}
    )


async def _reload(session, merchant_reference) -> Payment:
    return await store.find_by_reference(session, merchant_reference)


async def _payment_count(session) -> int:
    return (await session.execute(select(func.count()).select_from(Payment))).scalar_one()


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_creates_pending_record_with_tracking_id(self, db_session, created_payment, gateway):
        payment = await _reload(db_session, created_payment.merchant_reference)

        assert payment.status == "pending"
        assert payment.tracking_id == created_payment.tracking_id
        assert payment.amount == 1000
        assert payment.currency == "KES"
        assert payment.notification_received is False
        assert created_payment.redirect_url.endswith(created_payment.tracking_id)
        assert payment.callback_url == "https://api.shop.test/api/payments/callback"
        assert payment.cancellation_url == "https://api.shop.test/api/payments/cancel"

    @pytest.mark.asyncio
    async def test_order_carries_split_billing_name(self, created_payment, gateway):
        order = gateway.submitted[0]
        assert order.merchant_reference == created_payment.merchant_reference
        assert order.billing_address.first_name == "Jane"
        assert order.billing_address.last_name == "Doe"
        assert order.billing_address.country_code == "KE"
        assert order.description == "Payment - 1000 KES"

    @pytest.mark.asyncio
    async def test_merchant_references_are_unique(self, db_session, gateway, app_settings):
        references = set()
        for _ in range(10):
            created = await reconciler.create_payment(
                db_session,
                gateway,
                reconciler.PaymentRequest(amount=10, customer_email="a@b.com", customer_name="Jane Doe"),
                config=app_settings,
            )
            references.add(created.merchant_reference)

        assert len(references) == 10
        assert all(ref.startswith("BIPS_") for ref in references)

    @pytest.mark.asyncio
    async def test_validation_fails_before_anything_is_stored(self, db_session, gateway, app_settings):
        with pytest.raises(ValidationError) as exc:
            await reconciler.create_payment(
                db_session,
                gateway,
                reconciler.PaymentRequest(amount=0, customer_email="a@b.com", customer_name="Jane Doe"),
                config=app_settings,
            )

        assert "Valid amount is required" in exc.value.errors
        assert await _payment_count(db_session) == 0
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_nan_amount_is_a_validation_error(self, db_session, gateway, app_settings):
        with pytest.raises(ValidationError) as exc:
            await reconciler.create_payment(
                db_session,
                gateway,
                reconciler.PaymentRequest(amount=float("nan"), customer_email="a@b.com", customer_name="Jane Doe"),
                config=app_settings,
            )

        assert exc.value.errors == ["Valid amount is required"]
        assert await _payment_count(db_session) == 0
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_other_constraint_failures_are_not_reported_as_taken_reference(self, db_session):
        with pytest.raises(IntegrityError):
            await store.create_if_absent(db_session, merchant_reference="BIPS_1_nulls", amount=None)

        await db_session.rollback()
        assert await _payment_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_submission_failure_leaves_pending_without_tracking_id(self, db_session, app_settings):
        failing = MockGateway(failure_rate=1.0, latency_ms=0)

        with pytest.raises(SubmissionError):
            await reconciler.create_payment(
                db_session,
                failing,
                reconciler.PaymentRequest(amount=1000, customer_email="a@b.com", customer_name="Jane Doe"),
                config=app_settings,
            )

        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.status == "pending"
        assert payment.tracking_id is None

        actions = (await db_session.execute(select(AuditLog.action))).scalars().all()
        assert "submission_failed" in actions


class TestPushNotification:
    @pytest.mark.asyncio
    async def test_completed_notification_settles_payment(self, db_session, created_payment):
        result = await reconciler.apply_notification(
            db_session, _ipn(created_payment.tracking_id, "COMPLETED", payment_method="M-Pesa")
        )

        assert result.outcome == TransitionOutcome.APPLIED
        payment = await _reload(db_session, created_payment.merchant_reference)
        assert payment.status == "completed"
        assert payment.notification_received is True
        assert payment.payment_method == "M-Pesa"
        assert '"payment_status": "COMPLETED"' in payment.last_notification_payload

    @pytest.mark.asyncio
    async def test_identical_redelivery_writes_nothing(self, db_session, created_payment):
        envelope = _ipn(created_payment.tracking_id, "COMPLETED")
        await reconciler.apply_notification(db_session, envelope)
        first = await _reload(db_session, created_payment.merchant_reference)
        version, updated_at = first.version, first.updated_at

        result = await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "COMPLETED"))

        assert result.outcome == TransitionOutcome.DUPLICATE
        second = await _reload(db_session, created_payment.merchant_reference)
        assert second.status == "completed"
        assert second.version == version
        assert second.updated_at == updated_at

    @pytest.mark.asyncio
    async def test_pending_notification_after_terminal_is_ignored(self, db_session, created_payment):
        await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "FAILED"))

        result = await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "PENDING"))

        assert result.outcome == TransitionOutcome.IGNORED
        assert (await _reload(db_session, created_payment.merchant_reference)).status == "failed"

    @pytest.mark.asyncio
    async def test_ignored_notification_body_is_audited(self, db_session, created_payment):
        await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "FAILED"))

        await reconciler.apply_notification(
            db_session, _ipn(created_payment.tracking_id, "PENDING", confirmation_code="LATE1")
        )

        details = (
            await db_session.execute(select(AuditLog.details).where(AuditLog.action == "signal_ignored"))
        ).scalar_one()
        assert json.loads(details)["payload"] == {
            "order_tracking_id": created_payment.tracking_id,
            "payment_status": "PENDING",
            "confirmation_code": "LATE1",
        }

    @pytest.mark.asyncio
    async def test_conflicting_terminal_is_rejected_and_audited(self, db_session, created_payment):
        await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "COMPLETED"))

        with pytest.raises(ConflictError) as exc:
            await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "FAILED"))

        assert exc.value.current_status == "completed"
        assert exc.value.proposed_status == "failed"
        assert (await _reload(db_session, created_payment.merchant_reference)).status == "completed"

        actions = (await db_session.execute(select(AuditLog.action))).scalars().all()
        assert "signal_conflict" in actions

    @pytest.mark.asyncio
    async def test_unknown_tracking_id_is_dropped_not_created(self, db_session, created_payment):
        with pytest.raises(NotFoundError):
            await reconciler.apply_notification(db_session, _ipn("no-such-tracking-id", "COMPLETED"))

        assert await _payment_count(db_session) == 1
        entry = (
            await db_session.execute(select(AuditLog).where(AuditLog.action == "signal_not_found"))
        ).scalar_one()
        assert entry.payment_id is None

    @pytest.mark.asyncio
    async def test_first_push_after_callback_marks_notification(self, db_session, created_payment):
        await reconciler.apply_callback(
            db_session, created_payment.merchant_reference, created_payment.tracking_id, "COMPLETED"
        )

        result = await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "COMPLETED"))

        assert result.outcome == TransitionOutcome.DUPLICATE
        payment = await _reload(db_session, created_payment.merchant_reference)
        assert payment.status == "completed"
        assert payment.notification_received is True


class TestBrowserChannels:
    @pytest.mark.asyncio
    async def test_callback_applies_reported_status(self, db_session, created_payment):
        result = await reconciler.apply_callback(
            db_session, created_payment.merchant_reference, created_payment.tracking_id, "Completed"
        )

        assert result.outcome == TransitionOutcome.APPLIED
        assert result.status.value == "completed"

    @pytest.mark.asyncio
    async def test_callback_does_not_move_terminal_payment(self, db_session, created_payment):
        await reconciler.apply_cancel(db_session, created_payment.merchant_reference)

        result = await reconciler.apply_callback(
            db_session, created_payment.merchant_reference, created_payment.tracking_id, None
        )

        assert result.outcome == TransitionOutcome.IGNORED
        assert (await _reload(db_session, created_payment.merchant_reference)).status == "canceled"

    @pytest.mark.asyncio
    async def test_callback_fills_missing_tracking_id(self, db_session, app_settings):
        with pytest.raises(SubmissionError):
            await reconciler.create_payment(
                db_session,
                MockGateway(failure_rate=1.0, latency_ms=0),
                reconciler.PaymentRequest(amount=500, customer_email="a@b.com", customer_name="Jane Doe"),
                config=app_settings,
            )
        reference = (await db_session.execute(select(Payment.merchant_reference))).scalar_one()

        await reconciler.apply_callback(db_session, reference, "T-LATE", "PENDING")

        assert (await _reload(db_session, reference)).tracking_id == "T-LATE"

    @pytest.mark.asyncio
    async def test_callback_never_replaces_tracking_id(self, db_session, created_payment):
        await reconciler.apply_callback(db_session, created_payment.merchant_reference, "T-OTHER", "COMPLETED")

        payment = await _reload(db_session, created_payment.merchant_reference)
        assert payment.tracking_id == created_payment.tracking_id
        assert payment.status == "completed"

    @pytest.mark.asyncio
    async def test_cancel_pending_payment(self, db_session, created_payment):
        result = await reconciler.apply_cancel(db_session, created_payment.merchant_reference)
        assert result.outcome == TransitionOutcome.APPLIED
        assert result.status.value == "canceled"

    @pytest.mark.asyncio
    async def test_repeated_cancel_is_duplicate(self, db_session, created_payment):
        await reconciler.apply_cancel(db_session, created_payment.merchant_reference)
        result = await reconciler.apply_cancel(db_session, created_payment.merchant_reference)
        assert result.outcome == TransitionOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_completed_push_then_cancel_stays_completed(self, db_session, created_payment):
        await reconciler.apply_notification(db_session, _ipn(created_payment.tracking_id, "COMPLETED"))

        with pytest.raises(ConflictError):
            await reconciler.apply_cancel(db_session, created_payment.merchant_reference)

        payment = await _reload(db_session, created_payment.merchant_reference)
        assert payment.status == "completed"
        assert payment.notification_received is True

    @pytest.mark.asyncio
    async def test_cancel_unknown_reference(self, db_session):
        with pytest.raises(NotFoundError):
            await reconciler.apply_cancel(db_session, "BIPS_0_missing")
        assert await _payment_count(db_session) == 0


class TestPollStatus:
    @pytest.mark.asyncio
    async def test_poll_applies_terminal_gateway_status(self, db_session, created_payment, gateway):
        gateway.set_status(created_payment.tracking_id, "COMPLETED", payment_method="Visa")

        result = await reconciler.poll_status(db_session, gateway, created_payment.merchant_reference)

        assert result.outcome == TransitionOutcome.APPLIED
        assert result.payment.status == "completed"
        assert result.payment.payment_method == "Visa"
        assert result.gateway_status.status == "COMPLETED"
        assert result.payment.notification_received is False

    @pytest.mark.asyncio
    async def test_poll_never_downgrades(self, db_session, created_payment, gateway):
        await reconciler.apply_cancel(db_session, created_payment.merchant_reference)
        gateway.set_status(created_payment.tracking_id, "PENDING")

        result = await reconciler.poll_status(db_session, gateway, created_payment.merchant_reference)

        assert result.outcome == TransitionOutcome.IGNORED
        assert result.payment.status == "canceled"

    @pytest.mark.asyncio
    async def test_poll_conflict_is_not_raised(self, db_session, created_payment, gateway):
        await reconciler.apply_cancel(db_session, created_payment.merchant_reference)
        gateway.set_status(created_payment.tracking_id, "COMPLETED")

        result = await reconciler.poll_status(db_session, gateway, created_payment.merchant_reference)

        assert result.outcome == TransitionOutcome.CONFLICT
        assert result.payment.status == "canceled"

    @pytest.mark.asyncio
    async def test_poll_query_failure_propagates(self, db_session, created_payment, gateway, monkeypatch):
        async def broken(tracking_id):
            raise StatusQueryError("timed out", transient=True)

        monkeypatch.setattr(gateway, "get_status", broken)

        with pytest.raises(StatusQueryError):
            await reconciler.poll_status(db_session, gateway, created_payment.merchant_reference)
        assert (await _reload(db_session, created_payment.merchant_reference)).status == "pending"

    @pytest.mark.asyncio
    async def test_poll_unknown_reference(self, db_session, gateway):
        with pytest.raises(NotFoundError):
            await reconciler.poll_status(db_session, gateway, "BIPS_0_missing")


@pytest.mark.asyncio
async def test_late_cancel_after_push_completion(db_session, gateway, app_settings):
    """Create, complete via push notification, then a late cancel redirect."""
    created = await reconciler.create_payment(
        db_session,
        gateway,
        reconciler.PaymentRequest(amount=1000, currency="KES", customer_email="a@b.com", customer_name="Jane Doe"),
        config=app_settings,
    )
    assert (await _reload(db_session, created.merchant_reference)).status == "pending"

    await reconciler.apply_notification(
        db_session,
        NotificationEnvelope.from_payload({"trackingId": created.tracking_id, "paymentStatus": "COMPLETED"}),
    )
    payment = await _reload(db_session, created.merchant_reference)
    assert payment.status == "completed"
    assert payment.notification_received is True

    with pytest.raises(ConflictError):
        await reconciler.apply_cancel(db_session, created.merchant_reference)
    assert (await _reload(db_session, created.merchant_reference)).status == "completed"


class TestConcurrentTransitions:
    @pytest_asyncio.fixture
    async def file_sessions(self, tmp_path):
        """Two independent sessions on a file database, as two concurrent requests would have."""
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
        await create_tables(engine)
        factory = build_session_factory(engine)

        async with factory() as first, factory() as second:
            yield first, second

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self, db_session, created_payment):
        payment = await _reload(db_session, created_payment.merchant_reference)
        version = payment.version

        assert await store.compare_and_set(db_session, payment, version, status="completed")
        assert not await store.compare_and_set(db_session, payment, version, status="canceled")
        await db_session.commit()

        assert (await _reload(db_session, created_payment.merchant_reference)).status == "completed"

    @pytest.mark.asyncio
    async def test_lost_race_is_re_decided(self, file_sessions, gateway, app_settings, monkeypatch):
        first, second = file_sessions
        created = await reconciler.create_payment(
            first,
            gateway,
            reconciler.PaymentRequest(amount=1000, customer_email="a@b.com", customer_name="Jane Doe"),
            config=app_settings,
        )

        real_compare_and_set = store.compare_and_set
        raced = []

        async def racing_compare_and_set(session, payment, expected_version, **changes):
            if not raced:
                raced.append(True)
                # A push notification settles the payment between our read and our write.
                other = await store.find_by_reference(second, created.merchant_reference)
                assert await real_compare_and_set(second, other, other.version, status="completed")
                await second.commit()
            return await real_compare_and_set(session, payment, expected_version, **changes)

        monkeypatch.setattr(store, "compare_and_set", racing_compare_and_set)

        with pytest.raises(ConflictError):
            await reconciler.apply_cancel(first, created.merchant_reference)

        assert (await store.find_by_reference(first, created.merchant_reference)).status == "completed"
