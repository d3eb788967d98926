"""STK push state machine: initiation, callbacks, replays and status queries."""

from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

from rentledger.models import (
    BillingPeriod,
    PaymentChannel,
    PaymentRecord,
    PaymentStatus,
    StkPushSession,
    StkState,
)
from rentledger.services.config import Settings
from rentledger.services.errors import (
    AlreadySettled,
    InvalidAmount,
    MalformedNotification,
    NoOccupant,
    PaymentNotFound,
    ProviderAuthError,
    ProviderUnavailable,
    UnitNotFound,
)
from rentledger.services.ingestion_service import IngestionGateway
from rentledger.services.ledger_service import LedgerCalculator
from rentledger.services.mpesa_client import STK_PUSH_PATH, STK_QUERY_PATH, MpesaClient
from rentledger.services.overdue_service import OverdueSweeper
from rentledger.services.rent_generator_service import MonthlyRentGenerator
from rentledger.services.stk_push_service import (
    PLACEHOLDER_PREFIX,
    CallbackOutcome,
    StkPushService,
    parse_stk_callback,
)

NOW = datetime(2024, 3, 5, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(db_session, mpesa_client, test_settings):
    return StkPushService(db_session, mpesa_client, test_settings)


@pytest.mark.integration
class TestInitiate:
    @pytest.mark.asyncio
    async def test_creates_pending_record_and_session(self, db_session, service, unit_101):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)

        payment, session = initiation.payment, initiation.session
        assert payment.status == PaymentStatus.PENDING
        assert payment.channel == PaymentChannel.MPESA_STK
        assert payment.amount == Decimal("1200.00")
        assert payment.paid_amount == Decimal("0")
        assert payment.expected_amount == Decimal("1200.00")
        assert payment.period == BillingPeriod(3, 2024)
        assert payment.receipt_number is None
        assert payment.external_txn_id == session.checkout_request_id
        assert session.state == StkState.AWAITING_CALLBACK
        assert session.phone_number == "254712345678"
        assert session.account_reference == "101"
        assert session.merchant_request_id is not None
        assert initiation.customer_message == "Success. Request accepted for processing"

    @pytest.mark.asyncio
    async def test_unknown_unit(self, db_session, service, unit_101, daraja):
        with pytest.raises(UnitNotFound):
            await service.initiate("999", 1200, "0712345678", now=NOW)

        assert daraja.requests_to(STK_PUSH_PATH) == []
        assert db_session.query(PaymentRecord).count() == 0

    @pytest.mark.asyncio
    async def test_vacant_unit(self, service, seed):
        seed("102", occupied=False)

        with pytest.raises(NoOccupant):
            await service.initiate("102", 1200, "0712345678", now=NOW)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reference,amount,phone,error",
        [
            ("", 1200, "0712345678", MalformedNotification),
            ("101", None, "0712345678", MalformedNotification),
            ("101", "-5", "0712345678", InvalidAmount),
            ("101", 1200, "", MalformedNotification),
            ("101", 1200, "not-a-phone", MalformedNotification),
        ],
    )
    async def test_bad_request_fields(self, service, unit_101, reference, amount, phone, error):
        with pytest.raises(error):
            await service.initiate(reference, amount, phone, now=NOW)

    @pytest.mark.asyncio
    async def test_missing_credentials(self, db_session, unit_101, daraja):
        settings = Settings(_env_file=None, mpesa_consumer_key="", mpesa_passkey="")
        client = MpesaClient(settings, transport=daraja.transport)
        try:
            with pytest.raises(ProviderAuthError):
                await StkPushService(db_session, client, settings).initiate(
                    "101", 1200, "0712345678", now=NOW
                )
        finally:
            await client.close()
        assert db_session.query(PaymentRecord).count() == 0

    @pytest.mark.asyncio
    async def test_provider_down_marks_session_rejected(
        self, db_session, service, unit_101, daraja
    ):
        daraja.push_exception = httpx.ConnectError("connection refused")

        with pytest.raises(ProviderUnavailable):
            await service.initiate("101", 1200, "0712345678", now=NOW)

        session = db_session.query(StkPushSession).one()
        payment = session.payment
        assert session.state == StkState.REJECTED
        assert payment.status == PaymentStatus.PENDING
        assert payment.external_txn_id is None
        assert payment.notes.startswith("STK push failed:")

    @pytest.mark.asyncio
    async def test_settled_period_rejects_push(self, db_session, service, unit_101, test_settings):
        gateway = IngestionGateway(db_session, test_settings)
        gateway.post(
            gateway.normalize(
                PaymentChannel.PAYBILL,
                {"accountNumber": "101", "amount": 1200, "transactionId": "PB-1"},
            ),
            now=NOW,
        )

        with pytest.raises(AlreadySettled):
            await service.initiate("101", 1200, "0712345678", now=NOW)

    @pytest.mark.asyncio
    async def test_placeholder_never_left_behind(self, db_session, service, unit_101):
        await service.initiate("101", 1200, "0712345678", now=NOW)

        leftovers = (
            db_session.query(PaymentRecord)
            .filter(PaymentRecord.external_txn_id.like(f"{PLACEHOLDER_PREFIX}%"))
            .count()
        )
        assert leftovers == 0


@pytest.mark.integration
class TestCallbacks:
    @pytest.mark.asyncio
    async def test_success_settles_and_replay_is_ignored(
        self, db_session, service, unit_101, stk_callback
    ):
        """Scenario C: push for 1200, success callback, then a replayed callback."""
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        checkout = initiation.session.checkout_request_id
        callback = parse_stk_callback(stk_callback(checkout, amount=1200, receipt="QGH7XYZ123"))

        result = service.resolve_callback(callback, now=NOW)

        payment = result.payment
        assert result.outcome == CallbackOutcome.SETTLED
        assert payment.status == PaymentStatus.PAID
        assert payment.external_txn_id == "QGH7XYZ123"
        assert payment.reference_number == checkout
        assert payment.paid_amount == Decimal("1200.00")
        assert payment.receipt_number == "RCP-2024-000001"
        assert payment.received_from == "254712345678"
        assert result.session.state == StkState.SETTLED
        assert result.session.result_code == 0
        snapshot = (payment.status, payment.paid_amount, payment.receipt_number, payment.updated_at)

        replay = service.resolve_callback(callback, now=NOW)

        db_session.refresh(payment)
        assert replay.outcome == CallbackOutcome.DUPLICATE
        assert (
            payment.status,
            payment.paid_amount,
            payment.receipt_number,
            payment.updated_at,
        ) == snapshot
        assert db_session.query(PaymentRecord).count() == 1

    @pytest.mark.asyncio
    async def test_partial_amount_confirmed(self, service, unit_101, stk_callback):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        callback = parse_stk_callback(
            stk_callback(initiation.session.checkout_request_id, amount=700)
        )

        result = service.resolve_callback(callback, now=NOW)

        assert result.payment.status == PaymentStatus.PARTIAL
        assert result.payment.deficit == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_cancelled_push_is_rejected(self, service, unit_101, stk_callback):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        callback = parse_stk_callback(
            stk_callback(initiation.session.checkout_request_id, result_code=1032)
        )

        result = service.resolve_callback(callback, now=NOW)

        assert result.outcome == CallbackOutcome.REJECTED
        assert result.session.state == StkState.REJECTED
        assert result.session.result_code == 1032
        assert result.payment.status == PaymentStatus.PENDING
        assert result.payment.receipt_number is None
        assert result.payment.notes == "STK push failed: Request cancelled by user"

    @pytest.mark.asyncio
    async def test_success_after_rejection_is_ignored(self, service, unit_101, stk_callback):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        checkout = initiation.session.checkout_request_id
        service.resolve_callback(parse_stk_callback(stk_callback(checkout, result_code=1)))

        result = service.resolve_callback(parse_stk_callback(stk_callback(checkout)))

        assert result.outcome == CallbackOutcome.DUPLICATE
        assert result.payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_correlation_id(self, service, unit_101, stk_callback):
        with pytest.raises(PaymentNotFound):
            service.resolve_callback(parse_stk_callback(stk_callback("ws_CO_unknown")))

    @pytest.mark.asyncio
    async def test_provider_receipt_already_posted_elsewhere(
        self, db_session, service, unit_101, stk_callback, test_settings
    ):
        initiation = await service.initiate("101", 600, "0712345678", now=NOW)
        gateway = IngestionGateway(db_session, test_settings)
        gateway.post(
            gateway.normalize(
                PaymentChannel.MPESA_C2B,
                {"BillRefNumber": "101", "TransAmount": "600", "TransID": "QGH7XYZ123"},
            ),
            now=NOW,
        )

        result = service.resolve_callback(
            parse_stk_callback(
                stk_callback(
                    initiation.session.checkout_request_id, amount=600, receipt="QGH7XYZ123"
                )
            ),
            now=NOW,
        )

        assert result.outcome == CallbackOutcome.DUPLICATE
        assert result.session.state == StkState.SETTLED
        assert result.payment.receipt_number is None
        assert (
            db_session.query(PaymentRecord)
            .filter(PaymentRecord.external_txn_id == "QGH7XYZ123")
            .count()
            == 1
        )

    @pytest.mark.asyncio
    async def test_two_pushes_in_one_period_keep_one_paid_record(
        self, db_session, service, unit_101, stk_callback
    ):
        first = await service.initiate("101", 1200, "0712345678", now=NOW)
        second = await service.initiate("101", 1200, "0712345678", now=NOW)

        service.resolve_callback(
            parse_stk_callback(stk_callback(first.session.checkout_request_id, receipt="R1")),
            now=NOW,
        )
        result = service.resolve_callback(
            parse_stk_callback(stk_callback(second.session.checkout_request_id, receipt="R2")),
            now=NOW,
        )

        assert result.outcome == CallbackOutcome.SETTLED
        assert result.payment.period == BillingPeriod(4, 2024)
        paid_march = (
            db_session.query(PaymentRecord)
            .filter(
                PaymentRecord.status == PaymentStatus.PAID,
                PaymentRecord.period_month == "03",
            )
            .count()
        )
        assert paid_march == 1


@pytest.mark.integration
class TestAdvanceIntoGeneratedPeriod:
    APRIL = BillingPeriod(4, 2024)

    async def settle_after_march_is_paid(self, db_session, service, settings):
        """Push in March, a paybill payment settles March, then April is generated."""
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        gateway = IngestionGateway(db_session, settings)
        gateway.post(
            gateway.normalize(
                PaymentChannel.PAYBILL,
                {"accountNumber": "101", "amount": 1200, "transactionId": "PB-1"},
            ),
            now=NOW,
        )
        report = MonthlyRentGenerator(db_session).generate(
            self.APRIL, 5, Decimal("5"), today=date(2024, 4, 1)
        )
        return initiation.session.checkout_request_id, report.payment_ids[0]

    def april_records(self, db_session):
        return (
            db_session.query(PaymentRecord)
            .filter(PaymentRecord.period_month == "04", PaymentRecord.period_year == 2024)
            .all()
        )

    @pytest.mark.asyncio
    async def test_stk_record_replaces_generated_record(
        self, db_session, service, unit_101, stk_callback, test_settings
    ):
        checkout, generated_id = await self.settle_after_march_is_paid(
            db_session, service, test_settings
        )

        result = service.resolve_callback(
            parse_stk_callback(stk_callback(checkout, amount=1200, receipt="QGH7ADV001")), now=NOW
        )

        assert result.outcome == CallbackOutcome.SETTLED
        assert result.payment.period == self.APRIL
        assert result.payment.status == PaymentStatus.PAID
        april = self.april_records(db_session)
        assert [record.id for record in april] == [result.payment.id]
        assert generated_id != result.payment.id

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 4, 20))

        assert report.marked_overdue == 0
        carried = LedgerCalculator(db_session).carried_forward(
            result.payment.tenant_id, result.payment.unit_id, BillingPeriod(5, 2024)
        )
        assert carried == Decimal("0")

    @pytest.mark.asyncio
    async def test_late_fee_of_replaced_record_is_kept(
        self, db_session, service, unit_101, stk_callback, test_settings
    ):
        checkout, _ = await self.settle_after_march_is_paid(db_session, service, test_settings)
        OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 4, 10))

        result = service.resolve_callback(
            parse_stk_callback(stk_callback(checkout, amount=1200, receipt="QGH7ADV002")), now=NOW
        )

        assert result.payment.status == PaymentStatus.PAID
        assert result.payment.late_fee == Decimal("60.00")
        assert len(self.april_records(db_session)) == 1


@pytest.mark.integration
class TestParseCallback:
    def test_flat_shape(self):
        callback = parse_stk_callback(
            {
                "correlationId": "ws_CO_1",
                "resultCode": "0",
                "amount": "1200",
                "providerReceiptId": "QGH1",
                "payerPhone": "254712345678",
                "transactionTime": "2024-03-05T11:00:00+03:00",
            }
        )

        assert callback.succeeded
        assert callback.amount == Decimal("1200.00")
        assert callback.provider_receipt_id == "QGH1"
        assert callback.transaction_time == datetime(2024, 3, 5, 8, 0, tzinfo=timezone.utc)

    def test_nested_failure_has_no_metadata(self, stk_callback):
        callback = parse_stk_callback(stk_callback("ws_CO_1", result_code=2001))

        assert not callback.succeeded
        assert callback.amount is None
        assert callback.provider_receipt_id is None

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"correlationId": "ws_CO_1"},
            {"correlationId": "ws_CO_1", "resultCode": "zero"},
        ],
    )
    def test_malformed(self, payload):
        with pytest.raises(MalformedNotification):
            parse_stk_callback(payload)


@pytest.mark.integration
class TestQueryStatus:
    @pytest.mark.asyncio
    async def test_open_session_is_cross_checked(self, service, unit_101, daraja):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)

        status = await service.query_status(initiation.session.checkout_request_id)

        assert status.provider["ResultCode"] == "1032"
        assert status.provider_error is None
        assert len(daraja.requests_to(STK_QUERY_PATH)) == 1

    @pytest.mark.asyncio
    async def test_provider_failure_is_not_fatal(self, service, unit_101, daraja):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        daraja.query_status = 500
        daraja.query_body = {"errorMessage": "Internal error"}

        status = await service.query_status(initiation.session.checkout_request_id)

        assert status.provider is None
        assert "Internal error" in status.provider_error
        assert status.payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_terminal_session_skips_provider(self, service, unit_101, daraja, stk_callback):
        initiation = await service.initiate("101", 1200, "0712345678", now=NOW)
        checkout = initiation.session.checkout_request_id
        service.resolve_callback(parse_stk_callback(stk_callback(checkout)), now=NOW)

        status = await service.query_status(checkout)

        assert status.session.state == StkState.SETTLED
        assert daraja.requests_to(STK_QUERY_PATH) == []

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(PaymentNotFound):
            await service.query_status("ws_CO_missing")
