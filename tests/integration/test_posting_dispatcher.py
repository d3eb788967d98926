"""Background posting: acknowledge-first channels run on the dispatcher pool."""

from datetime import datetime, timezone

import pytest

from rentledger.models import PaymentChannel, PaymentRecord, PaymentStatus
from rentledger.services import posting_dispatcher as dispatcher_module
from rentledger.services.ingestion_service import PostingOutcome
from rentledger.services.posting_dispatcher import (
    PostingDispatcher,
    get_posting_dispatcher,
    init_posting_dispatcher,
    shutdown_posting_dispatcher,
)

C2B = {
    "TransID": "RKTQDM7W6S",
    "TransTime": "20240305143015",
    "TransAmount": "1200.00",
    "BillRefNumber": "101",
    "MSISDN": "254712345678",
    "FirstName": "JANE",
    "LastName": "WANJIKU",
}


@pytest.mark.integration
class TestPostingDispatcher:
    def test_posts_in_background(self, db_session, dispatcher, unit_101):
        future = dispatcher.submit(PaymentChannel.MPESA_C2B, C2B)

        assert dispatcher.drain(timeout=5)
        assert future.result() == PostingOutcome.POSTED
        record = db_session.query(PaymentRecord).one()
        assert record.status == PaymentStatus.PAID
        assert record.external_txn_id == "RKTQDM7W6S"
        assert record.received_from == "JANE WANJIKU"
        assert record.receipt_number == f"RCP-{datetime.now(timezone.utc).year}-000001"
        assert dispatcher.outcomes["posted"] == 1

    def test_redelivery_is_a_duplicate(self, db_session, dispatcher, unit_101):
        dispatcher.submit(PaymentChannel.MPESA_C2B, C2B)
        dispatcher.submit(PaymentChannel.MPESA_C2B, C2B)
        dispatcher.drain(timeout=5)

        assert db_session.query(PaymentRecord).count() == 1
        assert dispatcher.outcomes["posted"] == 1
        assert dispatcher.outcomes["duplicate"] == 1

    def test_unknown_unit_is_recorded_not_raised(self, db_session, dispatcher, unit_101, caplog):
        """Scenario D: BillRefNumber 999 matches nothing."""
        future = dispatcher.submit(PaymentChannel.MPESA_C2B, {**C2B, "BillRefNumber": "999"})
        dispatcher.drain(timeout=5)

        assert future.result() is None
        assert db_session.query(PaymentRecord).count() == 0
        failure = dispatcher.recent_failures[-1]
        assert failure.code == "unit_not_found"
        assert failure.channel == "mpesa_c2b"
        assert failure.external_txn_id == "RKTQDM7W6S"
        assert failure.account_reference == "999"
        assert "unit_not_found" in caplog.text

    def test_malformed_payload_is_recorded(self, dispatcher, unit_101):
        dispatcher.submit(PaymentChannel.BANK_WEBHOOK, {"amount": 100})
        dispatcher.drain(timeout=5)

        failure = dispatcher.recent_failures[-1]
        assert failure.code == "malformed_notification"
        assert failure.account_reference is None
        assert dispatcher.outcomes["failed"] == 1

    def test_unexpected_error_is_recorded(self, dispatcher, unit_101, monkeypatch):
        def explode(self, intent, now=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(
            "rentledger.services.ingestion_service.IngestionGateway.post", explode
        )

        dispatcher.submit(PaymentChannel.MPESA_C2B, C2B)
        dispatcher.drain(timeout=5)

        failure = dispatcher.recent_failures[-1]
        assert failure.code == "internal_error"
        assert failure.message == "disk full"

    def test_failure_log_is_bounded(self, session_factory, test_settings, unit_101):
        dispatcher = PostingDispatcher(
            session_factory, test_settings, max_workers=1, failure_log_size=2
        )
        try:
            for n in range(4):
                dispatcher.submit(PaymentChannel.WEBHOOK, {"houseNumber": f"X{n}", "amount": 1})
            dispatcher.drain(timeout=5)
        finally:
            dispatcher.shutdown(timeout=5)

        assert len(dispatcher.recent_failures) == 2
        assert dispatcher.outcomes["failed"] == 4

    def test_drain_with_nothing_pending(self, dispatcher):
        assert dispatcher.drain(timeout=0.1)


@pytest.mark.integration
class TestGlobalDispatcher:
    def test_lifecycle(self, session_factory, test_settings):
        shutdown_posting_dispatcher()
        with pytest.raises(RuntimeError):
            get_posting_dispatcher()

        first = init_posting_dispatcher(session_factory, test_settings, max_workers=1)
        assert get_posting_dispatcher() is first

        second = init_posting_dispatcher(session_factory, test_settings, max_workers=1)
        assert get_posting_dispatcher() is second

        shutdown_posting_dispatcher()
        assert dispatcher_module._dispatcher_instance is None
