"""Shared pytest fixtures: per-test SQLite database, seeded units and a fake Daraja API."""

import json
import os
from datetime import date
from decimal import Decimal

# Point the module-level engine at a throwaway database BEFORE importing rentledger
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from rentledger.models import (  # noqa: E402
    Base,
    BillingUnit,
    Property,
    Tenant,
    TenantStatus,
    UnitStatus,
)
from rentledger.services.config import Settings  # noqa: E402
from rentledger.services.mpesa_client import (  # noqa: E402
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    TOKEN_PATH,
    MpesaClient,
)
from rentledger.services.posting_dispatcher import PostingDispatcher  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads get their own connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'rentledger_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings(tmp_path):
    """Settings with a complete sandbox M-Pesa configuration; .env is ignored."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'rentledger_test.db'}",
        log_file=str(tmp_path / "logs" / "server.log"),
        mpesa_env="sandbox",
        mpesa_consumer_key="test-consumer-key",
        mpesa_consumer_secret="test-consumer-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="test-passkey",
        mpesa_callback_url="https://example.test/api/mpesa/callback",
        paybill_number="174379",
        posting_workers=1,
    )


@pytest.fixture
def seed(db_session):
    """Factory creating a unit (and by default its occupant) under one property."""
    properties: dict[str, Property] = {}
    counter = {"tenant": 0}

    def _seed(
        unit_number: str = "101",
        rent: str = "1200",
        occupied: bool = True,
        property_name: str = "Sunrise Apartments",
        bank_account_number: str | None = None,
        first_name: str = "Jane",
        last_name: str = "Wanjiku",
        tenant_status: TenantStatus = TenantStatus.ACTIVE,
    ) -> BillingUnit:
        prop = properties.get(property_name)
        if prop is None:
            prop = Property(name=property_name, address="Ngong Road, Nairobi")
            db_session.add(prop)
            db_session.flush()
            properties[property_name] = prop

        unit = BillingUnit(
            property_id=prop.id,
            unit_number=unit_number,
            rent_amount=Decimal(rent),
            status=UnitStatus.OCCUPIED if occupied else UnitStatus.AVAILABLE,
        )
        db_session.add(unit)
        db_session.flush()

        if occupied:
            counter["tenant"] += 1
            tenant = Tenant(
                first_name=first_name,
                last_name=last_name,
                email=f"tenant{counter['tenant']}@example.com",
                phone=f"07000000{counter['tenant']:02d}",
                bank_account_number=bank_account_number,
                unit_id=unit.id,
                lease_start_date=date(2023, 1, 1),
                status=tenant_status,
            )
            db_session.add(tenant)
        db_session.commit()
        db_session.refresh(unit)
        return unit

    return _seed


@pytest.fixture
def unit_101(seed):
    """Scenario unit: "101", rent 1200, occupied."""
    return seed("101", "1200", bank_account_number="1000200030")


class FakeDaraja:
    """In-process stand-in for the Daraja API, served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.push_status = 200
        self.push_body: dict | None = None
        self.push_exception: Exception | None = None
        self.push_unauthorized_once = False
        self.query_status = 200
        self.query_body = {
            "ResponseCode": "0",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        }
        self.checkouts = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == TOKEN_PATH:
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={
                        "errorCode": "400.008.01",
                        "errorMessage": "Invalid Authentication passed",
                    },
                )
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})

        if path == STK_PUSH_PATH:
            if self.push_exception is not None:
                raise self.push_exception
            if self.push_unauthorized_once:
                self.push_unauthorized_once = False
                return httpx.Response(401, json={"errorMessage": "Invalid Access Token"})
            if self.push_body is not None:
                return httpx.Response(self.push_status, json=self.push_body)
            self.checkouts += 1
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-34620561-{self.checkouts}",
                    "CheckoutRequestID": f"ws_CO_191220191020363925{self.checkouts:04d}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )

        if path == STK_QUERY_PATH:
            return httpx.Response(self.query_status, json=self.query_body)

        return httpx.Response(404, json={"errorMessage": "Not found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def last_json(self, path: str) -> dict:
        return json.loads(self.requests_to(path)[-1].content)


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
async def mpesa_client(test_settings, daraja):
    client = MpesaClient(test_settings, transport=daraja.transport)
    yield client
    await client.close()


def stk_callback_payload(
    checkout_request_id: str,
    result_code: int = 0,
    amount: float | None = 1200,
    receipt: str | None = "QGH7XYZ123",
    phone: int = 254712345678,
    transaction_date: int = 20240305110000,
) -> dict:
    """Provider-shaped (nested) STK callback body."""
    stk: dict = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": (
            "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": transaction_date},
            {"Name": "PhoneNumber", "Value": phone},
        ]
        stk["CallbackMetadata"] = {"Item": [i for i in items if i["Value"] is not None]}
    return {"Body": {"stkCallback": stk}}


@pytest.fixture
def stk_callback():
    return stk_callback_payload


@pytest.fixture
def dispatcher(session_factory, test_settings):
    dispatcher = PostingDispatcher(session_factory, test_settings, max_workers=1)
    yield dispatcher
    dispatcher.shutdown(timeout=5)


@pytest.fixture
def client(session_factory, test_settings, dispatcher, daraja):
    """TestClient with the database, settings, dispatcher and provider overridden."""
    from rentledger.api.app import app
    from rentledger.api.dependencies import get_app_settings, get_dispatcher, get_mpesa
    from rentledger.services import get_db

    mpesa = MpesaClient(test_settings, transport=daraja.transport)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: test_settings
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_mpesa] = lambda: mpesa

    yield TestClient(app)

    app.dependency_overrides.clear()
