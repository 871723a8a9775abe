"""Shared fixtures: a throwaway SQLite store, a fake Razorpay gateway and the app."""

import json
from datetime import date
from decimal import Decimal

import httpx
import jwt
import pytest

from energy_backend.core.conf import Settings
from energy_backend.core.registrar import register_app
from energy_backend.database.db import create_async_engine_and_session, create_tables
from energy_backend.src.billing.bills import BillDraft
from energy_backend.src.billing.container import build_billing_services
from energy_backend.src.billing.external.razorpay import compute_signature
from energy_backend.src.billing.payments import PaymentGatewayInterface, SqlBillStore
from energy_backend.src.billing.shared.exceptions import GatewayError

KEY_ID = 'rzp_test_1DP5mmOlF5G5ag'
KEY_SECRET = 'test_key_secret'
WEBHOOK_SECRET = 'test_webhook_secret'
TOKEN_SECRET = 'test-token-secret'


class FakeGateway(PaymentGatewayInterface):
    """In-memory Razorpay double."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.orders = []
        self.payments = {}
        self.fail_with = None

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def create_order(self, amount, currency, receipt, notes=None):
        if self.fail_with is not None:
            raise self.fail_with
        order = {
            'id': f'order_{len(self.orders) + 1:06d}',
            'entity': 'order',
            'amount': amount,
            'currency': currency,
            'receipt': receipt,
            'notes': notes or {},
            'status': 'created',
        }
        self.orders.append(order)
        return order

    async def fetch_order(self, order_id):
        for order in self.orders:
            if order['id'] == order_id:
                return order
        raise GatewayError(
            'The id provided does not exist', upstream_status=400, upstream_code='BAD_REQUEST_ERROR'
        )

    async def fetch_payment(self, payment_id):
        if payment_id not in self.payments:
            raise GatewayError(
                'The id provided does not exist', upstream_status=400, upstream_code='BAD_REQUEST_ERROR'
            )
        return self.payments[payment_id]


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_TYPE='sqlite',
        TOKEN_SECRET_KEY=TOKEN_SECRET,
        RAZORPAY_KEY_ID=KEY_ID,
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        BILLING_STORE_RETRY_ATTEMPTS=3,
        BILLING_STORE_RETRY_WAIT_SECONDS=0,
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = create_async_engine_and_session(f"sqlite+aiosqlite:///{tmp_path / 'billing.sqlite3'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlBillStore(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(test_settings, session_factory, gateway):
    return build_billing_services(test_settings, session_factory, gateway=gateway)


@pytest.fixture
def make_bill(services):
    """Create a bill totalling 1375.00 (1000 energy + 200 fixed + 150 tax + 25 other)."""

    async def _make(user_id: str = 'user-1', bill_month: str = '2026-01', **overrides):
        draft = BillDraft(
            service_number='SN-1001',
            bill_month=bill_month,
            bill_period_start=date(2025, 12, 1),
            bill_period_end=date(2025, 12, 31),
            due_date=date(2026, 1, 20),
            energy_charges=Decimal('1000.00'),
            fixed_charges=Decimal('200.00'),
            tax_amount=Decimal('150.00'),
            other_charges=Decimal('25.00'),
            previous_reading=Decimal('4210'),
            current_reading=Decimal('4460'),
        )
        for key, value in overrides.items():
            setattr(draft, key, value)
        return await services.bills.create_bill(user_id, draft)

    return _make


@pytest.fixture
def sign():
    """Checkout signature as Razorpay computes it."""

    def _sign(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
        return compute_signature(f'{order_id}|{payment_id}', secret)

    return _sign


@pytest.fixture
def webhook_event():
    """Build a Razorpay webhook body for a payment on `bill`; returns (raw_body, signature)."""

    def _event(
        event: str,
        payment_id: str,
        bill=None,
        order_id: str = 'order_000001',
        amount: int = 137500,
        notes_on_order: bool = False,
        secret: str = WEBHOOK_SECRET,
        **payment_fields,
    ):
        notes = {'bill_id': bill.id, 'bill_number': bill.bill_number, 'user_id': bill.user_id} if bill else {}
        payment = {
            'id': payment_id,
            'entity': 'payment',
            'amount': amount,
            'currency': 'INR',
            'status': 'failed' if event == 'payment.failed' else 'captured',
            'order_id': order_id,
            'method': 'upi',
            'email': 'consumer@example.com',
            'contact': '+919900000000',
            'notes': [] if notes_on_order else notes,
            'created_at': 1767225600,
            **payment_fields,
        }
        payload = {'payment': {'entity': payment}}
        if event == 'order.paid':
            payload['order'] = {
                'entity': {'id': order_id, 'amount': amount, 'status': 'paid', 'notes': notes if notes_on_order else []}
            }
        raw = json.dumps({'entity': 'event', 'event': event, 'payload': payload}).encode()
        return raw, compute_signature(raw, secret)

    return _event


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = 'user-1') -> dict:
        token = jwt.encode({'sub': user_id, 'role': 'authenticated'}, TOKEN_SECRET, algorithm='HS256')
        return {'Authorization': f'Bearer {token}'}

    return _headers


@pytest.fixture
def app(services):
    return register_app(services)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url='http://test') as ac:
        yield ac


@pytest.fixture
def bill_order(services):
    """Mint a gateway order for a bill's total and return its id."""

    async def _order(bill) -> str:
        handle = await services.orders.create_bill_order(bill)
        return handle.order_id

    return _order
