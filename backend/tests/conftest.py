from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from fulfillment.api.deps import SessionDep, get_db, get_notification_service, get_payment_service
from fulfillment.core.config import settings
from fulfillment.core.security import create_access_token
from fulfillment.core.snowflake import generate_order_number, generate_tracking_code
from fulfillment.enums import (
    ActorRole,
    NotificationChannel,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
)
from fulfillment.integrations.channels import ChannelResult, NotificationMessage, Recipient
from fulfillment.integrations.gateways import PaymeeAdapter, build_adapters
from fulfillment.main import app
from fulfillment.models import (
    Customer,
    NotificationLog,
    NotificationPreferences,
    Order,
    Payment,
    Product,
    utc_now,
)
from fulfillment.models.documents import StatusHistoryEntry
from fulfillment.models.order import STATUS_LOCATIONS
from fulfillment.services.notification_service import NotificationService
from fulfillment.services.order_service import OrderService
from fulfillment.services.payment_service import PaymentService


class FakeSender:
    """记录发送内容的渠道发送器"""

    def __init__(self, success: bool = True, gone: tuple[str, ...] = ()) -> None:
        self.success = success
        self.gone = gone
        self.sent: list[tuple[Recipient, NotificationMessage]] = []

    def send(self, recipient: Recipient, notification: NotificationMessage) -> ChannelResult:
        self.sent.append((recipient, notification))
        return ChannelResult(
            success=self.success,
            error=None if self.success else "fake failure",
            provider="fake",
            gone_endpoints=self.gone,
        )


class StubPaymee(PaymeeAdapter):
    """按顺序返回预置响应的 Paymee 适配器（不发起真实 HTTP 请求）"""

    def __init__(self, responses: list[Any]) -> None:
        super().__init__(settings.model_copy(update={"PAYMEE_ENABLED": True, "PAYMEE_API_KEY": "test-key"}))
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, Any] | None]] = []

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self.calls.append((method, url, json))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        # Clean tables after each test (children first).
        session.rollback()
        session.exec(delete(NotificationLog))
        session.exec(delete(NotificationPreferences))
        session.exec(delete(Payment))
        session.exec(delete(Order))
        session.exec(delete(Product))
        session.exec(delete(Customer))
        session.commit()


@pytest.fixture(scope="function")
def senders() -> dict[NotificationChannel, FakeSender]:
    return {channel: FakeSender() for channel in NotificationChannel}


@pytest.fixture(scope="function")
def paymee() -> StubPaymee:
    return StubPaymee(responses=[])


@pytest.fixture(scope="function")
def adapters(paymee):
    registry = build_adapters(settings)
    registry[PaymentMethod.paymee] = paymee
    return registry


@pytest.fixture(scope="function")
def notifier(db, senders) -> NotificationService:
    return NotificationService(db, settings, senders=senders)


@pytest.fixture(scope="function")
def orders(db, notifier) -> OrderService:
    return OrderService(db, settings, notifier=notifier)


@pytest.fixture(scope="function")
def payments(db, orders, adapters) -> PaymentService:
    return PaymentService(db, settings, adapters=adapters, order_service=orders)


@pytest.fixture(scope="function")
def client(engine, db, senders, adapters) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    def _override_notifications(session: SessionDep) -> NotificationService:
        return NotificationService(session, settings, senders=senders)

    def _override_payments(session: SessionDep) -> PaymentService:
        notifier = NotificationService(session, settings, senders=senders)
        return PaymentService(
            session,
            settings,
            adapters=adapters,
            order_service=OrderService(session, settings, notifier=notifier),
        )

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notification_service] = _override_notifications
    app.dependency_overrides[get_payment_service] = _override_payments
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def customer(db) -> Customer:
    c = Customer(first_name="Amine", last_name="Ben Salah", email="amine@example.com", phone="+21698123456")
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


@pytest.fixture(scope="function")
def product(db) -> Product:
    p = Product(name="Pompe de filtration", price=Decimal("250.000"), stock_quantity=10)
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture(scope="function")
def make_order(db) -> Callable[..., Order]:
    """直接写入一条订单（金额由调用方指定），用于支付相关测试"""

    def _make(
        *,
        total: str = "100.000",
        customer: Customer | None = None,
        payment_method: PaymentMethod = PaymentMethod.cash_on_delivery,
        status: OrderStatus = OrderStatus.pending,
    ) -> Order:
        now = utc_now()
        order = Order(
            order_number=generate_order_number(),
            tracking_code=generate_tracking_code(),
            customer_id=customer.id if customer else None,
            customer_name=customer.full_name if customer else "Guest Buyer",
            customer_email=customer.email if customer else "guest@example.com",
            customer_phone=(customer.phone if customer else None) or "+21622000000",
            shipping_address={"street": "12 Rue de Marseille", "city": "Tunis", "country": "Tunisia"},
            items=[{"product_id": None, "name": "Kit entretien", "price": total, "quantity": 1}],
            status=status,
            status_history=[
                StatusHistoryEntry(
                    status=status,
                    timestamp=now,
                    note="Commande créée",
                    location=STATUS_LOCATIONS[status],
                ).model_dump(mode="json")
            ],
            payment_method=payment_method,
            payment_status=OrderPaymentStatus.pending,
            subtotal=Decimal(total),
            total_amount=Decimal(total),
            estimated_delivery=now + timedelta(days=4),
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


def _auth_headers(subject: Any, role: ActorRole) -> dict[str, str]:
    token = create_access_token(subject, role.value, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def admin_headers() -> dict[str, str]:
    return _auth_headers("admin@stes.tn", ActorRole.admin)


@pytest.fixture(scope="function")
def customer_headers(customer) -> dict[str, str]:
    return _auth_headers(customer.id, ActorRole.customer)


@pytest.fixture(scope="function")
def headers_for() -> Callable[[Any, ActorRole], dict[str, str]]:
    return _auth_headers
