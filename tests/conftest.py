import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("AUTH_JWT_SECRET", "test-access-secret")
os.environ.setdefault("AUTH_JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("SERVER_SALT", "test-server-salt")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("AUTH_ARGON2_TIME_COST", "1")
os.environ.setdefault("AUTH_ARGON2_MEMORY_COST", "8")
os.environ.setdefault("APP_ENV", "development")
os.environ.pop("RATE_LIMIT_REDIS_URL", None)

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.dialects.postgresql import UUID  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.ext.compiler import compiles  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import models  # noqa: E402,F401
from database import Base, get_db  # noqa: E402
from models.user import User  # noqa: E402
from services import rate_limiter  # noqa: E402
from services.auth_tokens import create_access_token  # noqa: E402
from services.payments import webhook_store  # noqa: E402


@compiles(UUID, "sqlite")  # type: ignore[misc]
def _compile_uuid_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
    return "TEXT"


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Generator[Session, None, None]:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _isolate_webhook_store(tmp_path: Path) -> Generator[Path, None, None]:
    """Point the processed-event store at a per-test file."""
    path = tmp_path / "webhook_events.json"
    webhook_store.reset_state_for_tests(path=path)
    yield path
    webhook_store.reset_state_for_tests()


@pytest.fixture(autouse=True)
def _disable_rate_limit_backend() -> Generator[None, None, None]:
    rate_limiter.set_client_for_tests(None)
    yield
    rate_limiter.set_client_for_tests(None)


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    def _make_user(
        *,
        email: Optional[str] = None,
        trial_start: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
        trial_hours: float = 24,
        subscription_status: Optional[str] = None,
        subscription_plan: Optional[str] = None,
        role: str = "user",
        is_banned: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        start = trial_start or now
        user = User(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            password_hash="not-a-real-hash",
            role=role,
            trial_start=start,
            trial_end=trial_end or start + timedelta(hours=trial_hours),
            subscription_status=subscription_status,
            subscription_plan=subscription_plan,
            is_active=True,
            is_banned=is_banned,
            created_at=created_at or now,
            updated_at=now,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture()
def auth_headers() -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        token, _ = create_access_token(user_id=str(user.id), email=user.email, role=user.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def api_client(db_session: Session) -> Generator[TestClient, None, None]:
    from web.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    try:
        yield client
    finally:
        client.close()
        app.dependency_overrides.pop(get_db, None)


class FakeStripeClient:
    """Records provider calls and serves canned subscription objects."""

    def __init__(self) -> None:
        self.checkout_calls: List[Dict[str, Any]] = []
        self.retrieve_calls: List[str] = []
        self.update_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.error: Optional[Exception] = None

    async def create_checkout_session(self, **kwargs: Any) -> Dict[str, Any]:
        self.checkout_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"id": f"cs_test_{len(self.checkout_calls)}", "url": "https://checkout.stripe.test/pay"}

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self.retrieve_calls.append(subscription_id)
        if self.error is not None:
            raise self.error
        if subscription_id in self.subscriptions:
            return self.subscriptions[subscription_id]
        return {
            "id": subscription_id,
            "status": "active",
            "customer": "cus_test_1",
            "current_period_start": 1_760_000_000,
            "current_period_end": 1_762_592_000,
            "cancel_at_period_end": False,
            "items": {"data": [{"price": {"id": "price_pro_test"}}]},
        }

    async def update_subscription(self, subscription_id: str, **fields: Any) -> Dict[str, Any]:
        self.update_calls.append((subscription_id, fields))
        if self.error is not None:
            raise self.error
        return {"id": subscription_id, **fields}


@pytest.fixture()
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()
