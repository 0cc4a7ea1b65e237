# quillpass/conftest.py
import os

# Settings and the plan catalog are built at import time; configure before importing quillpass
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_quillpass"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_quillpass"
os.environ["STRIPE_PRICE_PREMIUM"] = "price_premium_test"
os.environ["STRIPE_PRICE_PRO"] = "price_pro_test"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret-for-the-quillpass-suite"
os.environ["ALLOW_USER_ID_HEADER"] = "true"
os.environ["FREE_AI_SUMMARY_LIMIT"] = "5"
os.environ["CLIENT_URL"] = "http://localhost:5173"

import pytest  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from quillpass.core.database import create_all_tables, get_db_session, get_engine, init_engine  # noqa: E402
from quillpass.core.metrics import METRICS  # noqa: E402
from quillpass.features.subscriptions.service import write_subscription  # noqa: E402
from quillpass.features.users.service import get_or_create_user, get_user  # noqa: E402
from quillpass.models.subscription import Subscription, SubscriptionStatus  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database per test.

    A file (not :memory:) so that worker threads in concurrency tests
    each get their own connection to the same data.
    """
    init_engine(f"sqlite:///{tmp_path / 'quillpass.db'}")
    create_all_tables()
    METRICS.reset()
    yield
    get_engine().dispose()


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def gateway():
    from quillpass.tests.mocks import FakeGateway
    return FakeGateway()


@pytest.fixture
def client(gateway):
    from quillpass.features.billing.service import get_gateway
    from quillpass.main import app

    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user():
    """Factory: create a user, optionally already on a paid plan."""

    def _make(
        user_id="user_alice",
        email="alice@example.com",
        name="Alice",
        role="user",
        plan=None,
        status=SubscriptionStatus.ACTIVE,
        end_date=None,
        external_subscription_id=None,
        cancel_at_period_end=False,
    ):
        get_or_create_user(user_id, email=email, name=name, role=role)
        if plan is not None:
            with get_db_session() as session:
                write_subscription(
                    session,
                    user_id,
                    Subscription(
                        plan=plan,
                        status=status,
                        start_date=datetime.now(timezone.utc) - timedelta(days=1),
                        end_date=end_date,
                        external_subscription_id=external_subscription_id,
                        external_customer_id=f"cus_{user_id}" if external_subscription_id else None,
                        cancel_at_period_end=cancel_at_period_end,
                    ),
                )
        return get_user(user_id)

    return _make
