"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: fresh SQLite in-memory database per test
- installed_shop: a Shop row with an encrypted access token
- gateway: FakeGateway recording every billing provider call
- make_subscription / make_billing_service factories
"""

import os
import tempfile
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from seo_billing.config.billing_plans import reset_plan_catalog
from seo_billing.db_base import Base
from seo_billing.integrations.openrouter.pricing_client import reset_token_rate_provider
from seo_billing.integrations.shopify.billing_client import ShopifySubscription
from seo_billing.models import Shop, Subscription
from seo_billing.models.base import utcnow
from seo_billing.platform.secrets import encrypt_secret, reset_secrets_manager
from seo_billing.services.billing_cache import BillingCache, reset_billing_cache
from seo_billing.services.billing_gateway import GatewayCharge
from seo_billing.services.billing_service import BillingService

TEST_ENCRYPTION_KEY = "test-encryption-key-for-billing-tests"
TEST_ACCESS_TOKEN = "shpat_" + "a1" * 16

SUBSCRIPTION_GID = "gid://shopify/AppSubscription/{}"
PURCHASE_GID = "gid://shopify/AppPurchaseOneTime/{}"

# Set test environment
os.environ.setdefault("ENV", "test")


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Reset environment-driven singletons around every test."""
    for name in ("REDIS_URL", "OPENROUTER_API_KEY", "BILLING_PLANS_CONFIG", "APP_URL", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)

    reset_secrets_manager()
    reset_billing_cache()
    reset_plan_catalog()
    reset_token_rate_provider()
    yield
    reset_secrets_manager()
    reset_billing_cache()
    reset_plan_catalog()
    reset_token_rate_provider()


@pytest.fixture
def db_engine():
    """
    SQLite in-memory engine with all tables.

    Services commit their own transactions, so every test gets a new
    database instead of an outer rollback.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def shop_domain():
    """Test shop domain."""
    return "test-store.myshopify.com"


@pytest.fixture
def installed_shop(db_session, shop_domain):
    shop = Shop(
        shop_domain=shop_domain,
        access_token_encrypted=encrypt_secret(TEST_ACCESS_TOKEN),
        scopes="read_products,write_products",
    )
    db_session.add(shop)
    db_session.commit()
    return shop


class FakeGateway:
    """
    In-memory BillingGateway.

    active_id is what the provider reports as the approved subscription.
    Set errors[method_name] to make that call raise.
    """

    def __init__(self, shop_domain: str = "test-store.myshopify.com", active_id: Optional[str] = None):
        self.shop_domain = shop_domain
        self.active_id = active_id
        self.errors = {}
        self.recurring_charges = []
        self.one_time_charges = []
        self.cancelled = []
        self.active_queries = 0
        self._next_id = 1000

    def _raise_if_failing(self, method: str) -> None:
        if method in self.errors:
            raise self.errors[method]

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def create_recurring_charge(self, plan, return_url, trial_days):
        self._raise_if_failing("create_recurring_charge")
        charge_number = self._new_id()
        charge = {
            "plan": plan.key,
            "price": plan.price,
            "return_url": return_url,
            "trial_days": trial_days,
            "charge_id": SUBSCRIPTION_GID.format(charge_number),
        }
        self.recurring_charges.append(charge)
        return GatewayCharge(
            confirmation_url=f"https://{self.shop_domain}/admin/charges/{charge_number}/confirm_recurring",
            charge_id=charge["charge_id"],
        )

    async def create_one_time_charge(self, name, amount, return_url, currency_code="USD"):
        self._raise_if_failing("create_one_time_charge")
        charge_number = self._new_id()
        charge = {
            "name": name,
            "amount": amount,
            "return_url": return_url,
            "currency_code": currency_code,
            "charge_id": PURCHASE_GID.format(charge_number),
        }
        self.one_time_charges.append(charge)
        return GatewayCharge(
            confirmation_url=f"https://{self.shop_domain}/admin/charges/{charge_number}/confirm_purchase",
            charge_id=charge["charge_id"],
        )

    async def get_active_subscription(self):
        self.active_queries += 1
        self._raise_if_failing("get_active_subscription")
        if self.active_id is None:
            return None
        return ShopifySubscription(id=self.active_id, name="Plan", status="ACTIVE")

    async def cancel_subscription(self, subscription_id):
        self._raise_if_failing("cancel_subscription")
        self.cancelled.append(subscription_id)


@pytest.fixture
def gateway(shop_domain):
    return FakeGateway(shop_domain)


@pytest.fixture
def make_gateway():
    """Factory for extra FakeGateway instances (one per shop)."""
    def _make(shop_domain: str = "test-store.myshopify.com", active_id: Optional[str] = None) -> FakeGateway:
        return FakeGateway(shop_domain, active_id)
    return _make


@pytest.fixture
def rate_provider():
    """Token rate fixed at $0.10 per 1M tokens."""
    provider = MagicMock()
    provider.get_rate_per_1m = AsyncMock(return_value=Decimal("0.10"))
    return provider


@pytest.fixture
def billing_cache():
    return BillingCache(ttl_seconds=300)


@pytest.fixture
def make_subscription(db_session, shop_domain):
    """
    Factory for a persisted Subscription.

    Usage:
        sub = make_subscription(plan="growth", trial_days_left=2)
    """
    def _make(trial_days_left: Optional[float] = None, **values) -> Subscription:
        values.setdefault("shop_domain", shop_domain)
        values.setdefault("plan", "starter")
        values.setdefault("status", "active")
        values.setdefault("pending_activation", False)
        if trial_days_left is not None:
            values["trial_ends_at"] = utcnow() + timedelta(days=trial_days_left)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


@pytest.fixture
def make_billing_service(db_session, shop_domain, gateway, billing_cache, rate_provider):
    def _make(gateway_override=None) -> BillingService:
        selected = gateway_override or gateway
        return BillingService(
            db_session,
            shop_domain,
            gateway_factory=lambda: selected,
            cache=billing_cache,
            rate_provider=rate_provider,
        )
    return _make


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("plans.yml", {"trial_days": 5, "plans": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
