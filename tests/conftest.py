"""Shared pytest fixtures for RainbowPay tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from tests.fakes import FakeStore  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset the module-level JWKS cache so keys never leak between tests."""
    import rainbowpay.api.auth as auth_module

    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0
    yield
    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0


@pytest.fixture
def store(monkeypatch):
    """FakeStore installed over every domain module that touches the DB."""
    import rainbowpay.domain.fees as fees_module
    import rainbowpay.domain.ledger as ledger_module
    import rainbowpay.domain.payments as payments_module
    import rainbowpay.domain.reconciliation as reconciliation_module
    import rainbowpay.domain.refunds as refunds_module

    fake = FakeStore()
    fake.install(
        monkeypatch,
        fees_module,
        ledger_module,
        payments_module,
        reconciliation_module,
        refunds_module,
    )
    return fake


@pytest.fixture
def notifications(monkeypatch):
    """Capture notify() calls made by the domain modules."""
    import rainbowpay.domain.ledger as ledger_module
    import rainbowpay.domain.refunds as refunds_module

    sent: list[tuple[int, str, str | None]] = []

    def fake_notify(booking_id, kind, *, dedupe_key=None):
        sent.append((booking_id, kind.value, dedupe_key))
        return True

    monkeypatch.setattr(ledger_module, "notify", fake_notify)
    monkeypatch.setattr(refunds_module, "notify", fake_notify)
    return sent
