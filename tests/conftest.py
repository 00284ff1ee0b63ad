import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any imports that might initialize settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_REDIS_STORE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Never contacted; the verifier only connects on verify()
os.environ.setdefault("CREDENTIAL_BACKEND_URL", "http://127.0.0.1:9/auth/v1/token")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from loginguard.api.schemas import LoginCredentials  # noqa: E402
from loginguard.config import Settings  # noqa: E402
from loginguard.service.backends import VerificationResult  # noqa: E402
from loginguard.service.clock import ManualClock  # noqa: E402
from loginguard.service.orchestrator import LoginOrchestrator  # noqa: E402
from loginguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from loginguard.storage.memory import InMemoryRateLimitStore, InMemorySessionStore  # noqa: E402
from loginguard.storage.models import AuthenticatedUser  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeVerifier:
    """Credential backend double that accepts one password per email."""

    def __init__(self, accounts=None, *, delay: float = 0.0, error: Exception | None = None):
        self.accounts = accounts if accounts is not None else {"user@example.com": "Str0ng!Passphrase"}
        self.delay = delay
        self.error = error
        self.calls = []
        self.session_payload = {"access_token": "backend-token"}
        self.rejection_message = "Invalid login credentials"

    async def verify(self, email: str, password: str) -> VerificationResult:
        self.calls.append(email)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.accounts.get(email) != password:
            return VerificationResult(success=False, error_message=self.rejection_message)
        return VerificationResult(
            success=True,
            session=self.session_payload,
            user=AuthenticatedUser(id=f"user-{email.split('@')[0]}", email=email),
        )


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def names(self):
        return [event.event for event in self.events]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def rate_store():
    return InMemoryRateLimitStore()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def make_orchestrator(verifier, audit_sink, rate_store, session_store, clock):
    """Factory so tests can override settings, MFA policy or the client IP."""

    def factory(
        *, settings=None, mfa=None, client_ip="1.2.3.4", csrf_source=None, backend=None, **overrides
    ):
        async def get_client_ip():
            return client_ip

        return LoginOrchestrator(
            backend or verifier,
            get_client_ip=get_client_ip,
            check_mfa_requirement=mfa,
            audit_sink=audit_sink,
            csrf_source=csrf_source,
            settings=settings or Settings(**overrides),
            rate_limit_store=rate_store,
            session_store=session_store,
            clock=clock,
        )

    return factory


def credentials(email="user@example.com", password="Str0ng!Passphrase", **extra):
    return LoginCredentials(email=email, password=password, **extra)
