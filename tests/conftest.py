import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TOKEN_SIGNING_KEY", "test-signing-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("IDENTITY_VERIFIER_URL", "http://identity.invalid")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenwarden.service.audit import AuditLogger  # noqa: E402
from tokenwarden.service.rate_limit import RateLimiter  # noqa: E402
from tokenwarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenwarden.service.tokens import EngineConfig, TokenLifecycleEngine  # noqa: E402
from tokenwarden.storage.memory import MemoryStore  # noqa: E402
from tokenwarden.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SIGNING_KEY = "unit-test-signing-key"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def build_engine(memory_store, memory_cache):
    """Factory for an engine over fresh in-memory stores.

    Keyword overrides: ``limits`` (tier -> requests), ``config`` fields,
    ``cache`` (pass a different cache object), ``clock``.
    """

    def _build(*, limits=None, cache=memory_cache, clock=None, **config_overrides):
        config = EngineConfig(
            signing_key=TEST_SIGNING_KEY,
            environment_prefix="tw_test_",
            **config_overrides,
        )
        limiter = RateLimiter(memory_cache, limits=limits)
        audit = AuditLogger(memory_store, memory_cache)
        kwargs = {"clock": clock} if clock is not None else {}
        return TokenLifecycleEngine(config, memory_store, cache, limiter, audit, **kwargs)

    return _build


@pytest.fixture
def engine(build_engine):
    return build_engine()


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
