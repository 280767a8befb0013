import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before tokengate modules read settings at import
_test_tmp_dir = tempfile.mkdtemp(prefix="tokengate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokengate.config import Settings  # noqa: E402
from tokengate.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FixedClock:
    """Settable clock; tests move time explicitly with ``advance``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_issuer="tokengate-tests",
        access_token_ttl_minutes=60,
        refresh_token_ttl_minutes=24 * 60,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()

