import os
import sys
from pathlib import Path

# Environment defaults must be in place before any sessionward import reads settings
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "ACCESS_TOKEN_SECRET", "test-access-secret-for-automation-only-0123456789"
)
os.environ.setdefault(
    "REFRESH_TOKEN_SECRET", "test-refresh-secret-for-automation-only-9876543210"
)
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionward.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
