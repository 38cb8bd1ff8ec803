import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
str_path = str(ROOT)
if str_path not in sys.path:
    sys.path.insert(0, str_path)

from nsloop import jobs_state  # noqa: E402
from nsloop.core.settings import PreferencesConfig  # noqa: E402
from nsloop.models.profile import Profile  # noqa: E402


@pytest.fixture()
def now() -> datetime:
    return datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def prefs() -> PreferencesConfig:
    return PreferencesConfig(dia=4.0, basal_rate=1.0, sensitivity=50.0, carb_ratio=10.0, min_bg=100, max_bg=120)


@pytest.fixture()
def profile(prefs: PreferencesConfig) -> Profile:
    return Profile.from_preferences(prefs)


@pytest.fixture(autouse=True)
def _reset_job_states():
    jobs_state.reset_states()
    yield
    jobs_state.reset_states()
