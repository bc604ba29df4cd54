import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.config import settings  # noqa: E402
from core.models import Candle  # noqa: E402

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    """Keep audit logs out of the working tree."""
    monkeypatch.setattr(settings, "logs_dir", str(tmp_path / "logs"))
    yield


def bar(i, close, fast=None, slow=None, low=None, high=None, volume=10.0, open_=None, closed=True):
    """Candle at minute ``i`` with explicit EMA values."""
    open_ = close - 0.5 if open_ is None else open_
    return Candle(
        open_time=T0 + timedelta(minutes=3 * i),
        open=open_,
        high=high if high is not None else max(open_, close) + 0.5,
        low=low if low is not None else min(open_, close) - 0.5,
        close=close,
        volume=volume,
        ema_fast=fast,
        ema_slow=slow,
        closed=closed,
    )


@pytest.fixture
def make_bar():
    return bar
