"""
Pytest fixtures and configuration for the Batch Register test suite.
"""

import pytest
import asyncio
import random
from types import SimpleNamespace
from pathlib import Path
from typing import Dict, List, Optional

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.models import FallbackResult, FallbackStatus, RawOutput, Record


SUCCESS_PAGE = """
<html><body>
<div class="alert alert-success">
  <h3>Pendaftaran Berhasil</h3>
  <p>Nomor Antrian: A-012</p>
</div>
</body></html>
"""

REJECTED_PAGE = """
<html><body>
<div class="alert alert-danger" role="alert">
  <ul><li>Kuota hari ini sudah habis, silakan coba lagi.</li></ul>
</div>
</body></html>
"""

EXPIRED_PAGE = "<html><head><title>Page Expired</title></head><body>419 | Page Expired</body></html>"

AMBIGUOUS_PAGE = "<html><body><p>Mohon tunggu, permintaan sedang diproses.</p></body></html>"

FORM_PAGE = """
<html><body>
<form method="POST" action="/">
  <input type="hidden" name="_token" value="tok-abc123">
  <input name="name"><input name="ktp"><input name="phone_number">
  <div id="captcha-box" class="captcha"> 7 K 2 P </div>
  <input name="captcha_input">
  <input type="checkbox" name="check"><input type="checkbox" name="check_2">
  <button type="submit">Daftar</button>
</form>
</body></html>
"""


class FakeFormClient:
    """
    Scripted form client.

    `script` maps identifier -> list of steps; each step is page text, a
    RawOutput, an exception instance (raised), or ("sleep", seconds).
    The last step repeats once the list runs out.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, default=SUCCESS_PAGE, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.calls: List[str] = []
        self.primed = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def prime(self, target, ctx):
        self.primed += 1
        ctx.anti_forgery_token = "tok"
        ctx.captured_challenge_text = "7K2P"

    def _next_step(self, identifier: str):
        steps = self.script.get(identifier)
        if not steps:
            return self.default
        if len(steps) > 1:
            return steps.pop(0)
        return steps[0]

    async def submit(self, target, values, ctx, timeout=None):
        identifier = values["identifier"]
        self.calls.append(identifier)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            step = self._next_step(identifier)
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(step, tuple) and step[0] == "sleep":
                await asyncio.sleep(step[1])
                return RawOutput(text=SUCCESS_PAGE, status_code=200)
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, RawOutput):
                return step
            return RawOutput(text=step, status_code=200)
        finally:
            self.in_flight -= 1


class FakeFallbackChecker:
    """Returns a fixed FallbackResult and counts calls."""

    def __init__(self, result: FallbackResult):
        self.result = result
        self.calls = 0

    async def check(self, record):
        self.calls += 1
        return self.result


# === Test Data Fixtures ===

@pytest.fixture
def pages():
    """Canned remote pages."""
    return SimpleNamespace(
        success=SUCCESS_PAGE,
        rejected=REJECTED_PAGE,
        expired=EXPIRED_PAGE,
        ambiguous=AMBIGUOUS_PAGE,
        form=FORM_PAGE,
    )


@pytest.fixture
def make_client():
    """Factory for scripted form clients."""
    return FakeFormClient


@pytest.fixture
def make_fallback():
    """Factory for fixed-answer fallback checkers."""
    return FakeFallbackChecker


@pytest.fixture
def record():
    return Record(identifier="3174012345678901", name="Budi Santoso", phone="081234567890")


@pytest.fixture
def raw_rows():
    """Raw input rows as a loader would return them."""
    return [
        {"name": " Budi Santoso ", "ktp": "3174-0123-4567-8901", "phone": "0812-3456-7890"},
        {"name": "Siti Aminah", "ktp": "3174019876543210", "phone": "081298765432"},
        {"name": "Budi Again", "ktp": "3174 0123 4567 8901", "phone": "081200000000"},
        {"name": "", "ktp": "3174011111111111", "phone": "081211111111"},
    ]


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def fallback_success():
    return FakeFallbackChecker(FallbackResult(
        status=FallbackStatus.SUCCESS, detail="terdaftar", confirmation_id="Q-77"
    ))


@pytest.fixture
def fallback_rejected():
    return FakeFallbackChecker(FallbackResult(
        status=FallbackStatus.REJECTED, detail="data tidak ditemukan"
    ))


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "resilience: Failure-mode and recovery tests")
    config.addinivalue_line("markers", "performance: Concurrency and throughput tests")
