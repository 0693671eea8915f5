"""Root conftest — shared pytest markers and global settings.

Markers
-------
unit        fast, no network, pure logic (temp dirs allowed)
slow        expected to take > 5 seconds
oracle      requires a live OpenAI-compatible oracle (set KILN_TEST_ORACLE=1)
"""

from __future__ import annotations

import os
import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, no network tests")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")
    config.addinivalue_line("markers", "oracle: requires a live oracle server")


# ── Skip guards ───────────────────────────────────────────────────────────────

requires_oracle = pytest.mark.skipif(
    not os.getenv("KILN_TEST_ORACLE"),
    reason="Set KILN_TEST_ORACLE=1 to run tests against a live oracle",
)
