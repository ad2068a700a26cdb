"""Shared test configuration."""

import pytest

from helpers import make_tls_files
from wstunnel.logs import TRACE


@pytest.fixture
def tls(tmp_path):
    """CA bundle plus a CA-signed server certificate for 127.0.0.1/localhost."""
    return make_tls_files(tmp_path)


@pytest.fixture(autouse=True)
def _trace_logging(caplog):
    # Exercise the per-chunk log lines in every test
    caplog.set_level(TRACE, logger="wstunnel")
