from __future__ import annotations

import pytest

from test.wsconnect import tutils
from wsconnect import backends
from wsconnect.options import ConnectOptions
from wsconnect.tls import TlsConnector


@pytest.fixture(scope="session")
def certs(tmp_path_factory) -> tutils.Certs:
    """A CA and a leaf certificate for example.com and 127.0.0.1."""
    return tutils.write_certs(
        tmp_path_factory.mktemp("certs"), ["example.com", "127.0.0.1"]
    )


@pytest.fixture
def tls_options(certs) -> ConnectOptions:
    """Options that trust the test CA."""
    return ConnectOptions(connector=TlsConnector(ca_file=certs.ca_file))


@pytest.fixture
def no_tls():
    """Run the test in a deployment without TLS backend."""
    previous = backends.tls_backend()
    backends.configure("none")
    yield
    backends.configure(previous)
