from __future__ import annotations

import asyncio
import gc
import os

import pytest
from hypothesis import settings

from tlsmimic import certs
from tlsmimic import native
from tlsmimic.config import ContextBuilder
from tlsmimic.config import Side

settings.register_profile("fast", max_examples=10, deadline=None)
settings.register_profile("deep", max_examples=100_000, deadline=None)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))

skip_windows = pytest.mark.skipif(os.name == "nt", reason="Skipping due to Windows")


@pytest.fixture(scope="session")
def ca():
    """A throwaway CA: (private key, cryptography certificate)."""
    return certs.create_ca(organization="tlsmimic", cn="tlsmimic test CA")


@pytest.fixture(scope="session")
def ca_cert(ca) -> certs.Certificate:
    return certs.Certificate(ca[1])


@pytest.fixture(scope="session")
def server_key(ca) -> certs.PrivateKey:
    # dummy_cert reuses the CA's key pair.
    return certs.PrivateKey(ca[0])


@pytest.fixture(scope="session")
def server_cert(ca) -> certs.Certificate:
    key, cacert = ca
    return certs.dummy_cert(key, cacert, "example.com", ["example.com", "127.0.0.1"])


@pytest.fixture
def server_builder(server_cert, server_key) -> ContextBuilder:
    return (
        ContextBuilder(Side.SERVER)
        .certificate_chain([server_cert], server_key)
        .alpn_protocols([b"h2", b"http/1.1"])
        .keylog(None)
    )


@pytest.fixture
def client_builder(ca_cert) -> ContextBuilder:
    return (
        ContextBuilder(Side.CLIENT)
        .trust_certificates([ca_cert])
        .server_name("example.com")
        .keylog(None)
    )


@pytest.fixture
def server_context(server_builder):
    ctx = server_builder.build()
    yield ctx
    ctx.close()


@pytest.fixture
def client_context(client_builder):
    ctx = client_builder.build()
    yield ctx
    ctx.close()


@pytest.fixture
def no_leaks():
    """Fail the test if it leaves connections or BIO pairs behind."""
    gc.collect()
    before = {k: native.live_handles(k) for k in ("connection", "bio_pair")}
    yield
    gc.collect()
    after = {k: native.live_handles(k) for k in ("connection", "bio_pair")}
    assert after == before


class AsyncLogCaptureFixture:
    def __init__(self, caplog: pytest.LogCaptureFixture):
        self.caplog = caplog

    def set_level(self, level: int | str, logger: str | None = None) -> None:
        self.caplog.set_level(level, logger)

    async def await_log(self, text, timeout=2):
        await asyncio.sleep(0)
        for i in range(int(timeout / 0.01)):
            if text in self.caplog.text:
                return True
            else:
                await asyncio.sleep(0.01)
        raise AssertionError(f"Did not find {text!r} in log:\n{self.caplog.text}")

    def clear(self) -> None:
        self.caplog.clear()


@pytest.fixture
def caplog_async(caplog):
    return AsyncLogCaptureFixture(caplog)
