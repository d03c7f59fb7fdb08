"""
PAdES signing tests
"""
import asyncio
import time
import pytest
from io import BytesIO

from pyhanko.pdf_utils.reader import PdfFileReader

from app.services import signing_engine
from app.services.report_renderer import RenderContext, render_report_pdf
from app.services.signing_engine import (
    SIGNATURE_FIELD_NAME,
    SignerMetadata,
    SigningEngine,
    SigningFailed,
    password_variants,
)
from conftest import CERT_PASSWORD


META = SignerMetadata(name="Dr. João da Silva", reason="Assinatura Digital Laudo Médico", location="Sistema LaudoFy")


@pytest.fixture(scope="module")
def unsigned_pdf() -> bytes:
    return render_report_pdf(RenderContext(report_id="1", conclusion="Normal.", physician_name="Dr. João"))


class RecordingStore:
    def __init__(self):
        self.calls = []

    async def record_usage(self, certificate_id, success, report_id=None, reason=None):
        self.calls.append((certificate_id, success, report_id, reason))


@pytest.mark.unit
def test_password_variants_order_and_dedup():
    assert password_variants(" Senha ") == [
        ("original", " Senha "),
        ("trimmed", "Senha"),
        ("lowercase", " senha "),
        ("uppercase", " SENHA "),
        ("empty", ""),
    ]
    assert password_variants("abc") == [("original", "abc"), ("uppercase", "ABC"), ("empty", "")]
    assert password_variants(None) == [("original", "")]


@pytest.mark.unit
async def test_sign_embeds_signature_field(unsigned_pdf, pkcs12_bytes):
    store = RecordingStore()
    engine = SigningEngine(store, timeout_seconds=60)

    signed = await engine.sign(unsigned_pdf, pkcs12_bytes, CERT_PASSWORD, META, certificate_id=3, report_id=9)

    assert signed.password_variant == "original"
    assert signed.pdf_bytes.startswith(unsigned_pdf)  # incremental update
    reader = PdfFileReader(BytesIO(signed.pdf_bytes), strict=False)
    assert [sig.field_name for sig in reader.embedded_signatures] == [SIGNATURE_FIELD_NAME]
    assert store.calls == [(3, True, 9, None)]


@pytest.mark.unit
async def test_password_with_incidental_whitespace(unsigned_pdf, pkcs12_bytes):
    engine = SigningEngine(timeout_seconds=60)
    signed = await engine.sign(unsigned_pdf, pkcs12_bytes, f"  {CERT_PASSWORD} \n", META)
    assert signed.password_variant == "trimmed"


@pytest.mark.unit
async def test_password_stored_in_uppercase(unsigned_pdf, pkcs12_bytes):
    engine = SigningEngine(timeout_seconds=60)
    signed = await engine.sign(unsigned_pdf, pkcs12_bytes, CERT_PASSWORD.upper(), META)
    assert signed.password_variant == "lowercase"


@pytest.mark.unit
async def test_all_variants_fail(unsigned_pdf, pkcs12_bytes):
    store = RecordingStore()
    engine = SigningEngine(store, timeout_seconds=60)

    with pytest.raises(SigningFailed) as exc_info:
        await engine.sign(unsigned_pdf, pkcs12_bytes, "outra-senha", META, certificate_id=3, report_id=9)

    assert len(exc_info.value.reasons) == len(password_variants("outra-senha"))
    assert store.calls[0][:3] == (3, False, 9)


@pytest.mark.unit
async def test_timeout_is_a_signing_failure(unsigned_pdf, pkcs12_bytes, monkeypatch):
    store = RecordingStore()
    engine = SigningEngine(store, timeout_seconds=0.05)

    def slow_sign(*args, **kwargs):
        time.sleep(1)
        return b""

    monkeypatch.setattr(engine, "_sign_once", slow_sign)

    with pytest.raises(SigningFailed):
        await engine.sign(unsigned_pdf, pkcs12_bytes, CERT_PASSWORD, META, certificate_id=3)
    assert store.calls[0][1] is False


@pytest.mark.unit
async def test_slow_certificate_parse_does_not_block_the_loop(unsigned_pdf, pkcs12_bytes, monkeypatch):
    engine = SigningEngine(timeout_seconds=0.2)

    real_load = signing_engine.load_key_material

    def blocking_load(pkcs12, password):
        time.sleep(1.5)
        return real_load(pkcs12, password)

    monkeypatch.setattr(signing_engine, "load_key_material", blocking_load)

    gaps = []

    async def heartbeat():
        last = time.monotonic()
        while True:
            await asyncio.sleep(0.02)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    ticker = asyncio.create_task(heartbeat())
    started = time.monotonic()
    try:
        with pytest.raises(SigningFailed) as exc_info:
            await engine.sign(unsigned_pdf, pkcs12_bytes, CERT_PASSWORD, META)
    finally:
        ticker.cancel()
    elapsed = time.monotonic() - started

    assert "tempo limite" in str(exc_info.value)
    assert elapsed < 1.0
    assert max(gaps) < 0.5


@pytest.mark.unit
async def test_corrupted_pdf_fails(pkcs12_bytes):
    engine = SigningEngine(timeout_seconds=60)
    with pytest.raises(SigningFailed):
        await engine.sign(b"%PDF-1.4 broken", pkcs12_bytes, CERT_PASSWORD, META)
