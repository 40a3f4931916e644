"""Quote responder and webhook endpoint tests with dummy collaborators."""

import pytest
from fastapi.testclient import TestClient

from quote_relay.config_store import ConfigStore
from quote_relay.models import EmailPayload, ExtractedQuote, PriceInfo
from quote_relay.quoting import ExtractionError, PricingError, QuoteResponder
from quote_relay.quoting.responder import email_text, render_reply
from quote_relay.webhook import create_webhook_app


class DummyExtractor:
    def __init__(self, quote=None, error: Exception | None = None):
        self.quote = quote or ExtractedQuote(rfq_no="55", title="Posters", prod="Poster", width=420, height=594, quantity=100)
        self.error = error
        self.texts = []

    async def extract(self, raw_text):
        self.texts.append(raw_text)
        if self.error is not None:
            raise self.error
        return self.quote


class DummyPricing:
    def __init__(self, price=None, error: Exception | None = None):
        self.price = price
        self.error = error
        self.requests = []

    async def quote(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return 200, {"QuoteDetails": {}}, self.price


class DummyMailer:
    def __init__(self, error: Exception | None = None):
        self.sent = []
        self.error = error

    async def send_mail(self, sender, to, subject, html_body):
        if self.error is not None:
            raise self.error
        self.sent.append((sender, to, subject, html_body))
        return {"ok": True, "to": to}


PAYLOAD = EmailPayload.model_validate(
    {"from": "buyer@example.com", "subject": "RFQ #55 Posters", "text": "100 A2 posters", "raw": ""}
)


def make_responder(tmp_path, *, extractor=None, pricing=None, mailer="default", **kwargs):
    config = ConfigStore(str(tmp_path / "data"))
    config.ensure_defaults()
    return QuoteResponder(
        extractor or DummyExtractor(),
        pricing or DummyPricing(PriceInfo(price=3.1, qty=100, quote_no="Q-9")),
        DummyMailer() if mailer == "default" else mailer,
        config,
        reply_from="quotes@example.com",
        **kwargs,
    )


def test_email_text_puts_subject_first():
    assert email_text(PAYLOAD).startswith("RFQ #55 Posters\n\n100 A2 posters")


def test_render_reply_escapes_and_flags_default_stock():
    body = render_reply(ExtractedQuote(prod="<b>Poster</b>"), PriceInfo(price=2, qty=10, quote_no="Q1"), False)
    assert "&lt;b&gt;Poster&lt;/b&gt;" in body
    assert "2.00 (ex GST)" in body
    assert "Default stock is used" in body
    assert "<li><strong>STOCK:</strong> Not specified</li>" in body


@pytest.mark.asyncio
async def test_priced_quote_is_replied_and_acknowledged(tmp_path):
    responder = make_responder(tmp_path, debug_dir=str(tmp_path / "logs"))

    result = await responder.process(PAYLOAD)

    assert result["ack"] is True
    assert result["price_info"]["quote_no"] == "Q-9"
    [(sender, to, subject, body)] = responder.mailer.sent
    assert sender == "quotes@example.com"
    assert to == "buyer@example.com"
    assert subject == "55 Posters / Poster"
    assert "Q-9" in body
    dumps = sorted(p.name.split("-")[0] for p in (tmp_path / "logs").iterdir())
    assert dumps == ["create", "payload"]


@pytest.mark.asyncio
async def test_reply_to_override(tmp_path):
    responder = make_responder(tmp_path, reply_to="desk@example.com")
    await responder.process(PAYLOAD)
    assert responder.mailer.sent[0][1] == "desk@example.com"


@pytest.mark.asyncio
async def test_missing_price_is_not_acknowledged(tmp_path):
    responder = make_responder(tmp_path, pricing=DummyPricing(None))

    result = await responder.process(PAYLOAD)

    assert result["ok"] is True
    assert result["ack"] is False
    assert result["reply_result"] == {"ok": False, "reason": "no-price-found"}
    assert responder.mailer.sent == []


@pytest.mark.asyncio
async def test_send_failure_is_reported_not_raised(tmp_path):
    responder = make_responder(tmp_path, mailer=DummyMailer(error=RuntimeError("550 rejected")))

    result = await responder.process(PAYLOAD)

    assert result["ack"] is False
    assert result["reply_result"] == {"ok": False, "error": "550 rejected"}


@pytest.mark.asyncio
async def test_without_mailer_reply_is_skipped(tmp_path):
    responder = make_responder(tmp_path, mailer=None)

    result = await responder.process(PAYLOAD)

    assert result["reply_result"]["reason"] == "mailer-not-configured"
    assert result["ack"] is False


def test_webhook_endpoint_returns_acknowledgment(tmp_path):
    client = TestClient(create_webhook_app(make_responder(tmp_path)))

    response = client.post("/webhook/email", json=PAYLOAD.to_json_dict())

    assert response.status_code == 200
    assert response.json()["ack"] is True
    assert client.get("/health").json() == {"ok": True}


@pytest.mark.parametrize(
    "extractor, pricing",
    [
        (DummyExtractor(error=ExtractionError("No JSON found in model response.")), None),
        (None, DummyPricing(error=PricingError("failed to obtain printiq token: "))),
        (DummyExtractor(error=KeyError("boom")), None),
    ],
)
def test_webhook_failures_return_500(tmp_path, extractor, pricing):
    responder = make_responder(tmp_path, extractor=extractor, pricing=pricing)
    client = TestClient(create_webhook_app(responder))

    response = client.post("/webhook/email", json=PAYLOAD.to_json_dict())

    assert response.status_code == 500
    assert response.json()["ok"] is False
    assert response.json()["error"]
