"""Turn one relayed email into a priced quote and a reply to the sender."""

from __future__ import annotations

import html
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from ..config_store import ConfigStore
from ..models import EmailPayload, ExtractedQuote, PriceInfo
from ..persistence import now_ms
from .builder import DEFAULT_CUSTOMER_CODE, build_quote_request
from .extractor import QuoteExtractor
from .pricing import PrintIQClient

logger = logging.getLogger(__name__)


class MailSender(Protocol):
    async def send_mail(self, sender: str, to: str, subject: str, html_body: str) -> Dict[str, Any]: ...


def email_text(payload: EmailPayload) -> str:
    """Text handed to the extractor: subject first, so the title rule can find it."""
    return f"{payload.subject}\n\n{payload.text}\n\n{payload.raw}"


def render_reply(extracted: ExtractedQuote, price: PriceInfo, stock_mapping_used: bool) -> str:
    def field(value: str) -> str:
        return html.escape(value) if value else "Not specified"

    note = ""
    if not stock_mapping_used:
        note = '<p><strong style="color: red;">Default stock is used as the mapping is not available.</strong></p>'
    return (
        f"<p>Quote Created: <strong>{html.escape(price.quote_no)}</strong>.</p>\n"
        f"<p><strong>Estimated unit price:</strong> {float(price.price):.2f} (ex GST)<br/>"
        f"<strong>Quantity:</strong> {html.escape(str(price.qty or ''))}</p>\n"
        "<p><strong>Information received from client:</strong></p>\n"
        "<ul>\n"
        f"<li><strong>PROD:</strong> {field(extracted.prod)}</li>\n"
        f"<li><strong>PRINT:</strong> {field(extracted.print)}</li>\n"
        f"<li><strong>STOCK:</strong> {field(extracted.stock)}</li>\n"
        f"<li><strong>FINISH:</strong> {field(extracted.finish)}</li>\n"
        f"<li><strong>PACKING:</strong> {field(extracted.packing)}</li>\n"
        "</ul>\n"
        f"{note}"
    )


class QuoteResponder:
    """Extract, price and reply. The returned dict is the webhook acknowledgment.

    ``ack`` is ``True`` only when the reply left the building, which is what
    tells the relay it may mark the source message read.
    """

    def __init__(
        self,
        extractor: QuoteExtractor,
        pricing: PrintIQClient,
        mailer: Optional[MailSender],
        config: ConfigStore,
        *,
        reply_from: Optional[str] = None,
        reply_to: Optional[str] = None,
        customer_code: str = DEFAULT_CUSTOMER_CODE,
        quote_contact: Optional[Dict[str, Any]] = None,
        debug_dir: Optional[str] = None,
    ):
        self.extractor = extractor
        self.pricing = pricing
        self.mailer = mailer
        self.config = config
        self.reply_from = reply_from
        self.reply_to = reply_to
        self.customer_code = customer_code
        self.quote_contact = quote_contact or {}
        self.debug_dir = Path(debug_dir) if debug_dir else None

    def _dump(self, name: str, data: Any) -> None:
        if self.debug_dir is None:
            return
        self.debug_dir.mkdir(parents=True, exist_ok=True)
        (self.debug_dir / name).write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")

    async def _reply(self, to: str, subject: str, body: str) -> Dict[str, Any]:
        if self.mailer is None or not self.reply_from:
            return {"ok": False, "reason": "mailer-not-configured"}
        if not to:
            return {"ok": False, "reason": "no-recipient"}
        try:
            return await self.mailer.send_mail(self.reply_from, to, subject, body)
        except Exception as exc:
            logger.error("Error sending reply via Graph: %s", exc)
            return {"ok": False, "error": str(exc)}

    async def process(self, payload: EmailPayload) -> Dict[str, Any]:
        """Handle one email. Extraction and pricing errors propagate."""
        text = email_text(payload)
        logger.info("Incoming email from: %s subject: %s", payload.from_addr, payload.subject)

        extracted = await self.extractor.extract(text)
        request, stock_mapping_used = build_quote_request(
            extracted,
            text,
            self.config,
            customer_code=self.customer_code,
            quote_contact=self.quote_contact,
        )
        stamp = now_ms()
        self._dump(f"payload-{stamp}.json", request)

        status, body, price = await self.pricing.quote(request)
        self._dump(f"create-{stamp}.json", {"status": status, "body": body})

        reply_result: Dict[str, Any] = {"ok": False, "reason": "no-price-found"}
        if price is not None and price.price is not None:
            subject = request["JobTitle"] or f"ADS-ColesDraftQuotes {extracted.title or 'Quote'} - {price.quote_no}"
            reply_result = await self._reply(
                self.reply_to or payload.from_addr,
                subject,
                render_reply(extracted, price, stock_mapping_used),
            )
        else:
            logger.warning("No price found in pricing response (status %s), not sending reply", status)

        return {
            "ok": True,
            "create_result": {"status": status, "body": body},
            "price_info": price.model_dump() if price is not None else None,
            "stock_mapping_used": stock_mapping_used,
            "reply_result": reply_result,
            "ack": reply_result.get("ok") is True,
        }
