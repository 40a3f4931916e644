"""
Delivery webhook service: receives relayed emails and answers with a quote.

The relay POSTs every job payload to ``/webhook/email``. The response body is
the acknowledgment the relay parses; ``ack`` is only true when the quote reply
was sent, so unpriced or failed emails stay unread and are retried.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, AsyncContextManager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .config_store import ConfigStore
from .graph import GraphMailClient
from .logger import configure_logging
from .models import EmailPayload
from .quoting import ExtractionError, PricingError, PrintIQClient, QuoteExtractor, QuoteResponder

logger = logging.getLogger(__name__)


def create_webhook_app(
    responder: QuoteResponder,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Build the webhook application around an already wired responder."""
    api = FastAPI(title="Quote Webhook", lifespan=lifespan)

    @api.post("/webhook/email")
    async def webhook_email(payload: EmailPayload):
        try:
            return await responder.process(payload)
        except (ExtractionError, PricingError) as exc:
            logger.error("Failed to process quote: %s", exc)
            return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})
        except Exception as exc:
            logger.exception("Webhook error")
            return JSONResponse(status_code=500, content={"ok": False, "error": str(exc) or type(exc).__name__})

    @api.get("/health")
    async def health():
        return {"ok": True}

    return api


def build_responder(settings: dict[str, object]) -> QuoteResponder:
    """Wire the responder collaborators from :func:`load_webhook_settings` output."""
    timeout = float(settings.get("request_timeout") or 10.0)
    config = ConfigStore(str(settings["data_dir"]))
    config.ensure_defaults()
    extractor = QuoteExtractor(
        str(settings.get("openai_api_key") or ""),
        model=str(settings.get("openai_model") or "gpt-4o-mini"),
    )
    pricing = PrintIQClient(
        str(settings.get("printiq_base_url") or ""),
        str(settings.get("printiq_user") or ""),
        str(settings.get("printiq_password") or ""),
        str(settings.get("printiq_app_name") or ""),
        str(settings.get("printiq_app_key") or ""),
        timeout=timeout,
    )
    mailer = None
    if settings.get("graph_tenant_id") and settings.get("graph_client_id") and settings.get("graph_client_secret"):
        mailer = GraphMailClient(
            str(settings["graph_tenant_id"]),
            str(settings["graph_client_id"]),
            str(settings["graph_client_secret"]),
            timeout=timeout,
        )
    else:
        logger.warning("Graph credentials missing: replies will not be sent")
    return QuoteResponder(
        extractor,
        pricing,
        mailer,
        config,
        reply_from=settings.get("reply_from"),
        reply_to=settings.get("reply_to_email"),
        customer_code=str(settings.get("customer_code") or "C00014"),
        quote_contact=settings.get("quote_contact") or {},
        debug_dir=f"{settings['data_dir']}/webhook-logs",
    )


def serve(settings: dict[str, object], log_level: str = "INFO") -> None:
    """Run the webhook service with uvicorn."""
    configure_logging(log_level)
    responder = build_responder(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Webhook listening on /webhook/email")
        yield

    app = create_webhook_app(responder, lifespan=lifespan)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
