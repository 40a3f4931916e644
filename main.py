import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from quote_relay.api import create_app
from quote_relay.config_store import ConfigStore
from quote_relay.core import RelayCore
from quote_relay.delivery import DeliveryPipeline
from quote_relay.graph import GraphMailClient
from quote_relay.ingest import MailboxPoller, SMTPIngestHandler, start_smtp_server
from quote_relay.logger import configure_logging, get_logger
from quote_relay.persistence import JobStore
from quote_relay.prometheus import RelayMetrics
from quote_relay.retry import RetryPolicy
from quote_relay.settings import load_settings


def build_service(
    settings: dict[str, object],
) -> tuple[RelayCore, ConfigStore, SMTPIngestHandler | None, GraphMailClient | None]:
    """Construct every collaborator explicitly from ``settings``."""
    logger = get_logger()
    data_dir = str(settings["data_dir"])
    store = JobStore(str(settings["db_path"]))
    metrics = RelayMetrics()
    config_store = ConfigStore(data_dir)

    graph = None
    if settings.get("graph_tenant_id") and settings.get("graph_client_id") and settings.get("graph_client_secret"):
        graph = GraphMailClient(
            str(settings["graph_tenant_id"]),
            str(settings["graph_client_id"]),
            str(settings["graph_client_secret"]),
            timeout=float(settings["webhook_timeout"]),
        )

    poller = None
    if settings.get("mailbox_enabled"):
        if graph is None or not settings.get("mailbox"):
            raise SystemExit("Mailbox polling needs QR_MAILBOX and the Graph credentials")
        poller = MailboxPoller(
            store,
            graph,
            str(settings["mailbox"]),
            folder=str(settings.get("mailbox_folder") or "Inbox"),
            fetch_limit=int(settings.get("mailbox_fetch_limit") or 10),
            folder_resolver=config_store.selected_folder,
        )

    pipeline = DeliveryPipeline(
        str(settings["webhook_url"]),
        timeout=float(settings["webhook_timeout"]),
        mailbox_client=graph,
    )
    core = RelayCore(
        store=store,
        pipeline=pipeline,
        poller=poller,
        retry_policy=RetryPolicy(
            base=float(settings["backoff_base"]),
            max_delay=float(settings["backoff_max"]),
            max_attempts=settings.get("max_attempts"),
        ),
        metrics=metrics,
        logger=logger,
        poll_interval=float(settings["poll_interval"]),
        batch_size=int(settings["batch_size"]),
        delete_on_success=bool(settings.get("delete_on_success")),
        test_mode=bool(settings.get("test_mode")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )

    smtp_handler = None
    if settings.get("smtp_enabled"):
        smtp_handler = SMTPIngestHandler(store, os.path.join(data_dir, "attachments"), metrics=metrics, logger=logger)
    return core, config_store, smtp_handler, graph


def build_lifespan(
    service: RelayCore,
    config_store: ConfigStore,
    smtp_handler: SMTPIngestHandler | None,
    settings: dict[str, object],
):
    """Startup/shutdown: the job store is initialised before SMTP accepts messages."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config_store.ensure_defaults()
        await service.start()
        smtp_server = None
        if smtp_handler is not None:
            smtp_server = await start_smtp_server(
                smtp_handler, str(settings["smtp_host"]), int(settings["smtp_port"])
            )
        yield
        if smtp_server is not None:
            smtp_server.close()
            await smtp_server.wait_closed()
        await service.stop()

    return lifespan


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(str(settings.get("log_level") or "INFO"), settings.get("log_dir"))
    service, config_store, smtp_handler, graph = build_service(settings)

    app = create_app(
        service,
        api_token=settings.get("api_token"),
        lifespan=build_lifespan(service, config_store, smtp_handler, settings),
        config_store=config_store,
        mailbox_client=graph,
        mailbox=settings.get("mailbox"),
        log_dir=settings.get("log_dir"),
    )

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
