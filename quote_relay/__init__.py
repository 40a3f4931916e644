"""Durable job queue relaying request-for-quote emails to a delivery webhook.

Inbound messages (SMTP listener or mailbox poller) become jobs in a SQLite
store; :class:`quote_relay.core.RelayCore` claims them and runs the delivery
pipeline with exponential backoff until the webhook acknowledges them.
"""

__version__ = "0.1.0"
