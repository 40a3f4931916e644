"""Pydantic models shared by the relay, the webhook and the CLI.

Models:
    - JobStatus: lifecycle states of a queued job
    - Attachment / MessageSource / EmailPayload: the payload captured from a message
    - Job: a persisted job row
    - Acknowledgment: the typed body returned by the delivery webhook
    - Delivered / RetryableFailure / TerminalFailure: delivery attempt outcomes
    - Kind / ExtractedQuote / PriceInfo: quote extraction and pricing results
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    ValidationError,
    field_validator,
)


class JobStatus(str, Enum):
    """Lifecycle states of a job.

    Attributes:
        PENDING: Waiting to be claimed (possibly scheduled in the future).
        PROCESSING: Claimed by a dispatch cycle, attempt in flight.
        DONE: Delivered and acknowledged end to end.
        ERROR: Soft-terminal failure kept for operator inspection.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class Attachment(BaseModel):
    """Attachment saved to disk (SMTP) or described by the mail provider."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    filename: str | None = None
    path: str | None = None
    content_type: str | None = Field(default=None, alias="contentType")
    size: int | None = None


class MessageSource(BaseModel):
    """Where a payload came from, used to acknowledge the origin after delivery."""

    kind: Literal["smtp", "mailbox"] = "smtp"
    mailbox: str | None = None
    message_id: str | None = None


class EmailPayload(BaseModel):
    """Payload stored for each captured message and posted to the webhook."""

    model_config = ConfigDict(populate_by_name=True)

    from_addr: str = Field(default="", alias="from")
    subject: str = ""
    text: str = ""
    html: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    raw: str = ""
    source: MessageSource | None = None

    def to_json_dict(self) -> dict[str, Any]:
        """Return the wire representation (``from`` and ``contentType`` keys)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Job(BaseModel):
    """A persisted job row. Timestamps are epoch milliseconds."""

    id: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    next_run_at: int
    created_at: int
    payload: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, v: Any) -> Any:
        """Accept the serialized column value as stored by the job store."""
        if v is None:
            return {}
        if isinstance(v, (str, bytes)):
            try:
                decoded = json.loads(v)
            except json.JSONDecodeError:
                return {"raw_payload": v if isinstance(v, str) else v.decode("utf-8", "replace")}
            return decoded if isinstance(decoded, dict) else {"value": decoded}
        return v

    @property
    def source(self) -> MessageSource | None:
        data = self.payload.get("source")
        if not isinstance(data, dict):
            return None
        try:
            return MessageSource.model_validate(data)
        except ValidationError:
            return None


# --------------------------------------------------------------------------- ack
class AckParseError(ValueError):
    """Raised when a webhook response body is not a valid acknowledgment."""

    def __init__(self, message: str, body: str = ""):
        super().__init__(message)
        self.body = body


class Acknowledgment(BaseModel):
    """Body returned by the delivery webhook on HTTP success.

    ``ack`` is the explicit signal that the side effect (reply sent) completed.
    Older webhook deployments send it as ``shouldMarkAsRead``; both spellings are accepted.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    ok: Any = None
    ack: Annotated[
        StrictBool | None,
        Field(
            default=None,
            validation_alias=AliasChoices("ack", "shouldMarkAsRead", "should_mark_as_read"),
        ),
    ]
    reason: Any = None
    error: Any = None

    @property
    def confirmed(self) -> bool:
        return self.ack is True

    @classmethod
    def parse(cls, body: str) -> Acknowledgment:
        """Validate ``body`` as JSON acknowledgment or raise :class:`AckParseError`."""
        try:
            data = json.loads(body)
        except (TypeError, json.JSONDecodeError) as exc:
            raise AckParseError(f"acknowledgment is not valid JSON: {exc}", body) from exc
        if not isinstance(data, dict):
            raise AckParseError("acknowledgment must be a JSON object", body)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise AckParseError(f"invalid acknowledgment: {exc.errors()[0]['msg']}", body) from exc

    def describe(self) -> str:
        """Short diagnostic text used when the ack does not confirm delivery."""
        detail = self.reason or self.error
        if not detail:
            reply = getattr(self, "replyResult", None) or getattr(self, "reply_result", None)
            if isinstance(reply, dict):
                detail = reply.get("reason") or reply.get("error")
        if detail and not isinstance(detail, str):
            detail = json.dumps(detail, default=str)
        return f"not acknowledged: {detail or 'ack flag missing or false'}"


# ---------------------------------------------------------------------- outcomes
@dataclass(frozen=True)
class Delivered:
    """Every step succeeded, the job can be finalized."""

    detail: str = ""


@dataclass(frozen=True)
class RetryableFailure:
    """The attempt failed but the job must be retried later."""

    reason: str


@dataclass(frozen=True)
class TerminalFailure:
    """The job must not be retried automatically."""

    reason: str


DeliveryOutcome = Union[Delivered, RetryableFailure, TerminalFailure]


# ------------------------------------------------------------------------ quotes
_NUMBER_RE = re.compile(r"-?\d+(\.\d+)?")


def safe_number(value: Any) -> float | None:
    """Return the first number found in ``value`` (``"1,000 mm"`` -> 1000.0)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[,\s]+", "", str(value))
    match = _NUMBER_RE.search(cleaned)
    if not match:
        return None
    return float(match.group(0))


class Kind(BaseModel):
    kind: str = ""
    count: float = 0

    @field_validator("count", mode="before")
    @classmethod
    def loose_count(cls, v: Any) -> Any:
        return safe_number(v) or 0


class ExtractedQuote(BaseModel):
    """Compact fields extracted from a request-for-quote email."""

    model_config = ConfigDict(extra="allow")

    rfq_no: str = ""
    title: str = ""
    prod: str = ""
    width: float | None = None
    height: float | None = None
    kinds: list[Kind] = Field(default_factory=list)
    print: str = ""
    stock: str = ""
    finish: str = ""
    packing: str = ""
    delivery: str = ""
    quantity: float = 0

    @field_validator("rfq_no", "title", "prod", "print", "stock", "finish", "packing", "delivery", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("kinds", mode="before")
    @classmethod
    def normalise_kinds(cls, v: Any) -> Any:
        if not v:
            return []
        kinds = []
        for item in v:
            if isinstance(item, str):
                item = {"kind": item, "count": 0}
            if isinstance(item, dict) and str(item.get("kind") or "").strip():
                kinds.append({"kind": str(item["kind"]).strip(), "count": item.get("count") or 0})
        return kinds

    @field_validator("width", "height", mode="before")
    @classmethod
    def loose_dimension(cls, v: Any) -> Any:
        return safe_number(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def loose_quantity(cls, v: Any) -> Any:
        return safe_number(v) or 0


class PriceInfo(BaseModel):
    """Price extracted from a pricing backend response."""

    price: float | None = None
    qty: str | int | float | None = None
    quote_no: str = ""
