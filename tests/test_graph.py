import re

import pytest
from aioresponses import aioresponses
from yarl import URL

from quote_relay.graph import GraphError, GraphMailClient, convert_message

TOKEN_URL = "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
MESSAGES_RE = re.compile(r"^https://graph\.microsoft\.com/v1\.0/users/quotes@example\.com/mailFolders/Inbox/messages")
MESSAGE_URL = "https://graph.microsoft.com/v1.0/users/quotes@example.com/messages/AAMk-1"
SEND_URL = "https://graph.microsoft.com/v1.0/users/quotes@example.com/sendMail"
FOLDERS_RE = re.compile(r"^https://graph\.microsoft\.com/v1\.0/users/quotes@example\.com/mailFolders(\?.*)?$")


def make_client() -> GraphMailClient:
    return GraphMailClient("tenant-1", "client", "secret")


@pytest.mark.asyncio
async def test_token_is_cached_between_calls():
    client = make_client()
    with aioresponses() as m:
        m.post(TOKEN_URL, payload={"access_token": "tok-1", "expires_in": 3600})
        m.get(MESSAGES_RE, payload={"value": [{"id": "1"}]})
        m.get(MESSAGES_RE, payload={"value": []})

        first = await client.fetch_unread("quotes@example.com")
        second = await client.fetch_unread("quotes@example.com")

        token_calls = m.requests[("POST", URL(TOKEN_URL))]

    assert first == [{"id": "1"}]
    assert second == []
    assert len(token_calls) == 1
    assert token_calls[0].kwargs["data"]["grant_type"] == "client_credentials"


@pytest.mark.asyncio
async def test_fetch_sends_unread_filter_and_bearer():
    client = make_client()
    with aioresponses() as m:
        m.post(TOKEN_URL, payload={"access_token": "tok-1"})
        m.get(MESSAGES_RE, payload={"value": []})

        await client.fetch_unread("quotes@example.com", limit=3)

        [(key, calls)] = [(k, v) for k, v in m.requests.items() if k[0] == "GET"]

    assert key[1].query["$filter"] == "isRead eq false"
    assert key[1].query["$top"] == "3"
    assert calls[0].kwargs["headers"]["Authorization"] == "Bearer tok-1"


@pytest.mark.asyncio
async def test_token_error_raises():
    client = make_client()
    with aioresponses() as m:
        m.post(TOKEN_URL, status=400, body="invalid_client")
        with pytest.raises(GraphError) as excinfo:
            await client.fetch_unread("quotes@example.com")

    assert excinfo.value.status == 400
    assert "invalid_client" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unauthorized_response_drops_cached_token():
    client = make_client()
    with aioresponses() as m:
        m.post(TOKEN_URL, payload={"access_token": "old"})
        m.post(TOKEN_URL, payload={"access_token": "new"})
        m.patch(MESSAGE_URL, status=401, body="expired")
        m.patch(MESSAGE_URL, status=200, payload={})

        with pytest.raises(GraphError):
            await client.mark_read("quotes@example.com", "AAMk-1")
        await client.mark_read("quotes@example.com", "AAMk-1")

        calls = m.requests[("PATCH", URL(MESSAGE_URL))]

    assert calls[-1].kwargs["headers"]["Authorization"] == "Bearer new"
    assert calls[-1].kwargs["json"] == {"isRead": True}


@pytest.mark.asyncio
async def test_send_mail_builds_recipients():
    client = make_client()
    with aioresponses() as m:
        m.post(TOKEN_URL, payload={"access_token": "tok"})
        m.post(SEND_URL, status=202, body="")

        result = await client.send_mail("quotes@example.com", "a@example.com, b@example.com", "Re: RFQ", "<p>hi</p>")

        body = m.requests[("POST", URL(SEND_URL))][0].kwargs["json"]

    assert result == {"ok": True, "to": "a@example.com, b@example.com"}
    assert [r["emailAddress"]["address"] for r in body["message"]["toRecipients"]] == ["a@example.com", "b@example.com"]
    assert body["message"]["body"] == {"contentType": "HTML", "content": "<p>hi</p>"}


def test_convert_message_handles_missing_fields():
    payload = convert_message({"id": "x", "subject": None, "attachments": [{"name": "a.pdf"}, "junk"]}, "box@example.com")

    assert payload.from_addr == ""
    assert payload.subject == ""
    assert payload.html == ""
    assert [a.filename for a in payload.attachments] == ["a.pdf"]
    assert payload.source.model_dump() == {"kind": "mailbox", "mailbox": "box@example.com", "message_id": "x"}


@pytest.mark.asyncio
async def test_list_folders_formats_records():
    client = make_client()
    with aioresponses() as m:
        m.post(TOKEN_URL, payload={"access_token": "tok"})
        m.get(
            FOLDERS_RE,
            payload={
                "value": [
                    {"id": "AQMk-inbox", "displayName": "Inbox", "unreadItemCount": 3, "totalItemCount": 40},
                    {"id": "AQMk-rfq"},
                ]
            },
        )

        folders = await client.list_folders("quotes@example.com")

        [key] = [k for k in m.requests if k[0] == "GET"]

    assert key[1].query["$top"] == "100"
    assert folders == [
        {"id": "AQMk-inbox", "name": "Inbox", "unreadItemCount": 3, "totalItemCount": 40},
        {"id": "AQMk-rfq", "name": "Unknown", "unreadItemCount": 0, "totalItemCount": 0},
    ]
