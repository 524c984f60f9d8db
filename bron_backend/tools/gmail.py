"""Gmail REST client over httpx.

Every call returns a plain dict; failures come back as ``{"error": ...}`` so
they can be fed to the agent as tool results.
"""

from __future__ import annotations

import asyncio
import base64
from email.message import EmailMessage
from email.policy import SMTP
from typing import Any, Protocol

import httpx

from ..core.logging import get_logger

logger = get_logger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
NOT_CONNECTED = "Gmail not connected"


class TokenProvider(Protocol):
    """Source of OAuth access tokens; acquisition and refresh live elsewhere."""

    async def get_access_token(self) -> str | None: ...


class StaticTokenProvider:
    def __init__(self, token: str | None = None):
        self._token = token or None

    async def get_access_token(self) -> str | None:
        return self._token

    def set_token(self, token: str | None) -> None:
        self._token = token or None


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def encode_base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def parse_headers(headers: list[dict[str, str]]) -> dict[str, str]:
    return {h["name"].lower(): h["value"] for h in headers if "name" in h}


def parse_message(data: dict[str, Any]) -> dict[str, Any]:
    payload = data.get("payload") or {}
    headers = parse_headers(payload.get("headers") or [])
    attachments: list[dict[str, Any]] = []
    body = {"text": "", "html": ""}

    def walk(parts: list[dict[str, Any]]) -> None:
        for part in parts:
            part_body = part.get("body") or {}
            if part.get("filename") and part_body.get("attachmentId"):
                attachments.append(
                    {
                        "attachmentId": part_body["attachmentId"],
                        "filename": part["filename"],
                        "mimeType": part.get("mimeType", "application/octet-stream"),
                        "size": part_body.get("size", 0),
                    }
                )
            elif part.get("mimeType") == "text/plain" and part_body.get("data"):
                body["text"] = decode_base64url(part_body["data"])
            elif part.get("mimeType") == "text/html" and part_body.get("data"):
                body["html"] = decode_base64url(part_body["data"])
            elif part.get("parts"):
                walk(part["parts"])

    if payload.get("parts"):
        walk(payload["parts"])
    elif (payload.get("body") or {}).get("data"):
        body["text"] = decode_base64url(payload["body"]["data"])

    return {
        "id": data.get("id"),
        "threadId": data.get("threadId"),
        "labelIds": data.get("labelIds") or [],
        "snippet": data.get("snippet") or "",
        "headers": {
            "subject": headers.get("subject", ""),
            "from": headers.get("from", ""),
            "to": headers.get("to", ""),
            "date": headers.get("date", ""),
            "cc": headers.get("cc"),
        },
        "body": body,
        "attachments": attachments,
    }


def find_attachment_meta(data: dict[str, Any], attachment_id: str) -> dict[str, str] | None:
    def search(parts: list[dict[str, Any]]) -> dict[str, str] | None:
        for part in parts:
            if (part.get("body") or {}).get("attachmentId") == attachment_id:
                return {"filename": part.get("filename", ""), "mimeType": part.get("mimeType", "")}
            if part.get("parts"):
                found = search(part["parts"])
                if found:
                    return found
        return None

    return search((data.get("payload") or {}).get("parts") or [])


def build_raw_message(to: str, subject: str, body_text: str, cc: list[str] | None = None) -> str:
    """RFC 2822 message, base64url encoded without padding."""
    message = EmailMessage(policy=SMTP)
    message["To"] = to
    message["Subject"] = subject
    if cc:
        message["Cc"] = ", ".join(cc)
    message.set_content(body_text, charset="utf-8")
    return encode_base64url(message.as_bytes())


class GmailClient:
    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = GMAIL_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._tokens = token_provider
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def is_connected(self) -> bool:
        return bool(await self._tokens.get_access_token())

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        fallback_error: str,
        **kwargs: Any,
    ) -> tuple[dict[str, Any] | None, str | None]:
        try:
            response = await self.client.request(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.warning("Gmail request failed", data={"path": path, "error": str(exc)})
            return None, str(exc) or fallback_error
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            return None, message or fallback_error
        return data, None

    async def search(self, query: str, max_results: int = 10) -> dict[str, Any]:
        token = await self._tokens.get_access_token()
        if not token:
            return {"messages": [], "error": NOT_CONNECTED}

        data, error = await self._request(
            "GET", "/messages", token, "Search failed", params={"q": query, "maxResults": max_results}
        )
        if error:
            return {"messages": [], "error": error}

        ids = [m["id"] for m in (data.get("messages") or [])][:max_results]
        details = await asyncio.gather(*(self._message_metadata(token, mid) for mid in ids))
        return {"messages": [d for d in details if d is not None]}

    async def _message_metadata(self, token: str, message_id: str) -> dict[str, Any] | None:
        data, error = await self._request(
            "GET",
            f"/messages/{message_id}",
            token,
            "Failed to get message",
            params=[
                ("format", "metadata"),
                ("metadataHeaders", "Subject"),
                ("metadataHeaders", "From"),
                ("metadataHeaders", "Date"),
            ],
        )
        if error:
            return None
        headers = parse_headers((data.get("payload") or {}).get("headers") or [])
        return {
            "messageId": data.get("id"),
            "threadId": data.get("threadId"),
            "subject": headers.get("subject") or "(no subject)",
            "from": headers.get("from", ""),
            "date": headers.get("date", ""),
            "snippet": data.get("snippet") or "",
        }

    async def get_message(self, message_id: str, format: str = "full") -> dict[str, Any]:
        token = await self._tokens.get_access_token()
        if not token:
            return {"error": NOT_CONNECTED}
        data, error = await self._request(
            "GET", f"/messages/{message_id}", token, "Failed to get message", params={"format": format}
        )
        if error:
            return {"error": error}
        return {"message": parse_message(data)}

    async def get_attachment(self, message_id: str, attachment_id: str) -> dict[str, Any]:
        token = await self._tokens.get_access_token()
        if not token:
            return {"error": NOT_CONNECTED}

        message, error = await self._request(
            "GET", f"/messages/{message_id}", token, "Failed to get message", params={"format": "full"}
        )
        if error:
            return {"error": "Failed to get message"}
        meta = find_attachment_meta(message, attachment_id)
        if not meta:
            return {"error": "Attachment not found"}

        data, error = await self._request(
            "GET", f"/messages/{message_id}/attachments/{attachment_id}", token, "Failed to get attachment"
        )
        if error:
            return {"error": error}
        return {
            "attachment": {
                "attachmentId": attachment_id,
                "filename": meta["filename"],
                "mimeType": meta["mimeType"],
                "size": data.get("size", 0),
                "data": data.get("data", ""),
            }
        }

    async def create_draft(
        self,
        to: str,
        subject: str,
        body_text: str,
        cc: list[str] | None = None,
        thread_id: str | None = None,
    ) -> dict[str, Any]:
        token = await self._tokens.get_access_token()
        if not token:
            return {"error": NOT_CONNECTED}

        body: dict[str, Any] = {"message": {"raw": build_raw_message(to, subject, body_text, cc)}}
        if thread_id:
            body["message"]["threadId"] = thread_id

        data, error = await self._request("POST", "/drafts", token, "Failed to create draft", json=body)
        if error:
            return {"error": error}
        return {"draft": data}

    async def send_draft(self, draft_id: str) -> dict[str, Any]:
        token = await self._tokens.get_access_token()
        if not token:
            return {"error": NOT_CONNECTED}
        data, error = await self._request("POST", "/drafts/send", token, "Failed to send draft", json={"id": draft_id})
        if error:
            return {"error": error}
        return {"messageId": data.get("id")}
