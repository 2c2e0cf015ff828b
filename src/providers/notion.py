import base64
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .base import BaseHTTPClient, MalformedResponseError

logger = logging.getLogger(__name__)

NOTION_VERSION = "2022-06-28"
NOTION_TIMEOUT = 10.0

REQUIRED_TRADE_FIELDS = ("symbol", "action", "quantity", "price", "datetime")
VALID_ACTIONS = ("BUY", "SELL", "SHORT", "COVER")

TRADE_DATABASE_PROPERTIES: Dict[str, Any] = {
    "Symbol": {"title": {}},
    "Action": {"select": {"options": [{"name": a} for a in VALID_ACTIONS]}},
    "Quantity": {"number": {}},
    "Entry Price": {"number": {}},
    "Trade Date": {"date": {}},
    "Commission": {"number": {}},
    "Broker": {"select": {}},
    "Sync Status": {"select": {"options": [{"name": "Synced"}, {"name": "Analysis"}]}},
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_trade(trade: Dict[str, Any]) -> List[str]:
    """Return field errors for one parsed trade; empty when it can be synced."""
    errors: List[str] = []
    for f in REQUIRED_TRADE_FIELDS:
        if trade.get(f) in (None, ""):
            errors.append(f"missing_{f}")

    action = trade.get("action")
    if action and action not in VALID_ACTIONS:
        errors.append("invalid_action")

    quantity = trade.get("quantity")
    if quantity is not None and (not _is_number(quantity) or quantity <= 0):
        errors.append("invalid_quantity")

    price = trade.get("price")
    if price is not None and (not _is_number(price) or price <= 0):
        errors.append("invalid_price")

    dt = trade.get("datetime")
    if dt:
        try:
            datetime.fromisoformat(str(dt).replace("Z", "+00:00"))
        except ValueError:
            errors.append("invalid_datetime")
    return errors


def format_trade_properties(trade: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "Symbol": {"title": [{"text": {"content": str(trade["symbol"])}}]},
        "Action": {"select": {"name": trade["action"]}},
        "Quantity": {"number": trade["quantity"]},
        "Entry Price": {"number": trade["price"]},
        "Trade Date": {"date": {"start": trade["datetime"]}},
        "Commission": {"number": trade.get("commission") or 0},
        "Broker": {"select": {"name": trade.get("broker_detected") or "Other"}},
        "Sync Status": {"select": {"name": "Synced"}},
    }


def _paragraph(text: str) -> Dict[str, Any]:
    # Notion caps rich text content at 2000 characters
    return {
        "object": "block",
        "type": "paragraph",
        "paragraph": {"rich_text": [{"type": "text", "text": {"content": text[:2000]}}]},
    }


def format_analysis_page(analysis: Dict[str, Any], title: str) -> Dict[str, Any]:
    children = []
    if analysis.get("summary"):
        children.append(_paragraph(str(analysis["summary"])))
    for section in ("strengths", "mistakes", "suggestions"):
        items = analysis.get(section) or []
        if items:
            children.append(_paragraph(f"{section.capitalize()}: " + "; ".join(str(i) for i in items)))
    return {
        "properties": {
            "Symbol": {"title": [{"text": {"content": title}}]},
            "Sync Status": {"select": {"name": "Analysis"}},
        },
        "children": children,
    }


class NotionClient(BaseHTTPClient):
    """Notion REST client: OAuth code exchange, database and page creation.

    Connection errors are retried by the transport; HTTP-level retries are
    the batch writer's job.
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        base_url: str = "https://api.notion.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = NOTION_TIMEOUT,
        transport_retries: int = 2,
    ) -> None:
        super().__init__(
            provider_name="notion",
            base_url=base_url,
            client=client,
            timeout=timeout,
            transport_retries=transport_retries,
        )
        self._client_id = client_id or os.getenv("NOTION_CLIENT_ID", "")
        self._client_secret = client_secret or os.getenv("NOTION_CLIENT_SECRET", "")
        self._redirect_uri = redirect_uri or os.getenv("NOTION_REDIRECT_URI", "")

    @property
    def oauth_configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_uri)

    def _auth_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    def build_auth_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "response_type": "code",
                "owner": "user",
                "redirect_uri": self._redirect_uri,
                "state": state,
            }
        )
        return f"{self._base_url}/oauth/authorize?{query}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        credentials = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode("utf-8")).decode("ascii")
        headers = {
            "Authorization": f"Basic {credentials}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        data = await self._request(
            "POST",
            "/oauth/token",
            json_body={"grant_type": "authorization_code", "code": code, "redirect_uri": self._redirect_uri},
            headers=headers,
        )
        if not data.get("access_token"):
            raise MalformedResponseError("OAuth response without access_token")
        return data

    async def create_database(self, access_token: str, parent_page_id: str, title: str = "Trade Journal") -> str:
        payload = {
            "parent": {"type": "page_id", "page_id": parent_page_id},
            "title": [{"type": "text", "text": {"content": title}}],
            "properties": TRADE_DATABASE_PROPERTIES,
        }
        data = await self._request("POST", "/databases", json_body=payload, headers=self._auth_headers(access_token))
        return self._require_id(data)

    async def create_page(
        self,
        access_token: str,
        database_id: str,
        properties: Dict[str, Any],
        children: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        payload: Dict[str, Any] = {"parent": {"database_id": database_id}, "properties": properties}
        if children:
            payload["children"] = children
        data = await self._request("POST", "/pages", json_body=payload, headers=self._auth_headers(access_token))
        return self._require_id(data)

    @staticmethod
    def _require_id(data: Dict[str, Any]) -> str:
        remote_id = data.get("id")
        if not isinstance(remote_id, str) or not remote_id:
            raise MalformedResponseError("Notion response without id")
        return remote_id
