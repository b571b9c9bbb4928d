"""
Push notification sink and the notifications the backend sends.

Delivery is fire-and-forget: a sink never raises, failures are logged and
not retried.
"""
from __future__ import annotations

import json
import urllib.error
import urllib.request
from decimal import Decimal
from typing import Iterable, Optional

from .config import settings
from .logs import json_log
from .store.base import DocumentStore, Query

MAX_TOKENS_PER_REQUEST = 500


def build_message(title: str, body: str, data: Optional[dict] = None, channel: str = "default") -> dict:
    return {
        "title": title,
        "body": body,
        "android": {"priority": "high", "notification": {"channelId": channel, "sound": "default"}},
        "apns": {"payload": {"aps": {"sound": "default", "contentAvailable": True}}},
        # Delivery payloads only carry string values.
        "data": {str(k): str(v) for k, v in (data or {}).items()},
    }


class LogPushSink:
    def __init__(self):
        self.sent: list[tuple[list[str], dict]] = []

    def send_multicast(self, tokens: Iterable[str], message: dict) -> int:
        tokens = [t for t in tokens if t]
        if not tokens:
            return 0
        self.sent.append((tokens, message))
        json_log("info", "push.logged", tokens=len(tokens), title=message.get("title"))
        return len(tokens)


class HttpPushSink:
    def __init__(self, url: str, key: str = "", timeout: float = 10.0):
        self.url = url
        self.key = key
        self.timeout = timeout

    def _post(self, payload: dict) -> dict:
        data = json.dumps(payload, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.key:
            headers["Authorization"] = f"Bearer {self.key}"
        req = urllib.request.Request(self.url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            body = resp.read().decode("utf-8") if resp else ""
            if not body:
                return {}
            try:
                return json.loads(body)
            except Exception:
                return {"raw": body}

    def send_multicast(self, tokens: Iterable[str], message: dict) -> int:
        tokens = [t for t in tokens if t]
        sent = 0
        for i in range(0, len(tokens), MAX_TOKENS_PER_REQUEST):
            chunk = tokens[i : i + MAX_TOKENS_PER_REQUEST]
            try:
                res = self._post({"tokens": chunk, **message})
            except urllib.error.HTTPError as ex:
                body = ex.read().decode("utf-8", errors="replace") if hasattr(ex, "read") else str(ex)
                json_log("error", "push.http_error", status=getattr(ex, "code", None), error=body, tokens=len(chunk))
                continue
            except Exception as ex:
                json_log("error", "push.failed", error=str(ex), tokens=len(chunk))
                continue
            failures = int(res.get("failureCount") or 0) if isinstance(res, dict) else 0
            if failures:
                json_log("warning", "push.partial_failure", failures=failures, tokens=len(chunk))
            sent += len(chunk) - failures
        return sent


def default_sink():
    if settings.push_gateway_url:
        return HttpPushSink(settings.push_gateway_url, settings.push_gateway_key)
    return LogPushSink()


def store_recipient_tokens(
    store: DocumentStore,
    store_id: str,
    roles: Iterable[str] = ("owner", "manager"),
    exclude_uid: Optional[str] = None,
) -> list[str]:
    roles = set(roles)
    tokens: list[str] = []
    for u in store.query(Query("users").where("storeId", "==", store_id)):
        if u.id == exclude_uid or u.get("role") not in roles or u.get("active") is False:
            continue
        for t in u.get("fcmTokens") or []:
            if t and t not in tokens:
                tokens.append(str(t))
    return tokens


def _fmt_amount(v) -> str:
    try:
        d = Decimal(str(v or 0))
    except Exception:
        return str(v)
    return f"{d:,.0f}"


def notify_bill_written(store: DocumentStore, sink, bill_id: str, before: Optional[dict], after: Optional[dict]) -> bool:
    if not after or after.get("status") != "completed":
        return False
    if before and before.get("status") == "completed":
        return False
    store_id = after.get("storeId")
    if not store_id:
        return False

    tokens = store_recipient_tokens(store, str(store_id), exclude_uid=after.get("createdByUid"))
    if not tokens:
        return False
    creator = after.get("createdByName") or "Staff"
    message = build_message(
        "New bill",
        f"{creator} completed a bill of {_fmt_amount(after.get('totalPayable'))}",
        data={"type": "bill_completed", "billId": bill_id, "storeId": store_id},
        channel="bills",
    )
    try:
        sink.send_multicast(tokens, message)
    except Exception as ex:
        json_log("error", "notify.bill.failed", bill_id=bill_id, error=str(ex))
        return False
    return True
