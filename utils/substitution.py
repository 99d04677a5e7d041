"""
Variable substitution — renders ``{{path}}`` tokens in node configuration.

Resolution order for each token:
  1. reserved paths built from the inbound event (user.*, chat.id, message.text,
     timestamp, date, time)
  2. session variables
  3. otherwise the token is left in the text verbatim
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from models.schemas import InboundEvent, Session

TOKEN_RE = re.compile(r"\{\{([^{}]+)\}\}")


def reserved_values(event: Optional[InboundEvent], now: datetime) -> dict[str, str]:
    values = {
        "timestamp": now.isoformat(),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
    }
    if event is not None:
        values.update({
            "user.firstName": event.user.first_name,
            "user.lastName": event.user.last_name,
            "user.username": event.user.username,
            "user.id": event.user.id,
            "chat.id": event.chat.id,
            "message.text": event.text or "",
        })
    return values


def substitute(
    text: str,
    event: Optional[InboundEvent],
    session: Optional[Session],
    now: datetime = None,
) -> str:
    """Render every ``{{path}}`` token in *text*."""
    if not text or "{{" not in text:
        return text
    reserved = reserved_values(event, now or datetime.now(timezone.utc))
    variables = session.variables if session is not None else {}

    def replacer(match: re.Match) -> str:
        path = match.group(1).strip()
        if path in reserved:
            return reserved[path]
        if path in variables:
            return variables[path]
        return match.group(0)

    return TOKEN_RE.sub(replacer, text)


def substitute_value(value: Any, render: Callable[[str], str]) -> Any:
    """Apply *render* to every string inside nested dicts and lists."""
    if isinstance(value, str):
        return render(value)
    if isinstance(value, dict):
        return {k: substitute_value(v, render) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_value(v, render) for v in value]
    return value
