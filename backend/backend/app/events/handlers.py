from __future__ import annotations

from typing import Awaitable, Callable

import httpx

# In-process consumers of outbox topics. A handler raising marks the event
# for retry, exactly like a failing webhook.
EventHandler = Callable[[httpx.AsyncClient, dict], Awaitable[None]]

HANDLERS: dict[str, list[EventHandler]] = {}


def handles(topic: str):
    def register(fn: EventHandler) -> EventHandler:
        HANDLERS.setdefault(topic, []).append(fn)
        return fn
    return register


def handlers_for(topic: str) -> list[EventHandler]:
    return list(HANDLERS.get(topic, []))
