from __future__ import annotations

from contextvars import ContextVar, Token

CORRELATION_HEADER = "x-correlation-id"

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
trigger_depth_var: ContextVar[int | None] = ContextVar("trigger_depth", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_trigger_depth(value: int | None) -> Token[int | None]:
    return trigger_depth_var.set(value)


def reset_trigger_depth(token: Token[int | None]) -> None:
    trigger_depth_var.reset(token)


def get_trigger_depth() -> int | None:
    return trigger_depth_var.get()
