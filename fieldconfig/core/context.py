import contextvars

_actor_role: contextvars.ContextVar[str] = contextvars.ContextVar("actor_role", default="-")
_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


def set_actor_role(actor_role: str) -> None:
    _actor_role.set(actor_role)


def get_actor_role() -> str:
    return _actor_role.get()


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


def clear_context() -> None:
    _actor_role.set("-")
    _request_id.set("-")
