from uuid import uuid4

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from fieldconfig.core import context


class RequestContextMiddleware:
    """Attach request_id and actor_role to context vars for logging/traceability."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or str(uuid4())
        actor_role = headers.get(b"x-actor-role", b"").decode().strip()

        context.clear_context()
        context.set_request_id(request_id)
        if actor_role:
            context.set_actor_role(actor_role)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers_list = list(message.get("headers", []))
                headers_list.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers_list
            await send(message)

        await self.app(scope, receive, send_with_request_id)
