from contextvars import ContextVar

actor_id_ctx: ContextVar[int | None] = ContextVar("actor_id_ctx", default=None)
actor_role_ctx: ContextVar[str | None] = ContextVar("actor_role_ctx", default=None)
request_id_ctx: ContextVar[str | None] = ContextVar("request_id_ctx", default=None)
