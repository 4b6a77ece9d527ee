"""
FastAPI server for the end-to-end encrypted chat directory and relay.

This server:
- Registers users and their identity keys (trust on first registration)
- Stores the latest prekey per user for asynchronous key agreement
- Maintains group membership and the group version counter
- Queues opaque encrypted envelopes per recipient until fetched

It never sees plaintext or session keys.
"""

import logging
from typing import Annotated, List, Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import ChatError
from .service import ChatService

logger = logging.getLogger(__name__)

Name = Annotated[str, Field(min_length=1, max_length=64)]


# Pydantic models for API
class UserRegister(BaseModel):
    user: Name
    identity_pub: str


class PrekeyUpload(BaseModel):
    user: Name
    x25519_pub: str


class UserRequest(BaseModel):
    user: Name


class PrivateMessage(BaseModel):
    from_user: Name
    to: Name
    payload: str = Field(min_length=1)


class GroupCreate(BaseModel):
    group_id: Name
    creator: Name
    members: List[str] = []


class GroupAdd(BaseModel):
    group_id: Name
    user: Name


class GroupRemove(BaseModel):
    group_id: Name
    user_to_remove: Name
    removed_by: Name


class GroupMessage(BaseModel):
    group_id: Name
    from_user: Name
    payload: str = Field(min_length=1)
    expected_version: Optional[int] = None


class GroupFetch(BaseModel):
    group_id: Name
    user: Name


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def create_app(settings: Optional[Settings] = None, service: Optional[ChatService] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Server settings; read from the environment when omitted
        service: Pre-built service, mainly for tests; built from settings when omitted
    """
    settings = settings or get_settings()
    service = service or ChatService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Server ready (%s)", "sqlalchemy" if settings.database_url else "in-memory")
        yield
        close = getattr(service.store, "close", None)
        if close:
            close()
        logger.info("Server shutting down")

    app = FastAPI(
        title=settings.app_name,
        description="Pairwise end-to-end encrypted chat with versioned groups",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.service = service

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=exc.status_code,
                            content={"error": exc.code, "detail": exc.detail})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.debug("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.post("/register")
    def register(body: UserRegister):
        """Register a user; joins any groups the user was invited to"""
        return service.register(body.user, body.identity_pub)

    @app.post("/upload_prekey")
    def upload_prekey(body: PrekeyUpload):
        """Publish or replace the caller's prekey"""
        return service.publish_prekey(body.user, body.x25519_pub)

    @app.get("/prekey/{user}")
    def get_prekey(user: str):
        return service.fetch_prekey(user)

    @app.post("/send_message")
    def send_message(body: PrivateMessage):
        return service.send_private(body.from_user, body.to, body.payload)

    @app.post("/fetch_messages")
    def fetch_messages(body: UserRequest):
        """Return and remove the caller's private messages"""
        return service.fetch_private(body.user)

    @app.post("/clear_chat")
    def clear_chat(body: UserRequest):
        return service.clear_private(body.user)

    @app.post("/create_group")
    def create_group(body: GroupCreate):
        return service.create_group(body.group_id, body.creator, body.members)

    @app.post("/force_add_to_group")
    def force_add_to_group(body: GroupAdd):
        return service.force_add_member(body.group_id, body.user)

    @app.post("/group_remove_member")
    def group_remove_member(body: GroupRemove):
        return service.remove_member(body.group_id, body.user_to_remove, body.removed_by)

    @app.post("/send_group_message")
    def send_group_message(body: GroupMessage):
        return service.send_group(body.group_id, body.from_user, body.payload, body.expected_version)

    @app.post("/fetch_group_messages")
    def fetch_group_messages(body: GroupFetch):
        """Return and remove the caller's queued messages for one group"""
        return service.fetch_group(body.group_id, body.user)

    @app.post("/auto_join_groups")
    def auto_join_groups(body: UserRequest):
        return service.check_invites(body.user)

    @app.get("/group_info/{group_id}")
    def group_info(group_id: str):
        return service.group_info(group_id)

    @app.get("/user_groups/{user}")
    def user_groups(user: str):
        return service.list_user_groups(user)

    @app.get("/status")
    def status():
        return service.status()

    return app


def main():
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
