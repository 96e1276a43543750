"""
HTTP Input Plugin - REST API for addon groups and user sync.

This plugin provides a FastAPI-based REST API for managing groups and users,
evaluating and healing sync drift, and streaming status changes over SSE.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from engine import evaluate
from errors import AccountNotLinked, Busy, PolicyViolation, TransportError
from events import StatusEvent
from identity import key_of
from manifests import InvalidManifest, ManifestFetcher
from models import Addon, AddonRef, SafetyMode
from plugins.base import ChangeEvent, ChangeKind
from plugins.inputs.base import ChangeCallback, InputPlugin
from validation import validate_manifest

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


def validate_name(value: str, field_name: str) -> str:
    """Validate that a display name is present and bounded."""
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    return value


def to_http_error(e: Exception) -> HTTPException:
    """Map a sync error to the HTTP status it is reported with."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, Busy):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, PolicyViolation):
        return HTTPException(status_code=403, detail=e.message)
    if isinstance(e, AccountNotLinked):
        return HTTPException(
            status_code=409, detail={"status": "connect", "message": e.message}
        )
    if isinstance(e, TransportError):
        return HTTPException(status_code=502, detail=e.message)
    if isinstance(e, KeyError):
        return HTTPException(status_code=404, detail=f"Not found: {e.args[0]}")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Unexpected API error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# Addon models


class AddonModel(BaseModel):
    """An addon in a request body."""

    manifest_url: str = Field("", description="Manifest URL")
    transport_url: str = Field("", description="Transport URL")
    url: str = Field("", description="Fallback locator")
    id: Optional[str] = Field(None, description="Logical addon id")
    manifest: Optional[Dict[str, Any]] = Field(None, description="Manifest document")
    name: Optional[str] = None
    version: Optional[str] = None
    is_enabled: bool = True

    @field_validator("manifest")
    @classmethod
    def validate_manifest_document(
        cls, v: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        if v is not None:
            is_valid, error = validate_manifest(v)
            if not is_valid:
                raise ValueError(error)
        return v

    @model_validator(mode="after")
    def require_locator(self) -> "AddonModel":
        if not (
            self.manifest_url.strip() or self.transport_url.strip() or self.url.strip()
        ):
            raise ValueError("One of manifest_url, transport_url or url is required")
        return self

    def to_addon(self) -> Addon:
        return Addon(
            ref=AddonRef(
                manifest_url=self.manifest_url,
                transport_url=self.transport_url,
                url=self.url,
                id=self.id,
            ),
            manifest=self.manifest,
            name=self.name,
            version=self.version,
            is_enabled=self.is_enabled,
        )


class EvaluateRequest(BaseModel):
    """Request model for a standalone evaluation."""

    desired: List[AddonModel] = Field(default_factory=list)
    remote: List[AddonModel] = Field(default_factory=list)
    protected: List[str] = Field(default_factory=list)
    mode: SafetyMode = SafetyMode.SAFE


# Group models


class GroupCreate(BaseModel):
    """Request model for creating a group."""

    name: str = Field(..., description="Unique group name")
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_group_name(cls, v: str) -> str:
        return validate_name(v, "name")


class GroupResponse(BaseModel):
    """Response model for a group."""

    id: int
    name: str
    description: Optional[str] = None
    member_count: int = 0
    created_at: datetime
    updated_at: datetime


class GroupAddonsUpdate(BaseModel):
    """Request model for replacing a group's addon list."""

    addons: List[AddonModel]
    resolve_manifests: bool = Field(
        False, description="Fetch manifests for addons sent without one"
    )


# User models


class UserCreate(BaseModel):
    """Request model for creating a user."""

    name: str = Field(..., description="Unique user name")
    group_id: Optional[int] = None
    auth_key: Optional[str] = Field(None, repr=False)

    @field_validator("name")
    @classmethod
    def validate_user_name(cls, v: str) -> str:
        return validate_name(v, "name")


class UserResponse(BaseModel):
    """Response model for a user. The auth key is never returned."""

    id: int
    name: str
    group_id: Optional[int] = None
    linked: bool = False
    created_at: datetime
    updated_at: datetime


class AddonKeys(BaseModel):
    """Request model for replacing an exclusion or protection set."""

    keys: List[str]


class AddonKeyToggle(BaseModel):
    """Request model for toggling one key."""

    key: str

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("key cannot be empty")
        return v


class OrderPreviewRequest(BaseModel):
    """Request model for previewing a move."""

    key: str
    to_index: int


class OrderUpdate(BaseModel):
    """Request model for committing a new order."""

    keys: List[str]

    @field_validator("keys")
    @classmethod
    def validate_unique(cls, v: List[str]) -> List[str]:
        normalized = [k.strip().lower() for k in v]
        if len(set(normalized)) != len(normalized):
            raise ValueError("keys must not contain duplicates")
        return v


class PluginInfo(BaseModel):
    """Response model for plugin information."""

    name: str
    version: str


def _sse_response(generator) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for addon sync management.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.server = None
        self._on_change: Optional[ChangeCallback] = None
        self._db_manager = None
        self._dispatcher = None
        self._manifests: Optional[ManifestFetcher] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "manifest_cache_ttl": float(os.getenv("MANIFEST_CACHE_TTL", "300")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self._manifests = ManifestFetcher(
            cache_ttl=config.get("manifest_cache_ttl", 300.0)
        )

        self.app = FastAPI(
            title="addonsync API",
            description="Addon group management and sync status for remote accounts",
            version="1.0.0",
        )

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_dispatcher(self, dispatcher) -> None:
        """Set the sync dispatcher instance."""
        self._dispatcher = dispatcher

    async def _notify(self, event: ChangeEvent) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(event)
        except Exception as e:
            logger.error(f"Change callback failed for {event.kind.value}: {e}")

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    def _require_dispatcher(self):
        if not self._dispatcher:
            raise HTTPException(status_code=503, detail="Sync dispatcher not available")
        return self._dispatcher

    async def _require_user(self, user_id: int) -> Dict[str, Any]:
        user = await self._require_db().get_user(user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    async def _require_group(self, group_id: int) -> Dict[str, Any]:
        group = await self._require_db().get_group(group_id)
        if not group:
            raise HTTPException(status_code=404, detail="Group not found")
        return group

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Evaluation: POST /api/v1/evaluate
        - Groups: /api/v1/groups
        - Users and their addon sets: /api/v1/users
        - Remote addons and ordering: /api/v1/users/{id}/remote-addons
        - Status streams: /api/v1/events, /api/v1/users/{id}/events
        - Plugin discovery: /api/v1/plugins

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "addonsync"}

        # ==================== Evaluation Endpoints ====================

        @self.app.post("/api/v1/evaluate")
        async def evaluate_addons(request: EvaluateRequest):
            """Evaluate a desired/remote pair without touching any account."""
            verdict = evaluate(
                [a.to_addon() for a in request.desired],
                [a.to_addon() for a in request.remote],
                frozenset(request.protected),
                request.mode,
            )
            return verdict.to_dict()

        # ==================== Group Endpoints ====================

        @self.app.post("/api/v1/groups", response_model=GroupResponse, status_code=201)
        async def create_group(group: GroupCreate):
            """Create a new group."""
            db = self._require_db()
            try:
                group_id = await db.create_group(group.name, group.description)
                created = await db.get_group(group_id)
                return GroupResponse(**created)
            except Exception as e:
                if "unique constraint" in str(e).lower():
                    raise HTTPException(
                        status_code=409,
                        detail=f"Group {group.name} already exists",
                    )
                raise to_http_error(e)

        @self.app.get("/api/v1/groups", response_model=List[GroupResponse])
        async def list_groups(limit: int = 100):
            """List groups."""
            db = self._require_db()
            try:
                groups = await db.list_groups(limit=limit)
                return [GroupResponse(**g) for g in groups]
            except Exception as e:
                raise to_http_error(e)

        @self.app.get("/api/v1/groups/{group_id}")
        async def get_group(group_id: int):
            """Get a group with its ordered addon list."""
            try:
                group = await self._require_group(group_id)
                addons = await self._db_manager.get_group_addons(group_id)
                result = GroupResponse(**group).model_dump(mode="json")
                result["addons"] = [a.to_dict() for a in addons]
                return result
            except Exception as e:
                raise to_http_error(e)

        @self.app.delete("/api/v1/groups/{group_id}", status_code=204)
        async def delete_group(group_id: int):
            """Delete a group. Its members are kept without a group."""
            db = self._require_db()
            try:
                member_ids = await db.get_group_user_ids(group_id)
                deleted = await db.delete_group(group_id)
                if not deleted:
                    raise HTTPException(status_code=404, detail="Group not found")
            except Exception as e:
                raise to_http_error(e)

            await self._notify(ChangeEvent(ChangeKind.GROUP_DELETED, group_id=group_id))
            for user_id in member_ids:
                await self._notify(ChangeEvent(ChangeKind.USER_UPDATED, user_id=user_id))
            return None

        @self.app.put("/api/v1/groups/{group_id}/addons")
        async def replace_group_addons(group_id: int, update: GroupAddonsUpdate):
            """Replace a group's ordered addon list."""
            try:
                await self._require_group(group_id)
                addons = [a.to_addon() for a in update.addons]
                if update.resolve_manifests and self._manifests:
                    addons = [await self._manifests.resolve(a) for a in addons]
                await self._db_manager.replace_group_addons(group_id, addons)
            except InvalidManifest as e:
                raise HTTPException(status_code=422, detail=str(e))
            except Exception as e:
                raise to_http_error(e)

            await self._notify(ChangeEvent(ChangeKind.GROUP_UPDATED, group_id=group_id))
            return {"group_id": group_id, "addons": [a.to_dict() for a in addons]}

        @self.app.get("/api/v1/groups/{group_id}/sync-status")
        async def get_group_sync_status(group_id: int):
            """Aggregate the sync status of a group's members."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_group(group_id)
                report = await dispatcher.check_group_status(group_id)
                return report.to_dict()
            except Exception as e:
                raise to_http_error(e)

        # ==================== User Endpoints ====================

        @self.app.post("/api/v1/users", response_model=UserResponse, status_code=201)
        async def create_user(user: UserCreate):
            """Create a user, optionally linked to an account and a group."""
            db = self._require_db()
            try:
                if user.group_id is not None:
                    await self._require_group(user.group_id)
                user_id = await db.create_user(
                    name=user.name, group_id=user.group_id, auth_key=user.auth_key
                )
                created = await db.get_user(user_id)
            except Exception as e:
                if "unique constraint" in str(e).lower():
                    raise HTTPException(
                        status_code=409, detail=f"User {user.name} already exists"
                    )
                raise to_http_error(e)

            await self._notify(ChangeEvent(ChangeKind.USER_UPDATED, user_id=user_id))
            return UserResponse(**created)

        @self.app.get("/api/v1/users/{user_id}")
        async def get_user(user_id: int):
            """Get a user with their exclusion and protection sets."""
            dispatcher = self._require_dispatcher()
            try:
                user = await self._require_user(user_id)
                result = UserResponse(**user).model_dump(mode="json")
                result["excluded_addons"] = sorted(
                    await dispatcher.exclusions.get(user_id)
                )
                result["protected_addons"] = sorted(
                    await dispatcher.protections.get(user_id)
                )
                return result
            except Exception as e:
                raise to_http_error(e)

        @self.app.get("/api/v1/users/{user_id}/sync-status")
        async def get_user_sync_status(user_id: int, force: bool = False):
            """Evaluate a user's sync status."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                report = await dispatcher.check_status(user_id, force=force)
                return report.to_dict()
            except Exception as e:
                raise to_http_error(e)

        @self.app.get("/api/v1/users/{user_id}/desired-addons")
        async def get_desired_addons(user_id: int):
            """List the addons the user should have, in order."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                desired = await dispatcher.get_desired(user_id)
                return [a.to_dict() for a in desired]
            except Exception as e:
                raise to_http_error(e)

        @self.app.get("/api/v1/users/{user_id}/remote-addons")
        async def get_remote_addons(user_id: int, force: bool = False):
            """List the addons installed on the user's account."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                remote = await dispatcher.get_remote_state(user_id, force=force)
                protected = await dispatcher.protections.get(user_id)
            except Exception as e:
                raise to_http_error(e)

            result = []
            for addon in remote:
                data = addon.to_dict()
                data["key"] = key_of(addon)
                data["protection"] = dispatcher.policy.protection_reason(
                    addon, protected
                )
                result.append(data)
            return result

        @self.app.post("/api/v1/users/{user_id}/sync")
        async def sync_user(user_id: int):
            """Install the user's desired addons on their account."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                verdict = await dispatcher.request_sync(user_id)
                return {"user_id": user_id, "verdict": verdict.to_dict()}
            except Exception as e:
                raise to_http_error(e)

        @self.app.put("/api/v1/users/{user_id}/excluded-addons")
        async def replace_excluded_addons(user_id: int, body: AddonKeys):
            """Replace the user's exclusion set."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                stored = await dispatcher.replace_exclusions(user_id, body.keys)
                return {"keys": sorted(stored)}
            except Exception as e:
                raise to_http_error(e)

        @self.app.post("/api/v1/users/{user_id}/excluded-addons/toggle")
        async def toggle_excluded_addon(user_id: int, body: AddonKeyToggle):
            """Exclude or re-include one group addon for the user."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                stored = await dispatcher.toggle_exclusion(user_id, body.key)
                return {"keys": sorted(stored)}
            except Exception as e:
                raise to_http_error(e)

        @self.app.put("/api/v1/users/{user_id}/protected-addons")
        async def replace_protected_addons(user_id: int, body: AddonKeys):
            """Replace the user's protection set."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                stored = await dispatcher.replace_protections(user_id, body.keys)
                return {"keys": sorted(stored)}
            except Exception as e:
                raise to_http_error(e)

        @self.app.post("/api/v1/users/{user_id}/protected-addons/toggle")
        async def toggle_protected_addon(user_id: int, body: AddonKeyToggle):
            """Protect or un-protect one addon for the user."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                stored = await dispatcher.toggle_protection(user_id, body.key)
                return {"keys": sorted(stored)}
            except Exception as e:
                raise to_http_error(e)

        # ==================== Remote Addon Endpoints ====================

        @self.app.delete("/api/v1/users/{user_id}/remote-addons", status_code=204)
        async def delete_remote_addon(user_id: int, key: str):
            """Remove an addon from the user's account."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                await dispatcher.remove_addon(user_id, key)
                return None
            except Exception as e:
                raise to_http_error(e)

        @self.app.post("/api/v1/users/{user_id}/remote-addons/order/preview")
        async def preview_remote_order(user_id: int, body: OrderPreviewRequest):
            """Show the order a move would produce without applying it."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                order = await dispatcher.preview_order(user_id, body.key, body.to_index)
                return {"order": order}
            except Exception as e:
                raise to_http_error(e)

        @self.app.put("/api/v1/users/{user_id}/remote-addons/order")
        async def update_remote_order(user_id: int, body: OrderUpdate):
            """Reorder the addons on the user's account."""
            dispatcher = self._require_dispatcher()
            try:
                await self._require_user(user_id)
                order = await dispatcher.reorder(user_id, body.keys)
                return {"order": order}
            except Exception as e:
                raise to_http_error(e)

        # ==================== Plugin Endpoints ====================

        @self.app.get("/api/v1/plugins", response_model=Dict[str, List[PluginInfo]])
        async def list_plugins():
            """List registered account and input plugins."""
            from plugins.registry import get_registry

            registry = get_registry()
            return {
                "accounts": [
                    PluginInfo(**registry.get_account_plugin_info(name))
                    for name in registry.list_account_plugins()
                ],
                "inputs": [
                    PluginInfo(**registry.get_input_plugin_info(name))
                    for name in registry.list_input_plugins()
                ],
            }

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_all_events(status: Optional[str] = None):
            """SSE stream of status events for all users.

            Optionally filter by status value.
            """
            dispatcher = self._require_dispatcher()
            bus = dispatcher.bus

            if status:
                wanted = status

                def filter_fn(event: StatusEvent) -> bool:
                    return event.status.value == wanted

            else:
                filter_fn = None

            subscriber_id, subscription = await bus.subscribe(filter_fn=filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await bus.unsubscribe(subscriber_id)

            return _sse_response(event_generator())

        @self.app.get("/api/v1/users/{user_id}/events")
        async def stream_user_events(user_id: int):
            """SSE stream of one user's status, starting with the latest."""
            dispatcher = self._require_dispatcher()
            await self._require_user(user_id)
            bus = dispatcher.bus

            subscriber_id, subscription = await bus.subscribe(user_id=user_id)
            latest = bus.latest(user_id)

            async def event_generator():
                try:
                    if latest is not None:
                        yield latest.to_sse()
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await bus.unsubscribe(subscriber_id)

            return _sse_response(event_generator())

    async def start(self, on_change: ChangeCallback) -> None:
        """Start the HTTP server."""
        self._on_change = on_change
        self._setup_routes()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
