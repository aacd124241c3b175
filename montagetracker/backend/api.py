"""FastAPI endpoints for running a montage test and relaying player intents."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
import json
import logging
from typing import Any, Literal
import uuid

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from .config import BackendSettings, configure_logging, load_settings
from .coordinator import EVENT_OUTCOME, ApprovalInProgressError, CoordinatorEvent, MontageCoordinator
from .host import ActorRecord, HttpRollCollaborator, ItemRecord, UnconfiguredRollCollaborator, UserRecord
from .models import IntentResult, MontageConfig, OutcomeSummary, RollFailedError
from .security import ROLE_HOST, ROLE_PLAYER, AccessTokens, generate_token
from .store import create_store

logger = logging.getLogger(__name__)

Difficulty = Literal["easy", "moderate", "hard"]
Visibility = Literal["hidden", "visible"]
ActionType = Literal["test", "assist", "ability", "abstain"]
Characteristic = Literal["might", "agility", "reason", "intuition", "presence"]


class ItemPayload(BaseModel):
    type: str
    name: str
    dsid: str | None = None


class ActorPayload(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    type: str
    system_id: str | None = None
    items: list[ItemPayload] = Field(default_factory=list)
    ownership: dict[str, str] = Field(default_factory=dict)


class UserPayload(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    is_gm: bool = False


class StartMontageRequest(BaseModel):
    token: str = Field(min_length=1)
    title: str = Field(default="Montage Test", min_length=1, max_length=200)
    description: str = Field(default="", max_length=4000)
    difficulty: Difficulty = "moderate"
    visibility: Visibility = "hidden"
    success_limit: int | None = Field(default=None, ge=1)
    failure_limit: int | None = Field(default=None, ge=1)
    max_rounds: int | None = Field(default=None, ge=1)
    candidates: list[ActorPayload]
    users: list[UserPayload] = Field(default_factory=list)


class TokenEnvelope(BaseModel):
    token: str = Field(min_length=1)


class IntentEnvelope(BaseModel):
    token: str = Field(min_length=1)
    participant_id: str = Field(min_length=1)
    action_type: ActionType
    characteristic: Characteristic | None = None
    narrative: str | None = Field(default=None, max_length=2000)


class IntentMessage(BaseModel):
    """A participant intent relayed over the WebSocket (camelCase wire keys)."""

    kind: Literal["submitIntent"]
    participant_id: str = Field(alias="participantId", min_length=1)
    action_type: ActionType | None = Field(default=None, alias="actionType")
    characteristic: Characteristic | None = None
    narrative: str | None = Field(default=None, max_length=2000)


class IntentResponse(BaseModel):
    ok: bool
    error: str | None = None


class MontageStateResponse(BaseModel):
    state: dict[str, Any]


class MontageWebSocketHub:
    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, role: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[role].add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        for role in list(self._connections):
            connections = self._connections[role]
            connections.discard(websocket)
            if not connections:
                self._connections.pop(role, None)

    async def send_state(self, websocket: WebSocket, state: dict[str, Any] | None) -> None:
        await websocket.send_json({"type": "state.full", "state": state})

    async def broadcast_state(self, coordinator: MontageCoordinator) -> None:
        stale_connections: list[WebSocket] = []
        for role, connections in list(self._connections.items()):
            state = coordinator.snapshot_for(role)
            for websocket in list(connections):
                try:
                    await self.send_state(websocket, state)
                except RuntimeError:
                    stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(websocket=websocket)

    async def broadcast_outcome(self, summary: OutcomeSummary) -> None:
        message = {
            "type": "montage.outcome",
            "summary": {
                "title": summary.title,
                "outcome": summary.outcome,
                "outcomeLabel": summary.outcome_label,
                "successes": summary.successes,
                "failures": summary.failures,
                "victories": summary.victories,
                "rewardText": summary.reward_text,
            },
        }
        stale_connections: list[WebSocket] = []
        for connections in list(self._connections.values()):
            for websocket in list(connections):
                try:
                    await websocket.send_json(message)
                except RuntimeError:
                    stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(websocket=websocket)


def build_coordinator(settings: BackendSettings) -> MontageCoordinator:
    roll_collaborator = (
        HttpRollCollaborator(roll_url=settings.roll_url)
        if settings.roll_url
        else UnconfiguredRollCollaborator()
    )
    return MontageCoordinator(
        store=create_store(database_url=settings.database_url),
        roll_collaborator=roll_collaborator,
        roll_difficulty=settings.roll_difficulty,
        system_id=settings.system_id,
    )


def _issue_tokens(settings: BackendSettings) -> tuple[AccessTokens, dict[str, str]]:
    """Resolve the role tokens, generating any that are unset.

    Generated tokens are returned by env var name so the serving app can log
    them once at startup.
    """
    generated: dict[str, str] = {}
    host_token = settings.host_token
    player_token = settings.player_token
    if not host_token:
        host_token = generated["MONTAGE_HOST_TOKEN"] = generate_token()
    if not player_token:
        player_token = generated["MONTAGE_PLAYER_TOKEN"] = generate_token()
    tokens = AccessTokens.from_raw(host_token=host_token, player_token=player_token, server_salt=settings.server_salt)
    return tokens, generated


def _to_actor(payload: ActorPayload, system_id: str) -> ActorRecord:
    return ActorRecord(
        id=payload.id,
        name=payload.name,
        actor_type=payload.type,
        system_id=payload.system_id or system_id,
        items=tuple(ItemRecord(item_type=item.type, name=item.name, dsid=item.dsid) for item in payload.items),
        ownership=dict(payload.ownership),
    )


def create_app(
    coordinator: MontageCoordinator | None = None,
    settings: BackendSettings | None = None,
) -> FastAPI:
    local_settings = settings if settings is not None else load_settings()
    montage = coordinator if coordinator is not None else build_coordinator(local_settings)
    tokens, generated_tokens = _issue_tokens(local_settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        for env_name, token in generated_tokens.items():
            logger.warning("%s not set, generated token: %s", env_name, token)
        if montage.state is None:
            montage.load()
        yield

    app = FastAPI(title="Montage Tracker API", version="0.1.0", lifespan=lifespan)
    websocket_hub = MontageWebSocketHub()
    background_tasks: set[asyncio.Task[None]] = set()
    app.state.websocket_hub = websocket_hub
    app.state.coordinator = montage

    def on_coordinator_event(event: CoordinatorEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Mutation outside the server loop; clients resync on their next connect.
            return
        if event.kind == EVENT_OUTCOME and event.summary is not None:
            task = loop.create_task(websocket_hub.broadcast_outcome(event.summary))
        else:
            task = loop.create_task(websocket_hub.broadcast_state(montage))
        background_tasks.add(task)
        task.add_done_callback(background_tasks.discard)

    montage.subscribe(on_coordinator_event)

    def get_coordinator() -> MontageCoordinator:
        return montage

    def require_role(token: str, allowed: tuple[str, ...]) -> str:
        role = tokens.role_for(token)
        if role is None:
            raise HTTPException(status_code=401, detail="Token invalid")
        if role not in allowed:
            raise HTTPException(status_code=403, detail="Action not allowed")
        return role

    @app.post("/api/montage", response_model=MontageStateResponse)
    async def start_montage(
        payload: StartMontageRequest,
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> MontageStateResponse:
        require_role(payload.token, (ROLE_HOST,))
        candidates = [_to_actor(actor, local_settings.system_id) for actor in payload.candidates]
        heroes = [actor for actor in candidates if local_coordinator.is_eligible(actor)]
        if not heroes:
            raise HTTPException(status_code=422, detail="No hero actors among candidates")
        config = MontageConfig(
            id=uuid.uuid4().hex,
            title=payload.title,
            description=payload.description,
            difficulty=payload.difficulty,
            visibility=payload.visibility,
            max_rounds=payload.max_rounds or local_settings.max_rounds,
            group_size=len(heroes),
            success_limit=payload.success_limit,
            failure_limit=payload.failure_limit,
        )
        users = [UserRecord(id=user.id, name=user.name, is_gm=user.is_gm) for user in payload.users]
        local_coordinator.start_test(config, candidates, users)
        return MontageStateResponse(state=local_coordinator.snapshot_for(ROLE_HOST) or {})

    @app.get("/api/montage", response_model=MontageStateResponse)
    async def get_montage(
        token: str = Query(min_length=1),
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> MontageStateResponse:
        role = require_role(token, (ROLE_HOST, ROLE_PLAYER))
        state = local_coordinator.snapshot_for(role)
        if state is None:
            raise HTTPException(status_code=404, detail="No active montage")
        return MontageStateResponse(state=state)

    @app.delete("/api/montage", status_code=204)
    async def end_montage(
        token: str = Query(min_length=1),
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> None:
        require_role(token, (ROLE_HOST,))
        local_coordinator.end_test()

    @app.post("/api/montage/intents", response_model=IntentResponse)
    async def post_intent(
        payload: IntentEnvelope,
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> IntentResponse:
        require_role(payload.token, (ROLE_HOST, ROLE_PLAYER))
        result = local_coordinator.handle_message(
            {
                "kind": "submitIntent",
                "participantId": payload.participant_id,
                "actionType": payload.action_type,
                "characteristic": payload.characteristic,
                "narrative": payload.narrative,
            }
        )
        return _intent_response(result)

    @app.post("/api/montage/approvals/{approval_id}/approve", response_model=MontageStateResponse)
    async def approve_action(
        approval_id: str,
        payload: TokenEnvelope,
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> MontageStateResponse:
        require_role(payload.token, (ROLE_HOST,))
        try:
            approved = await local_coordinator.approve(approval_id)
        except RollFailedError as exc:
            raise HTTPException(status_code=502, detail="Roll failed") from exc
        except ApprovalInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not approved:
            raise HTTPException(status_code=404, detail="Approval not found")
        return MontageStateResponse(state=local_coordinator.snapshot_for(ROLE_HOST) or {})

    @app.post("/api/montage/approvals/{approval_id}/reject", response_model=MontageStateResponse)
    async def reject_action(
        approval_id: str,
        payload: TokenEnvelope,
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> MontageStateResponse:
        require_role(payload.token, (ROLE_HOST,))
        try:
            rejected = local_coordinator.reject(approval_id)
        except ApprovalInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not rejected:
            raise HTTPException(status_code=404, detail="Approval not found")
        return MontageStateResponse(state=local_coordinator.snapshot_for(ROLE_HOST) or {})

    @app.websocket("/ws/montage")
    async def montage_ws(
        websocket: WebSocket,
        local_coordinator: MontageCoordinator = Depends(get_coordinator),
    ) -> None:
        role = tokens.role_for(websocket.query_params.get("token"))
        if role is None:
            await websocket.close(code=1008)
            return

        await websocket_hub.connect(role=role, websocket=websocket)
        await websocket_hub.send_state(websocket=websocket, state=local_coordinator.snapshot_for(role))

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    await websocket.send_json({"type": "error", "detail": "Message is not JSON"})
                    continue
                try:
                    intent = IntentMessage.model_validate(message)
                except ValidationError:
                    await websocket.send_json({"type": "error", "detail": "Intent not understood"})
                    continue
                result = local_coordinator.handle_message(intent.model_dump(by_alias=True))
                if result is not None:
                    await websocket.send_json({"type": "intent.result", "ok": result.ok, "error": result.error})
        except WebSocketDisconnect:
            websocket_hub.disconnect(websocket=websocket)

    return app


def _intent_response(result: IntentResult | None) -> IntentResponse:
    if result is None:
        raise HTTPException(status_code=422, detail="Intent not understood")
    return IntentResponse(ok=result.ok, error=result.error)


def main() -> None:
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


app = create_app()


if __name__ == "__main__":
    main()
