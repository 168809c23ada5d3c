"""FastAPI gateway for the raffle: entry, queries, upkeep and live notifications."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from raffle.blockchain.oracle import MockVRFCoordinator, OracleError, RandomnessOracle
from raffle.lottery.errors import (
    DisbursementFailed,
    InsufficientEntry,
    OracleRequestFailed,
    PayoutUnconfirmed,
    RaffleError,
    RoundClosed,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import EVENT_TYPES
from raffle.lottery.models import LiveFeedItem, RoundSnapshot
from raffle.lottery.operator import RaffleOperator
from raffle.lottery.raffle import Raffle
from raffle.lottery.treasury import InMemoryTreasury, Treasury, TreasuryError
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class EnterRequest(BaseModel):
    player: str
    amount: int = Field(ge=0, description="Contribution in wei")
    tx_hash: Optional[str] = Field(default=None, description="Transfer carrying the contribution (production networks)")


class FundRequest(BaseModel):
    account: str
    amount: int = Field(ge=0)


class FulfillRequest(BaseModel):
    request_id: int
    random_words: Optional[List[int]] = None


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UpkeepNotNeeded):
        return HTTPException(status_code=409, detail={"error": "UpkeepNotNeeded", **exc.check.to_dict()})
    if isinstance(exc, InsufficientEntry):
        return HTTPException(status_code=400, detail={"error": "InsufficientEntry", "entranceFee": exc.entrance_fee})
    if isinstance(exc, RoundClosed):
        return HTTPException(status_code=409, detail={"error": "RoundClosed"})
    if isinstance(exc, UnknownRequest):
        return HTTPException(status_code=404, detail={"error": "UnknownRequest", "pending": exc.pending})
    if isinstance(exc, PayoutUnconfirmed):
        return HTTPException(status_code=504, detail={"error": "PayoutUnconfirmed", "txHash": exc.tx_hash})
    if isinstance(exc, (DisbursementFailed, TreasuryError)):
        return HTTPException(status_code=402, detail={"error": type(exc).__name__, "message": str(exc)})
    if isinstance(exc, (OracleRequestFailed, OracleError)):
        return HTTPException(status_code=502, detail={"error": type(exc).__name__, "message": str(exc)})
    return HTTPException(status_code=400, detail={"error": type(exc).__name__, "message": str(exc)})


class RaffleWebServer:
    """HTTP and WebSocket gateway for the raffle backend."""

    def __init__(
        self,
        config: Dict[str, Any],
        raffle: Raffle,
        *,
        treasury: Treasury,
        oracle: RandomnessOracle,
        operator: Optional[RaffleOperator] = None,
    ) -> None:
        self.config = config
        self.raffle = raffle
        self.treasury = treasury
        self.oracle = oracle
        self.operator = operator

        self.app = FastAPI(
            title="Verifiable Raffle API",
            description="Entry, query and upkeep surface for the VRF raffle",
            version="1.0.0",
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._broadcast_queue: Optional[asyncio.Queue[Tuple[str, Dict[str, Any]]]] = None
        self._broadcast_task: Optional[asyncio.Task[None]] = None
        self._ws_lock: Optional[asyncio.Lock] = None
        self._listeners_registered = False
        self._websockets: Set[WebSocket] = set()

        self._setup_middleware()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.get("server", {}).get("cors_origins", ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_routes(self) -> None:  # noqa: C901 - routing setup intentionally verbose
        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @self.app.get("/api/health")
        async def health_check() -> Dict[str, Any]:
            return {
                "status": "ok",
                "timestamp": datetime.utcnow().isoformat(),
                "components": {
                    "raffle": self.raffle.state.name,
                    "operator": self.operator.get_status()["status"] if self.operator else "disabled",
                    "oracle": self.oracle.address,
                },
            }

        # ------------------------------------------------------------------
        # Raffle state
        # ------------------------------------------------------------------
        @self.app.get("/api/raffle")
        async def get_raffle() -> Dict[str, Any]:
            return self._serialize_raffle()

        @self.app.get("/api/raffle/players")
        async def get_players() -> Dict[str, Any]:
            players = self.raffle.get_players()
            return {
                "round": self.raffle.round_number,
                "players": players,
                "totals": self.raffle.get_player_summary(),
                "count": len(players),
            }

        @self.app.get("/api/raffle/players/{index}")
        async def get_player(index: int) -> Dict[str, Any]:
            try:
                return {"index": index, "player": self.raffle.get_player(index)}
            except IndexError:
                raise HTTPException(status_code=404, detail=f"No player at index {index}")

        @self.app.post("/api/raffle/enter")
        async def enter_raffle(request: EnterRequest) -> Dict[str, Any]:
            try:
                index = await asyncio.to_thread(self.raffle.join, request.amount, request.player, request.tx_hash)
            except (RaffleError, TreasuryError) as exc:
                raise _http_error(exc) from exc
            return {"status": "entered", "index": index, "round": self.raffle.round_number}

        @self.app.get("/api/history")
        async def get_round_history(limit: int = 20) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            rounds = [self._serialize_history_round(item) for item in self.raffle.events.get_round_history(limit=limit)]
            return {
                "rounds": rounds,
                "summary": {
                    "total_rounds": len(rounds),
                    "total_volume_wei": sum(r["prize_wei"] for r in rounds),
                },
            }

        @self.app.get("/api/activities")
        async def get_live_feed(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            feed = self.raffle.events.get_live_feed(limit=limit)
            return {"activities": [self._serialize_activity(item) for item in reversed(feed)]}

        # ------------------------------------------------------------------
        # Upkeep
        # ------------------------------------------------------------------
        @self.app.get("/api/upkeep")
        async def check_upkeep() -> Dict[str, Any]:
            return self.raffle.evaluate().to_dict()

        @self.app.post("/api/upkeep/perform")
        async def perform_upkeep() -> Dict[str, Any]:
            try:
                request_id = await asyncio.to_thread(self.raffle.trigger_draw)
            except RaffleError as exc:
                raise _http_error(exc) from exc
            return {"status": "calculating", "request_id": request_id}

        # ------------------------------------------------------------------
        # Development network helpers
        # ------------------------------------------------------------------
        @self.app.post("/api/dev/fund")
        async def fund_account(request: FundRequest) -> Dict[str, Any]:
            if not isinstance(self.treasury, InMemoryTreasury):
                raise HTTPException(status_code=404, detail="Funding is only available on development networks")
            self.treasury.fund(request.account, request.amount)
            return {"account": request.account, "balance": self.treasury.balance_of(request.account)}

        @self.app.post("/api/dev/fulfill")
        async def fulfill(request: FulfillRequest) -> Dict[str, Any]:
            if not isinstance(self.oracle, MockVRFCoordinator):
                raise HTTPException(status_code=404, detail="Manual fulfillment is only available on development networks")
            try:
                winner = await asyncio.to_thread(
                    self.oracle.fulfill_random_words, request.request_id, self.raffle.address, request.random_words
                )
            except (RaffleError, OracleError) as exc:
                raise _http_error(exc) from exc
            return {"status": "resolved", "winner": winner}

        # ------------------------------------------------------------------
        # WebSocket endpoint
        # ------------------------------------------------------------------
        @self.app.websocket("/ws/raffle")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            if self._ws_lock is None:
                self._ws_lock = asyncio.Lock()
            async with self._ws_lock:
                self._websockets.add(websocket)
            logger.info("WebSocket client connected (%s total)", len(self._websockets))
            try:
                await websocket.send_json({"type": "snapshot", "payload": self._serialize_raffle()})
                while True:
                    try:
                        await websocket.receive_text()
                    except WebSocketDisconnect:
                        break
            finally:
                async with self._ws_lock:
                    self._websockets.discard(websocket)
                logger.info("WebSocket client disconnected (%s remaining)", len(self._websockets))

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        logger.info("Starting raffle web server on %s:%s", host, port)
        self._loop = asyncio.get_running_loop()
        if self._broadcast_queue is None:
            self._broadcast_queue = asyncio.Queue()
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        self._register_event_listeners()
        if self._broadcast_task is None:
            self._broadcast_task = asyncio.create_task(self._broadcast_loop(), name="raffle-web-broadcast")

        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        server = uvicorn.Server(config)
        try:
            await server.serve()
        finally:
            logger.info("Raffle web server stopped")

    async def stop(self) -> None:
        logger.info("Stopping raffle web server")
        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        async with self._ws_lock:
            for websocket in list(self._websockets):
                try:
                    await websocket.close(code=1001, reason="Server shutdown")
                except RuntimeError as exc:
                    logger.debug("Error closing websocket: %s", exc)
            self._websockets.clear()

    # ------------------------------------------------------------------
    # Event listeners & broadcasting
    # ------------------------------------------------------------------
    def _register_event_listeners(self) -> None:
        if self._listeners_registered:
            return
        for event in EVENT_TYPES:
            self.raffle.events.add_listener(event, lambda payload, evt=event: self._enqueue_broadcast(evt, payload))
        self._listeners_registered = True

    def _enqueue_broadcast(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self._broadcast_queue or not self._loop:
            return
        try:
            self._loop.call_soon_threadsafe(self._broadcast_queue.put_nowait, (event_type, payload))
        except RuntimeError:
            logger.debug("Failed to enqueue broadcast for %s", event_type)

    async def _broadcast_loop(self) -> None:
        assert self._broadcast_queue is not None
        while True:
            try:
                event_type, payload = await self._broadcast_queue.get()
                await self._broadcast_to_clients(event_type, payload)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception("Broadcast loop error: %s", exc)

    async def _broadcast_to_clients(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        message = {"type": event_type, "payload": payload, "timestamp": datetime.utcnow().isoformat()}
        async with self._ws_lock:
            if not self._websockets:
                return
            to_remove: List[WebSocket] = []
            for websocket in self._websockets:
                try:
                    await websocket.send_json(message)
                except (RuntimeError, WebSocketDisconnect) as exc:
                    logger.debug("WebSocket send failed: %s", exc)
                    to_remove.append(websocket)
            for websocket in to_remove:
                self._websockets.discard(websocket)

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------
    def _serialize_raffle(self) -> Dict[str, Any]:
        raffle = self.raffle
        return {
            "address": raffle.address,
            "network": raffle.config.network,
            "entrance_fee": raffle.entrance_fee,
            "interval": raffle.interval,
            "state": raffle.state.name,
            "round": raffle.round_number,
            "number_of_players": raffle.number_of_players,
            "balance": raffle.balance,
            "recent_winner": raffle.recent_winner,
            "last_timestamp": raffle.last_timestamp,
            "pending_request_id": raffle.pending_request_id,
            "num_words": raffle.num_words,
            "request_confirmations": raffle.request_confirmations,
        }

    def _serialize_history_round(self, snapshot: RoundSnapshot) -> Dict[str, Any]:
        return {
            "round": snapshot.round_number,
            "winner": snapshot.winner,
            "prize_wei": snapshot.prize,
            "player_count": snapshot.player_count,
            "request_id": snapshot.request_id,
            "random_word": str(snapshot.random_word),
            "finished_at": snapshot.finished_at,
        }

    def _serialize_activity(self, item: LiveFeedItem) -> Dict[str, Any]:
        return {
            "activity_id": item.get_item_id(),
            "activity_type": item.event_type,
            "message": item.message,
            "details": item.details,
            "timestamp": item.created_at.isoformat(),
        }
