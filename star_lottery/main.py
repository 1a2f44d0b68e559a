"""FastAPI application exposing the lottery engine."""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, StorageMode, load_settings
from .db import init_db, make_engine, make_session_factory
from .engine import GameEngine, winner_amount
from .errors import LotteryError
from .ledger import create_ledger
from .logging_config import get_logger
from .models import CreateGameRequest, GameState, InvoiceRequest, JoinRequest, Participant
from .payment import StarsPaymentService, TelegramStarsClient, parse_successful_payment
from .storage import create_game_store
from .subscriptions import Subscription

logger = get_logger(__name__)

router = APIRouter()


def get_engine(request: Request) -> GameEngine:
    return request.app.state.engine


def get_payments(request: Request) -> StarsPaymentService:
    return request.app.state.payments


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def _game_state(engine: GameEngine, game_id: str) -> GameState:
    game = await engine.get_game(game_id)
    players = await engine.get_game_players(game_id)
    return GameState(game=game, players=players, winner_amount=winner_amount(game.prize_pool, engine.winner_share))


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/games")
async def create_game(
    body: CreateGameRequest,
    engine: GameEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """Create a new waiting game."""
    max_players = body.max_players if body.max_players is not None else settings.default_max_players
    entry_fee = body.entry_fee if body.entry_fee is not None else settings.default_entry_fee
    return await engine.create_game(max_players, entry_fee)


@router.get("/games/current", response_model=GameState)
async def current_game(engine: GameEngine = Depends(get_engine), settings: Settings = Depends(get_settings)):
    """Current waiting game, created on demand so there is always one to join."""
    game = await engine.get_current_game()
    if game is None:
        game = await engine.create_game(settings.default_max_players, settings.default_entry_fee)
    return await _game_state(engine, game.id)


@router.get("/games/{game_id}", response_model=GameState)
async def get_game(game_id: str, engine: GameEngine = Depends(get_engine)):
    return await _game_state(engine, game_id)


@router.get("/games/{game_id}/players")
async def get_players(game_id: str, engine: GameEngine = Depends(get_engine)):
    await engine.get_game(game_id)
    return await engine.get_game_players(game_id)


@router.post("/games/{game_id}/join")
async def join_game(game_id: str, body: JoinRequest, engine: GameEngine = Depends(get_engine)):
    """Charge the entry fee and add the participant to the game."""
    player = await engine.join_game(game_id, Participant(id=body.user_id, name=body.display_name))
    game = await engine.get_game(game_id)
    return {"player": player, "game": game}


@router.post("/games/{game_id}/select-winner")
async def select_winner(game_id: str, engine: GameEngine = Depends(get_engine)):
    return await engine.select_winner(game_id)


@router.get("/balance/{user_id}")
async def get_balance(user_id: str, payments: StarsPaymentService = Depends(get_payments)):
    return await payments.ledger.get_record(user_id)


@router.post("/payments/invoice")
async def create_invoice(body: InvoiceRequest, request: Request):
    """Create a Telegram Stars invoice link for topping up a balance."""
    client: Optional[TelegramStarsClient] = request.app.state.stars_client
    if client is None:
        raise HTTPException(status_code=503, detail="Telegram payments are not configured")
    if body.amount <= 0:
        raise HTTPException(status_code=422, detail="amount must be positive")
    link = await client.create_invoice_link(body.user_id, body.amount, body.description, payload=f"topup:{body.user_id}")
    return {"invoice_link": link}


@router.post("/payments/telegram-webhook")
async def telegram_webhook(update: dict, payments: StarsPaymentService = Depends(get_payments)):
    """Credit a successful Stars payment reported by the Bot API."""
    payment = parse_successful_payment(update)
    if payment is None:
        return {"status": "ignored"}
    if not payment["charge_id"]:
        raise HTTPException(status_code=422, detail="missing telegram_payment_charge_id")
    result = await payments.process_successful_payment(payment["user_id"], payment["amount"], payment["charge_id"])
    if not result.success:
        raise HTTPException(status_code=422, detail=result.error)
    return {"status": "ok", "transaction_id": result.transaction_id}


async def pump_events(ws: WebSocket, queue: asyncio.Queue, subscription: Subscription):
    """Forward queued events to the socket until a send fails or the task is cancelled."""
    try:
        while True:
            event = await queue.get()
            await ws.send_json(event.model_dump(mode="json"))
    except Exception as exc:  # noqa: BLE001
        logger.warning("Game stream send failed game_id=%s error=%s", subscription.game_id, exc)
    finally:
        subscription.cancel()


@router.websocket("/ws/games/{game_id}")
async def ws_game(ws: WebSocket, game_id: str):
    """Stream game events (joins, full, completion) to a connected client."""
    engine: GameEngine = ws.app.state.engine
    await ws.accept()
    try:
        state = await _game_state(engine, game_id)
    except LotteryError as exc:
        await ws.send_json({"type": "error", **exc.to_dict()})
        await ws.close()
        return

    queue: asyncio.Queue = asyncio.Queue()

    async def forward(event):
        await queue.put(event)

    subscription = engine.subscribe_to_updates(game_id, forward)

    await ws.send_json({"type": "snapshot", **state.model_dump(mode="json")})
    sender = asyncio.create_task(pump_events(ws, queue, subscription))
    try:
        while True:
            # Client messages are ignored; receiving detects disconnects.
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        subscription.cancel()


async def lottery_error_handler(request: Request, exc: LotteryError):
    logger.info("Request rejected path=%s error=%s detail=%s", request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Wire the collaborators named by settings.storage_mode into an app."""
    settings = settings or load_settings()
    app = FastAPI(title="Star Lottery")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    session_factory = None
    db_engine = None
    if settings.storage_mode == StorageMode.PERSISTENT:
        db_engine = make_engine(settings.database_url)
        session_factory = make_session_factory(db_engine)

    payments = StarsPaymentService(create_ledger(settings, session_factory))
    store = create_game_store(settings, session_factory)

    app.state.settings = settings
    app.state.payments = payments
    app.state.engine = GameEngine.from_settings(settings, store, payments)
    app.state.stars_client = (
        TelegramStarsClient(settings.telegram_bot_token, settings.telegram_api_base)
        if settings.telegram_bot_token
        else None
    )

    @app.on_event("startup")
    async def startup():
        """Initialize database tables in persistent mode."""
        if db_engine is not None:
            init_db(db_engine)
        logger.info("Star Lottery started storage_mode=%s", settings.storage_mode.value)

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.stars_client is not None:
            await app.state.stars_client.close()

    app.add_exception_handler(LotteryError, lottery_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
