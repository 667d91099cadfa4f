"""FastAPI JSON API over the settlement engine."""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from execution.settlement import SettlementEngine
from shared.errors import (
    AccountNotFound,
    InstrumentNotFound,
    InsufficientBalance,
    InvalidAmount,
    TradeNotFound,
    TradingError,
)
from shared.schemas import (
    CloseResult,
    CloseTradeRequest,
    FundsRequest,
    OpenTradeRequest,
    Trade,
)

app = FastAPI(title="Binary Options Desk")

# Shared engine instance (set by server.py)
_engine: SettlementEngine | None = None
_demo_balance: float = 0.0

_STATUS_CODES = {
    InvalidAmount: 422,
    InsufficientBalance: 409,
    InstrumentNotFound: 404,
    AccountNotFound: 404,
    TradeNotFound: 404,
}


def set_engine(engine: SettlementEngine, demo_balance: float = 0.0):
    global _engine, _demo_balance
    _engine = engine
    _demo_balance = demo_balance


def _get_engine() -> SettlementEngine:
    if _engine is None:
        raise RuntimeError("Settlement engine not initialized")
    return _engine


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError):
    status = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
    )
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "detail": str(exc)},
    )


@app.get("/api/status")
async def api_status():
    engine = _get_engine()
    return {
        "status": "running",
        "pending_expiries": engine.scheduler.pending,
        "trade_duration_seconds": engine.config.TRADE_DURATION_SECONDS,
    }


@app.get("/api/instruments")
async def api_instruments():
    engine = _get_engine()
    instruments = []
    for pair in engine.catalog.all():
        price = engine.quotes.latest_price(pair.symbol) if engine.quotes else None
        instruments.append({"symbol": pair.symbol, "name": pair.name, "price": price or pair.price})
    return {"instruments": instruments}


@app.post("/api/accounts/{user_id}")
async def api_open_account(user_id: str):
    engine = _get_engine()
    balance = await engine.ledger.open_account(user_id, _demo_balance)
    return {"user_id": user_id, "balance": balance}


@app.get("/api/accounts/{user_id}")
async def api_balance(user_id: str):
    engine = _get_engine()
    balance = await engine.ledger.get_balance(user_id)
    return {"user_id": user_id, "balance": balance}


@app.post("/api/accounts/{user_id}/deposit")
async def api_deposit(user_id: str, body: FundsRequest):
    engine = _get_engine()
    balance = await engine.ledger.deposit(user_id, body.amount)
    return {"user_id": user_id, "balance": balance}


@app.post("/api/accounts/{user_id}/withdraw")
async def api_withdraw(user_id: str, body: FundsRequest):
    engine = _get_engine()
    balance = await engine.ledger.withdraw(user_id, body.amount)
    return {"user_id": user_id, "balance": balance}


@app.post("/api/trades", response_model=Trade)
async def api_open_trade(body: OpenTradeRequest):
    engine = _get_engine()
    return await engine.open_trade(
        body.user_id, body.pair, body.direction, body.amount, body.current_price
    )


@app.post("/api/trades/{trade_id}/close", response_model=CloseResult)
async def api_close_trade(trade_id: str, body: CloseTradeRequest):
    engine = _get_engine()
    return await engine.close_trade(body.user_id, trade_id, body.exit_price)


@app.get("/api/users/{user_id}/trades/open")
async def api_open_trades(user_id: str):
    engine = _get_engine()
    trades = await engine.list_open_trades(user_id)
    return {"trades": [t.model_dump(mode="json") for t in trades]}


@app.get("/api/users/{user_id}/trades/history")
async def api_trade_history(user_id: str):
    engine = _get_engine()
    trades = await engine.list_trade_history(user_id)
    return {"trades": [t.model_dump(mode="json") for t in trades]}


@app.get("/api/users/{user_id}/stats")
async def api_stats(user_id: str):
    engine = _get_engine()
    stats = await engine.get_stats(user_id)
    return stats.model_dump()
