from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings
from solana.rpc.async_api import AsyncClient

from errors import TokenMillError
from operations import CreateMarket, FreeMarket, LaunchCurve, QuoteSwap, Release, SetCurve, Stake, Swap, Vest
from service import TokenMillService


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    fallback_rpc_url: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    das_rpc_url: Optional[str] = None
    token_mill_program_id: str = "JoeaRXgtME3jAoz5WuFXGEndfv4NPH9nBxsLq44hk9J"
    token_mill_config: Optional[str] = None
    quote_token_mint: str = "So11111111111111111111111111111111111111112"
    swap_authority_key: Optional[str] = None  # base58 secret key
    swap_authority_keypair_path: Optional[str] = None
    authority_key: Optional[str] = None
    authority_keypair_path: Optional[str] = None
    protocol_fee_recipient: Optional[str] = None  # overrides the config account's recipient
    graduation_threshold: float = Field(default=69, gt=0)  # quote-token ui units
    default_slippage_bps: int = 100
    launch_min_curve_percent: int = 20
    launch_max_curve_percent: int = 80
    launch_min_sol_raised: float = 30
    just_send_it_sol_raised: float = 85
    just_send_it_curve_percent: int = 50
    probe_assume_absent_on_error: bool = False
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("tokenmill")

app = FastAPI(title="Token Mill Transaction Builder", version="0.1.0")


class MarketResponse(BaseModel):
    success: bool = True
    transaction: str
    marketAddress: str
    baseTokenMint: str


class SwapResponse(BaseModel):
    success: bool = True
    transaction: str


class DataResponse(BaseModel):
    success: bool = True
    data: Any


class GraduationResponse(BaseModel):
    success: bool = True
    baseTokenBalance: float
    quoteTokenBalance: float
    tokenInfo: Optional[Dict[str, Any]] = None
    graduation: bool
    graduation_percentage: str


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(TokenMillError)
async def tokenmill_error_handler(request: Request, exc: TokenMillError):
    logger.warning(
        "request_failed path=%s status=%s error_type=%s error=%s",
        request.url.path,
        exc.status_code,
        type(exc).__name__,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query"))
        messages.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return error_response(400, "; ".join(messages) or "Invalid request")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request_crashed path=%s error_type=%s", request.url.path, type(exc).__name__)
    return error_response(500, f"Internal error: {exc}")


@app.on_event("startup")
async def startup_event():
    # Prefer Helius RPC if provided to improve reliability.
    rpc_url = settings.helius_rpc_url or settings.solana_rpc
    app.state.rpc_client = AsyncClient(rpc_url)
    app.state.service = TokenMillService(app.state.rpc_client, settings)
    logger.info("service_started rpc=%s program=%s", rpc_url, settings.token_mill_program_id)


@app.on_event("shutdown")
async def shutdown_event():
    client = getattr(app.state, "rpc_client", None)
    if client is not None:
        await client.close()


def get_service(request: Request) -> TokenMillService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


@app.get("/health")
def health():
    return {"status": "ok", "program_id": settings.token_mill_program_id}


@app.post("/api/markets", response_model=MarketResponse)
async def create_market(req: CreateMarket, service: TokenMillService = Depends(get_service)):
    result = await service.run(req)
    return MarketResponse(**result)


@app.post("/api/swap", response_model=SwapResponse)
async def swap(req: Swap, service: TokenMillService = Depends(get_service)):
    result = await service.run(req)
    return SwapResponse(**result)


@app.post("/api/quote-swap", response_model=DataResponse)
async def quote_swap(req: QuoteSwap, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


@app.post("/api/stake", response_model=DataResponse)
async def stake(req: Stake, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


@app.post("/api/vesting", response_model=DataResponse)
async def create_vesting(req: Vest, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


@app.post("/api/vesting/release", response_model=DataResponse)
async def release_vesting(req: Release, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


@app.post("/api/set-curve", response_model=DataResponse)
async def set_curve(req: SetCurve, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


@app.post("/api/free-market", response_model=DataResponse)
async def free_market(req: FreeMarket, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


@app.get("/api/graduation", response_model=GraduationResponse)
async def graduation(market: str = Query(...), service: TokenMillService = Depends(get_service)):
    return GraduationResponse(**await service.graduation(market))


@app.post("/api/launch/curve", response_model=DataResponse)
async def launch_curve(req: LaunchCurve, service: TokenMillService = Depends(get_service)):
    return DataResponse(data=await service.run(req))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=4000, reload=True)
