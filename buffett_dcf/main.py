import logging
import os
from typing import Any, Dict, Optional

import requests
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .chart import chart_rows
from .config import (
    NarrativeSettings,
    ProxySettings,
    allowed_origins,
    load_narrative_settings,
    load_proxy_settings,
)
from .controls import (
    CASH_FLOW_PRESETS,
    DEFAULT_PARAMS,
    SLIDER_BOUNDS,
    TRACK_MAX,
    cash_flow_to_slider,
    format_cash_flow,
    parse_cash_flow_input,
    slider_to_cash_flow,
)
from .dcf_engine import DCFComputationError, ValuationParameters, compute_valuation, round_for_display
from .narrative import (
    NarrativePending,
    NarrativeUnavailable,
    SingleFlight,
    build_prompt,
    fetch_narrative,
)

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

INFEASIBLE_MESSAGE = "Perpetual growth rate must be lower than the discount rate"
NARRATIVE_FAILED_MESSAGE = (
    "AI commentary is temporarily unavailable (retried several times). "
    "Check the network connection or whether the API key is valid."
)
MISSING_KEY_MESSAGE = "Server API key is not configured"
FORWARD_FAILED_MESSAGE = "Failed to forward request"

_PROXY_SESSION = requests.Session()
_NARRATIVE_FLIGHT = SingleFlight()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _bounded_field(name: str) -> Any:
    bounds = SLIDER_BOUNDS[name]
    return Field(DEFAULT_PARAMS[name], ge=bounds["min"], le=bounds["max"])


class NarrativeRequest(BaseModel):
    fcf: float = Field(DEFAULT_PARAMS["fcf"], ge=0)
    growth: float = _bounded_field("growth")
    discount: float = _bounded_field("discount")
    perpetual: float = _bounded_field("perpetual")


def _bounded(name: str) -> Any:
    bounds = SLIDER_BOUNDS[name]
    return Query(DEFAULT_PARAMS[name], ge=bounds["min"], le=bounds["max"])


def _compute(params: ValuationParameters) -> Any:
    try:
        return compute_valuation(params)
    except DCFComputationError as exc:
        logger.warning("Valuation rejected %s: %s", params, exc)
        raise HTTPException(
            status_code=422,
            detail={"error": "invalid_parameters", "message": str(exc)},
        )


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/api/valuation")
async def get_valuation(
    fcf: float = Query(DEFAULT_PARAMS["fcf"], ge=0),
    growth: float = _bounded("growth"),
    discount: float = _bounded("discount"),
    perpetual: float = _bounded("perpetual"),
) -> Dict[str, Any]:
    params = ValuationParameters.from_percentages(fcf, growth, discount, perpetual)
    valuation = _compute(params)
    payload: Dict[str, Any] = {
        "params": {"fcf": fcf, "growth": growth, "discount": discount, "perpetual": perpetual},
        "feasible": valuation is not None,
        "valuation": round_for_display(valuation),
        "chartData": chart_rows(valuation),
    }
    if valuation is None:
        payload["error"] = "infeasible_input"
        payload["message"] = INFEASIBLE_MESSAGE
    return payload


@app.get("/api/controls")
async def get_controls() -> Dict[str, Any]:
    return {
        "defaults": DEFAULT_PARAMS,
        "bounds": SLIDER_BOUNDS,
        "cashFlowPresets": [
            {"value": preset, "label": format_cash_flow(preset), "sliderPosition": cash_flow_to_slider(preset)}
            for preset in CASH_FLOW_PRESETS
        ],
        "cashFlowTrack": {"min": 0.0, "max": TRACK_MAX},
    }


@app.get("/api/controls/cash-flow")
async def get_cash_flow_control(
    position: Optional[float] = Query(None, ge=0, le=TRACK_MAX),
    text: Optional[str] = None,
) -> Dict[str, Any]:
    """Resolve a track position or a typed entry into a base cash flow."""
    if position is not None:
        value: Optional[float] = slider_to_cash_flow(position)
    elif text is not None:
        value = parse_cash_flow_input(text)
    else:
        raise HTTPException(
            status_code=422,
            detail={"error": "missing_input", "message": "Provide either position or text"},
        )
    if value is None:
        return {"value": None, "accepted": False, "label": None, "sliderPosition": None}
    return {
        "value": value,
        "accepted": True,
        "label": format_cash_flow(value),
        "sliderPosition": cash_flow_to_slider(value),
    }


@app.post("/api/narrative")
def post_narrative(
    body: NarrativeRequest,
    settings: NarrativeSettings = Depends(load_narrative_settings),
) -> Dict[str, Any]:
    params = ValuationParameters.from_percentages(body.fcf, body.growth, body.discount, body.perpetual)
    valuation = _compute(params)
    if valuation is None:
        raise HTTPException(
            status_code=422,
            detail={"error": "infeasible_input", "message": INFEASIBLE_MESSAGE},
        )

    prompt = build_prompt(params, valuation)
    try:
        narrative = _NARRATIVE_FLIGHT.run(
            params,
            lambda: fetch_narrative(prompt, settings.endpoint, timeout=settings.timeout),
        )
    except NarrativePending as exc:
        raise HTTPException(status_code=409, detail={"error": "narrative_pending", "message": str(exc)})
    except NarrativeUnavailable as exc:
        logger.warning("Narrative unavailable after %d attempt(s): %s", exc.attempts, exc)
        raise HTTPException(
            status_code=503,
            detail={"error": "narrative_unavailable", "message": NARRATIVE_FAILED_MESSAGE},
        )
    return {"narrative": narrative, "totalIntrinsicValue": round(valuation["totalIntrinsicValue"], 2)}


def _forward(settings: ProxySettings, body: Any) -> requests.Response:
    return _PROXY_SESSION.post(
        settings.upstream_url,
        params={"key": settings.api_key},
        json=body,
        headers={"Content-Type": "application/json"},
        timeout=settings.timeout,
    )


@app.api_route("/api/generate", methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"])
async def generate(request: Request, settings: ProxySettings = Depends(load_proxy_settings)):
    """Relay a generateContent call upstream with the server-held key attached."""
    if request.method != "POST":
        return JSONResponse(status_code=405, content={"error": "Method Not Allowed"})

    if not settings.api_key:
        logger.error("GEMINI_API_KEY is not set; refusing to proxy")
        return JSONResponse(status_code=500, content={"error": MISSING_KEY_MESSAGE})

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    try:
        upstream = await run_in_threadpool(_forward, settings, body)
        data = upstream.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("Proxy error: %s", type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": FORWARD_FAILED_MESSAGE})

    return JSONResponse(status_code=upstream.status_code, content=data)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "8000")))
