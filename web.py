import json
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.billing import router as billing_router
from jobs.billing import start_billing_workers
from tuitionbill.config import cfg, VERSION, API_BASE
from tuitionbill.db import DB
from tuitionbill.events import log_event, E
from tuitionbill.log import get_logger, set_trace_id

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """JSON response that keeps non-ASCII text (payer names, notes) unescaped."""

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="Tuition Billing API",
    description="Billing runs, invoices, make-up credits, installment plans, payments and refunds",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.get("cors.allow_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_header(request: Request, call_next):
    trace_id = set_trace_id(request.headers.get("X-Trace-Id", ""))
    response = await call_next(request)
    response.headers["X-Version"] = VERSION
    response.headers["X-Trace-Id"] = trace_id
    return response


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(billing_router)
app.include_router(api_router)


@app.on_event("startup")
async def startup():
    DB.create_tables()
    if cfg.get("jobs.enabled", True):
        start_billing_workers()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, jobs=bool(cfg.get("jobs.enabled", True)))
