"""
FastAPI application for the P&L dashboard.

Routes are thin: raw query parameters go straight to PnLService, which
validates them and answers with data or a structured error body.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from pnl_matrix.api.service import PnLService, ServiceResponse, get_pnl_service

logger = logging.getLogger(__name__)


def _reply(response: ServiceResponse) -> JSONResponse:
    content = response.data if response.ok else response.error
    return JSONResponse(status_code=response.status, content=content)


def create_app(service: Optional[PnLService] = None) -> FastAPI:
    """Build the application; the service is created on first request unless injected."""
    app = FastAPI(title="P&L Matrix API", version="1.0.0")

    def svc() -> PnLService:
        return service or get_pnl_service()

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/pnl")
    async def pnl(year: Optional[str] = Query(None, description="Reporting year, defaults to the current year")):
        return _reply(await svc().get_tree(year))

    @app.get("/api/nfe-details")
    async def nfe_details(
        ym: Optional[str] = Query(None, description="Month key YYYY-MM"),
        kind: Optional[str] = Query(None),
        year: Optional[str] = Query(None),
        breakdown: Optional[str] = Query(None, description="family or product"),
    ):
        return _reply(await svc().revenue_details(ym=ym, kind=kind, year=year, breakdown=breakdown))

    @app.get("/api/cogs-details")
    async def cogs_details(
        ym: Optional[str] = Query(None, description="Month key YYYY-MM"),
        kind: Optional[str] = Query(None),
        year: Optional[str] = Query(None),
        breakdown: Optional[str] = Query(None, description="family, product or family_percent"),
    ):
        return _reply(await svc().cogs_details(ym=ym, kind=kind, year=year, breakdown=breakdown))

    @app.get("/api/volume-details")
    async def volume_details(
        year: Optional[str] = Query(None),
        kind: Optional[str] = Query(None),
        breakdown: Optional[str] = Query(None, description="family or product"),
    ):
        return _reply(await svc().volume_details(year=year, kind=kind, breakdown=breakdown))

    @app.get("/api/tax-details")
    async def tax_details(
        ym: Optional[str] = Query(None),
        tax_name: Optional[str] = Query(None, alias="taxName"),
        scenario: Optional[str] = Query(None),
    ):
        return _reply(await svc().tax_details(ym=ym, tax_name=tax_name, scenario=scenario))

    @app.get("/api/despesa-details")
    async def expense_details(
        ym: Optional[str] = Query(None),
        code: Optional[str] = Query(None, description="Expense group, e.g. '2.04 + Comerciais'"),
        cat: Optional[str] = Query(None),
    ):
        return _reply(await svc().expense_details(ym=ym, code=code, cat=cat))

    @app.get("/api/financial-revenue-details")
    async def financial_revenue_details(
        year: Optional[str] = Query(None),
        month: Optional[str] = Query(None),
        cat_sup: Optional[str] = Query(None, alias="catSup"),
        cat_desc: Optional[str] = Query(None, alias="catDesc"),
    ):
        return _reply(await svc().financial_revenue_details(
            year=year, month=month, cat_sup=cat_sup, cat_desc=cat_desc,
        ))

    return app


app = create_app()
