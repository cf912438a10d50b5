"""Operator page router."""

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from hitl_broker.ui.page import render_page

router = APIRouter(tags=["ui"])


@router.get("/", response_class=HTMLResponse)
async def operator_page() -> HTMLResponse:
    return HTMLResponse(render_page())
