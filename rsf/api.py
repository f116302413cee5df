"""FastAPI boundary: signed protocol callbacks plus operator endpoints.

Protocol endpoints always answer with an ACK/NACK envelope. Operator
endpoints under /ui/{participant_id} return outcomes and reports as JSON.
"""

import json
import logging
import sqlite3
from dataclasses import asdict
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from rsf.config.schema import RsfConfig
from rsf.errors import RsfError, SigningError
from rsf.gateway.client import ProtocolGateway
from rsf.gateway.contract import Gateway
from rsf.gateway.signing import Signer, subscriber_of, verify_header
from rsf.models.common import Role
from rsf.models.order import FeeType, OrderEvent, OrderState, QuoteLine, SettlementBasis
from rsf.models.outcome import ErrorKind, Outcome
from rsf.models.protocol import Action, MiscFiling, OnReconReply, ReconRequest
from rsf.models.settlement import SettlementStatus
from rsf.orders.book import OrderBook
from rsf.protocol.envelope import NackCode, nack_response, response_for
from rsf.protocol.schemas import PARSERS
from rsf.recon.lifecycle import ReconLifecycle
from rsf.settle.lifecycle import SettlementLifecycle
from rsf.storage import settlement_repo
from rsf.storage.database import connect, run_migrations

logger = logging.getLogger(__name__)

_STATUS_FOR_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PRECONDITION: 409,
    ErrorKind.CONSISTENCY: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.TRANSPORT: 502,
    ErrorKind.UNEXPECTED: 500,
}


# ── Request bodies ──────────────────────────────────────────────


class QuoteLineBody(BaseModel):
    id: str
    title: str = ""
    price: float
    is_tax: bool = False


class OrderEventBody(BaseModel):
    model_config = {"extra": "forbid"}

    action: str
    order_id: str
    state: OrderState
    bap_id: str = ""
    bap_uri: str = ""
    bpp_id: str = ""
    bpp_uri: str = ""
    domain: str = ""
    provider_id: str = ""
    collected_by: Role | None = None
    total_order_value: float = 0.0
    buyer_finder_fee_type: FeeType | None = None
    buyer_finder_fee_value: float | None = None
    settlement_basis: SettlementBasis | None = None
    settlement_window: str | None = None
    withholding_amount: float | None = None
    msn: bool | None = None
    breakup: list[QuoteLineBody] = []
    picked_up_at: str | None = None
    delivered_at: str | None = None

    def to_event(self) -> OrderEvent:
        data = self.model_dump(exclude={"breakup"})
        return OrderEvent(**data, breakup=[QuoteLine(**b.model_dump()) for b in self.breakup])


class PrepareBody(BaseModel):
    order_ids: list[str]


class SettleBody(BaseModel):
    settlement_ids: list[str]


class MiscFilingBody(BaseModel):
    model_config = {"extra": "forbid"}

    provider_id: str | None = None
    provider_amount: float | None = None
    self_amount: float | None = None


class ReconRequestBody(BaseModel):
    order_id: str
    amount: float | None = None
    commission: float | None = None
    withholding_amount: float | None = None
    tcs: float | None = None
    tds: float | None = None


class ReconBody(BaseModel):
    orders: list[ReconRequestBody]


class OnReconReplyBody(ReconRequestBody):
    accord: bool
    due_date: str | None = None


class OnReconBody(BaseModel):
    orders: list[OnReconReplyBody]


def outcome_json(outcome: Outcome) -> dict:
    return {
        "ok": outcome.ok,
        "order_ids": outcome.order_ids,
        "settlement_ids": outcome.settlement_ids,
        "transaction_id": outcome.transaction_id,
        "message_id": outcome.message_id,
        "failures": [asdict(f) for f in outcome.failures],
    }


def _outcome_response(outcome: Outcome) -> JSONResponse:
    status = 200
    if not outcome.ok and outcome.first_failure is not None:
        status = _STATUS_FOR_KIND.get(outcome.first_failure.kind, 500)
    return JSONResponse(outcome_json(outcome), status_code=status)


def default_gateway(config: RsfConfig) -> Gateway | None:
    """An outbound gateway when a signing identity is configured, else None."""
    s = config.signing
    if not (s.subscriber_id and s.unique_key_id and s.private_key):
        return None
    try:
        signer = Signer(s.subscriber_id, s.unique_key_id, s.private_key, s.signature_ttl_seconds)
    except SigningError:
        logger.exception("Signing key is unusable, outbound messages are disabled")
        return None
    return ProtocolGateway(signer, timeout=config.gateway.timeout_seconds)


def create_app(
    config: RsfConfig,
    db_path: str | Path | None = None,
    gateway: Gateway | None = None,
) -> FastAPI:
    db_path = db_path or config.storage.db_path
    gateway = gateway if gateway is not None else default_gateway(config)

    bootstrap = connect(db_path)
    try:
        run_migrations(bootstrap)
    finally:
        bootstrap.close()

    app = FastAPI(title="Settlement & Reconciliation", version="0.1.0")

    def _conn() -> sqlite3.Connection:
        return connect(db_path)

    # ── Protocol callbacks ──────────────────────────────────────

    def _handle_inbound(action: Action, authorization: str | None, body: bytes) -> JSONResponse:
        if config.gateway.verify_inbound_signatures:
            if not authorization:
                return JSONResponse(nack_response(NackCode.MISSING_AUTHORIZATION), status_code=401)
            subscriber = subscriber_of(authorization)
            key = config.public_key_for(subscriber) if subscriber else None
            if key is None or not verify_header(authorization, body, key):
                logger.warning("Rejected %s with invalid signature from %s", action, subscriber)
                return JSONResponse(nack_response(NackCode.INVALID_SIGNATURE), status_code=401)

        try:
            payload = json.loads(body)
            if not isinstance(payload, dict):
                raise ValueError("payload is not an object")
            inbound = PARSERS[action](payload)
        except (ValueError, RsfError) as e:
            logger.warning("Rejected malformed %s: %s", action, e)
            return JSONResponse(nack_response(NackCode.INVALID_PAYLOAD, str(e)), status_code=400)

        conn = _conn()
        try:
            if action == Action.ON_SETTLE:
                outcome = SettlementLifecycle(conn, config).apply_counterparty_confirmation(inbound)
            elif action == Action.RECON:
                outcome = ReconLifecycle(conn, config).receive_recon(inbound)
            else:
                outcome = ReconLifecycle(conn, config).receive_on_recon(inbound)
        finally:
            conn.close()

        failure = outcome.first_failure
        if failure is not None and failure.kind == ErrorKind.UNEXPECTED:
            return JSONResponse(nack_response(NackCode.SERVICE_ERROR, failure.detail), status_code=500)
        return JSONResponse(response_for(outcome))

    async def _inbound(action: Action, request: Request) -> JSONResponse:
        body = await request.body()
        try:
            return await run_in_threadpool(
                _handle_inbound, action, request.headers.get("authorization"), body
            )
        except Exception:
            logger.exception("Unhandled error processing %s", action)
            return JSONResponse(nack_response(NackCode.SERVICE_ERROR), status_code=500)

    @app.post("/recon")
    async def post_recon(request: Request):
        return await _inbound(Action.RECON, request)

    @app.post("/on_recon")
    async def post_on_recon(request: Request):
        return await _inbound(Action.ON_RECON, request)

    @app.post("/on_settle")
    async def post_on_settle(request: Request):
        return await _inbound(Action.ON_SETTLE, request)

    # ── Operator endpoints ──────────────────────────────────────

    @app.post("/ui/{participant_id}/orders")
    def post_order_event(participant_id: str, body: OrderEventBody):
        conn = _conn()
        try:
            return _outcome_response(OrderBook(conn).apply_event(participant_id, body.to_event()))
        finally:
            conn.close()

    @app.post("/ui/{participant_id}/prepare")
    def post_prepare(participant_id: str, body: PrepareBody):
        conn = _conn()
        try:
            lifecycle = SettlementLifecycle(conn, config, gateway)
            return _outcome_response(lifecycle.prepare(participant_id, body.order_ids))
        finally:
            conn.close()

    @app.post("/ui/{participant_id}/settle")
    def post_settle(participant_id: str, body: SettleBody):
        conn = _conn()
        try:
            lifecycle = SettlementLifecycle(conn, config, gateway)
            return _outcome_response(lifecycle.trigger(participant_id, body.settlement_ids))
        finally:
            conn.close()

    @app.post("/ui/{participant_id}/settle/nil")
    def post_settle_nil(participant_id: str):
        conn = _conn()
        try:
            lifecycle = SettlementLifecycle(conn, config, gateway)
            return _outcome_response(lifecycle.trigger_nil(participant_id))
        finally:
            conn.close()

    @app.post("/ui/{participant_id}/settle/misc")
    def post_settle_misc(participant_id: str, body: MiscFilingBody):
        conn = _conn()
        try:
            lifecycle = SettlementLifecycle(conn, config, gateway)
            return _outcome_response(
                lifecycle.trigger_misc(participant_id, MiscFiling(**body.model_dump()))
            )
        finally:
            conn.close()

    @app.post("/ui/{participant_id}/recon")
    def post_trigger_recon(participant_id: str, body: ReconBody):
        requests = [ReconRequest(**o.model_dump()) for o in body.orders]
        conn = _conn()
        try:
            lifecycle = ReconLifecycle(conn, config, gateway)
            return _outcome_response(lifecycle.trigger_recon(participant_id, requests))
        finally:
            conn.close()

    @app.post("/ui/{participant_id}/on_recon")
    def post_trigger_on_recon(participant_id: str, body: OnReconBody):
        replies = [OnReconReply(**o.model_dump()) for o in body.orders]
        conn = _conn()
        try:
            lifecycle = ReconLifecycle(conn, config, gateway)
            return _outcome_response(lifecycle.trigger_on_recon(participant_id, replies))
        finally:
            conn.close()

    @app.get("/ui/{participant_id}/settlements")
    def get_settlements(
        participant_id: str,
        status: SettlementStatus | None = None,
        counterparty_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        conn = _conn()
        try:
            rows = settlement_repo.list_settlements(
                conn, participant_id, status=status, counterparty_id=counterparty_id,
                limit=limit, offset=offset,
            )
            return [asdict(s) for s in rows]
        finally:
            conn.close()

    @app.get("/ui/{participant_id}/recon/overdue")
    def get_overdue(participant_id: str):
        conn = _conn()
        try:
            rows = ReconLifecycle(conn, config).overdue(participant_id)
            return [asdict(s) for s in rows]
        finally:
            conn.close()

    @app.get("/ui/{participant_id}/recon/breakdown")
    def get_breakdown(participant_id: str):
        conn = _conn()
        try:
            return ReconLifecycle(conn, config).status_breakdown(participant_id)
        finally:
            conn.close()

    return app
