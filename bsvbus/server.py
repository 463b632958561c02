"""HTTP, WebSocket and GraphQL servers and the program entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import threading
import uuid
from typing import Any, List, Optional

from aiohttp import WSMsgType, web

from .config import Config
from .graphql import QueryRoot, playground_html
from .metrics import ACTIVE_SUBS, Registry, render_metrics
from .models import Subscription
from .state import AppState

__all__ = ["handle_subscription_message", "create_app", "create_metrics_app", "main"]

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
_I32 = (-(2**31), 2**31 - 1)
_I64 = (-(2**63), 2**63 - 1)


def handle_subscription_message(state: AppState, client_id: str, text: str) -> str:
    """Register a subscription from ``text`` for ``client_id``; return the reply."""
    try:
        sub = Subscription.from_json(text)
    except ValueError as exc:
        log.warning("Invalid subscription format from %s: %s", client_id, exc)
        return "Invalid subscription format"
    if sub.filter_type is None and sub.op_return_pattern is None:
        log.warning("Invalid subscription from %s: no filters specified", client_id)
        return "Invalid subscription: must specify filter_type or op_return_pattern"
    state.subscriptions[client_id] = sub
    log.info("New subscription for client %s: %r", client_id, sub)
    return f"Subscribed: {sub!r}"


def _parse_int(value: Optional[str], bounds) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value.strip(), 10) if value == value.strip() else None
    except ValueError:
        return None
    if number is None or not bounds[0] <= number <= bounds[1]:
        return None
    return number


def create_app(state: AppState) -> web.Application:
    """The main application: REST, WebSocket and GraphQL endpoints."""
    root = QueryRoot(state.engine)

    def _query(func, *args):
        with state.engine.connect() as conn:
            return func(conn, *args)

    async def get_tx(request: web.Request) -> web.Response:
        from .database import get_transaction

        try:
            tx = await asyncio.to_thread(_query, get_transaction, request.match_info["txid"])
        except Exception as exc:
            raise web.HTTPInternalServerError(text=str(exc)) from exc
        if tx is None:
            return web.Response(status=404, text="Transaction not found")
        return web.json_response(tx.to_dict())

    async def list_txs(request: web.Request) -> web.Response:
        from .database import list_transactions

        params = request.query
        tx_type = params.get("type")
        height = _parse_int(params.get("height"), _I64)
        limit = _parse_int(params.get("limit"), _I32)
        try:
            txs = await asyncio.to_thread(_query, list_transactions, tx_type, height, limit)
        except Exception as exc:
            raise web.HTTPInternalServerError(text=str(exc)) from exc
        return web.json_response([tx.to_dict() for tx in txs])

    async def graphql(request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"data": None, "errors": [{"message": "invalid JSON body"}]}, status=400)
        if not isinstance(body, dict) or not isinstance(body.get("query"), str):
            return web.json_response({"data": None, "errors": [{"message": "missing query"}]}, status=400)
        variables = body.get("variables") or {}
        result = await asyncio.to_thread(root.execute, body["query"], variables)
        return web.json_response(result)

    async def graphiql(request: web.Request) -> web.Response:
        return web.Response(text=playground_html("/graphql"), content_type="text/html", charset="utf-8")

    async def ws_route(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        client_id = str(uuid.uuid4())
        queue = state.tx_channel.subscribe()
        ACTIVE_SUBS.inc()

        async def forward() -> None:
            while not ws.closed:
                while queue:
                    tx = queue.popleft()
                    if client_id in state.subscriptions:
                        await ws.send_str(json.dumps(tx.to_dict()))
                await asyncio.sleep(POLL_INTERVAL)

        forwarder = asyncio.create_task(forward())
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await ws.send_str(handle_subscription_message(state, client_id, msg.data))
                elif msg.type == WSMsgType.BINARY:
                    log.info("Received binary message from %s: %d bytes", client_id, len(msg.data))
                elif msg.type == WSMsgType.ERROR:
                    log.warning("WebSocket protocol error: %s", ws.exception())
                    break
        finally:
            forwarder.cancel()
            state.tx_channel.unsubscribe(queue)
            ACTIVE_SUBS.dec()
            state.subscriptions.pop(client_id, None)
            log.info("Subscriber %s disconnected", client_id)
        return ws

    app = web.Application()
    app.router.add_get("/ws", ws_route)
    app.router.add_get("/tx/{txid}", get_tx)
    app.router.add_get("/txs", list_txs)
    app.router.add_post("/graphql", graphql)
    app.router.add_get("/graphql", graphiql)
    return app


def create_metrics_app(registry: Optional[Registry] = None) -> web.Application:
    """An application serving ``/metrics`` in the Prometheus text format."""

    async def metrics(request: web.Request) -> web.Response:
        return web.Response(text=render_metrics(registry))

    app = web.Application()
    app.router.add_get("/metrics", metrics)
    return app


def _split_addr(addr: str):
    host, _, port = addr.rpartition(":")
    return host or "0.0.0.0", int(port)


async def _serve(state: AppState, config: Config) -> None:
    runners: List[Any] = []
    try:
        host, port = _split_addr(config.bind_addr)
        for app, h, p in ((create_app(state), host, port), (create_metrics_app(), "0.0.0.0", config.metrics_port)):
            runner = web.AppRunner(app)
            await runner.setup()
            runners.append(runner)
            await web.TCPSite(runner, h, p).start()
        log.info("Starting HTTP server at %s", config.bind_addr)
        log.info("Starting metrics server at 0.0.0.0:%d", config.metrics_port)
        await asyncio.Event().wait()
    finally:
        for runner in runners:
            await runner.cleanup()


def main(argv: Optional[List[str]] = None) -> int:
    """Start the indexer and the servers."""
    argparse.ArgumentParser(description="Bitcoin SV transaction indexer").parse_args(argv)
    from dotenv import load_dotenv
    from sqlalchemy import create_engine

    from .database import init_db
    from .indexer import index_blocks

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    config = Config.from_env()
    engine = create_engine(config.db_url, pool_size=10)
    init_db(engine, config.start_height + 1_000_000)
    state = AppState.create(engine, config)

    def run_indexer() -> None:
        try:
            index_blocks(config, engine, state)
        except Exception as exc:
            log.error("Index blocks task failed: %s", exc)

    indexer = threading.Thread(target=run_indexer, name="indexer", daemon=True)
    indexer.start()
    try:
        asyncio.run(_serve(state, config))
    except KeyboardInterrupt:
        pass
    return 0