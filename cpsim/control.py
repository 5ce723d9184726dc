import argparse
import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from websockets.exceptions import ConnectionClosed

from .config import (
    HTTP_HOST,
    HTTP_PORT,
    LOG_LEVEL,
    SimulatorConfig,
    load_from_args,
    load_from_env,
    load_from_json,
)
from .evse import ChargePointSimulator
from .exceptions import ReconnectAttemptsExhausted
from .state_machine import EVSEState


def create_app(sim: ChargePointSimulator) -> FastAPI:
    """HTTP control surface for one running simulator."""
    app = FastAPI(title="cpsim control")

    def require_connector(connector_id: int) -> None:
        if not sim.state.has_connector(connector_id):
            raise HTTPException(status_code=404, detail=f"unknown connector {connector_id}")

    @app.get("/health")
    async def health():
        return {"ok": True, "connected": sim.is_connected()}

    @app.get("/state")
    async def state():
        return await sim.snapshot()

    @app.post("/authorize")
    async def authorize(id_tag: Optional[str] = Query(None, alias="idTag")):
        try:
            status = await sim.trigger_authorize(id_tag)
        except (ConnectionError, ConnectionClosed) as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"ok": status == "Accepted", "status": status}

    @app.post("/transaction")
    async def transaction(
        id_tag: Optional[str] = Query(None, alias="idTag"),
        connector_id: int = Query(1, alias="connectorId"),
    ):
        require_connector(connector_id)
        try:
            tx_id = await sim.run_full_transaction(id_tag, connector_id)
        except (ConnectionError, ConnectionClosed) as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"ok": tx_id is not None, "transactionId": tx_id}

    @app.post("/status/{status}")
    async def status(status: str, connector_id: int = Query(1, alias="connectorId")):
        if status not in EVSEState.ALL:
            raise HTTPException(status_code=400, detail=f"unknown status {status}")
        if connector_id != 0:
            require_connector(connector_id)
        try:
            reply = await sim.set_connector_status(status, connector_id)
        except (ConnectionError, ConnectionClosed) as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"ok": reply.ok, "connector": connector_id, "status": status}

    return app


def build_config(args: argparse.Namespace) -> SimulatorConfig:
    if args.config:
        return load_from_json(args.config)
    if args.env is not None:
        return load_from_env(args.env)
    return load_from_args(args.server_url, args.charge_point_id, args.id_tag)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="OCPP 1.6-J charge point simulator")
    parser.add_argument("server_url", nargs="?", help="CSMS WebSocket URL, e.g. ws://localhost:5000/ocpp")
    parser.add_argument("charge_point_id", nargs="?")
    parser.add_argument("id_tag", nargs="?", help="RFID tag used for authorization")
    parser.add_argument(
        "--env", nargs="?", const="OCPP_", metavar="PREFIX",
        help="read configuration from environment variables (default prefix OCPP_)",
    )
    parser.add_argument("--config", metavar="FILE", help="read configuration from a JSON file")
    parser.add_argument("--http-host", default=HTTP_HOST)
    parser.add_argument("--http-port", type=int, default=HTTP_PORT)
    parser.add_argument("--no-api", action="store_true", help="do not start the HTTP control API")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    config = build_config(args)
    sim = ChargePointSimulator(config)

    server = None
    api_task = None
    if not args.no_api:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(sim), host=args.http_host, port=args.http_port,
                loop="asyncio", log_level=args.log_level.lower(),
            )
        )
        api_task = asyncio.create_task(server.serve())

    try:
        await sim.run()
    except ReconnectAttemptsExhausted:
        return 1
    finally:
        if server is not None:
            server.should_exit = True
            await api_task
    return 0


def main(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(), format="%(asctime)s | %(levelname)s | %(message)s"
    )
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
