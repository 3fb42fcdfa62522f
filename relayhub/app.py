"""FastAPI app exposing the relay WebSocket endpoint and a status probe."""

import argparse
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket

from .config import HOST, PORT
from .logging_config import configure_logging, get_logger
from .session import RelayHub

logger = get_logger(__name__)


def create_app(hub: Optional[RelayHub] = None, port: int = PORT) -> FastAPI:
    hub = hub or RelayHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("relay hub started", port=port, history_capacity=hub.history.capacity)
        yield
        await hub.shutdown()

    app = FastAPI(title="relayhub", lifespan=lifespan)
    app.state.hub = hub

    @app.get("/status")
    async def status():
        return {"message": "WebSocket server is running", "port": port, "connections": hub.registry.size()}

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await hub.session(ws).run()

    return app


# process-wide app for `uvicorn relayhub.app:app`
app = create_app()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="relayhub", description="Run the relay hub.")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level)
    # uvicorn exits non-zero if the port cannot be bound; that is the only fatal path
    uvicorn.run(create_app(port=args.port), host=args.host, port=args.port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
